"""
API proxy client — connectivity check and Apollo people match.

Provider credentials are forwarded to the proxy, which owns the provider
specific request shapes. Calls go through the 'api_proxy' / 'apollo' circuit
breakers; retries are the caller's concern.
"""
import logging
from typing import Any, Dict, Optional

import requests

from leadpipe.config import API_BASE_URL, API_TIMEOUT_SECONDS
from leadpipe.services.circuit_breaker import get_breaker

logger = logging.getLogger('services.api_client')


class NoMatchError(ValueError):
    """The provider answered but had no record for the lookup key."""


def _url(path: str, base_url: str = None) -> str:
    return f"{(base_url or API_BASE_URL).rstrip('/')}{path}"


def test_connection(base_url: str = None, timeout: float = 10) -> bool:
    """
    GET /api/test on the proxy. Returns True when it answers 2xx;
    raises requests.RequestException otherwise.
    """
    def _get():
        resp = requests.get(_url('/api/test', base_url), timeout=timeout)
        resp.raise_for_status()
        return True

    ok = get_breaker('api_proxy').call(_get)
    logger.info("API proxy reachable at %s", base_url or API_BASE_URL)
    return ok


def match_person(linkedin_url: str, api_key: str, base_url: str = None) -> Dict[str, Any]:
    """
    Apollo people match by LinkedIn URL.

    Returns {'person': {...}, 'organization': {...}}. Raises NoMatchError when
    Apollo has no person for the URL, requests.HTTPError on non-2xx.
    """
    payload = {
        'api_key': api_key,
        'linkedin_url': linkedin_url,
        'reveal_personal_emails': False,
        'reveal_phone_number': False,
    }

    def _post():
        resp = requests.post(_url('/api/apollo/people/match', base_url), json=payload,
                             timeout=API_TIMEOUT_SECONDS)
        resp.raise_for_status()
        return resp.json()

    data = get_breaker('apollo').call(_post)
    person: Optional[Dict] = (data or {}).get('person')
    if not person:
        raise NoMatchError(f"No person data in Apollo response for {linkedin_url}")
    return {'person': person, 'organization': person.get('organization') or data.get('organization') or {}}
