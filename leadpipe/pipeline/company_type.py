"""
Step: companyType — classify each row's organization as Public or Private.

Organizations are cached by organization id (ORG_STALENESS_DAYS window), so a
company shared by many rows is classified once per run and once per window
across runs. Non-public rows are tagged "Private Company"; rows without an
organization id are tagged "Missing Organization ID".
"""
import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from leadpipe.config import (
    TAG_FIELD, ORG_STALENESS_DAYS,
    MAX_CONCURRENT_REQUESTS, BATCH_DELAY_SECONDS,
    RETRY_MAX_RETRIES, RETRY_BASE_DELAY,
)
from leadpipe.pipeline.base import StepResult, UsageSummary, is_tagged, row_value
from leadpipe.pipeline.cache import SqlCacheProvider, StaleCache
from leadpipe.pipeline.chunking import ChunkedStepAdapter
from leadpipe.pipeline.fetch import cached_fetch, call_with_retries, run_bounded
from leadpipe.services import llm
from leadpipe.services.circuit_breaker import CircuitOpenError

logger = logging.getLogger('pipeline.company_type')

PRIVATE_TAG = 'Private Company'
MISSING_ORG_TAG = 'Missing Organization ID'
KNOWN_TYPES = ('Public', 'Private')

SYSTEM_PROMPT = ("You are a financial analyst who determines whether companies "
                 "are publicly traded or privately held.")

PROMPT_TEMPLATE = """Classify this company as Public (publicly traded) or Private (privately held).

Company name: {name}
Website: {url}
LinkedIn page: {linkedin}

Rules:
- A LinkedIn company type of "Public Company" means Public; "Privately Held" means Private.
- Investor relations pages, a stock ticker or SEC filings on the website mean Public.
- No investor information, or venture/private ownership, means Private.
- If both sources are inconclusive, judge by how well known the company is.

Answer with exactly one word: Public or Private."""


def parse_company_type(text: str) -> str:
    """Map a model answer to Public / Private / Unknown (exact match first, then substring)."""
    answer = (text or '').strip().strip('."*').lower()
    if answer == 'public':
        return 'Public'
    if answer == 'private':
        return 'Private'
    if 'public' in answer:
        return 'Public'
    if 'private' in answer:
        return 'Private'
    return 'Unknown'


def classify_company(name: str, url: str, linkedin: str) -> Tuple[str, int]:
    """Ask the LLM for the company type. Returns (answer text, tokens used)."""
    prompt = PROMPT_TEMPLATE.format(name=name or 'Unknown', url=url or 'N/A', linkedin=linkedin or 'N/A')
    return llm.chat(prompt, system=SYSTEM_PROMPT, temperature=0.2, max_tokens=10)


def _valid_org_payload(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get('company_type') in KNOWN_TYPES


def org_id_of(row: Dict[str, Any]) -> Optional[str]:
    value = row_value(row, 'organization.id') or row.get('organization_id')
    return str(value).strip() if value not in (None, '') else None


def _org_fields(row: Dict[str, Any]) -> Tuple[str, str, str]:
    name = row_value(row, 'organization.name') or row.get('company_name') or row.get('company') or ''
    url = row_value(row, 'organization.website_url') or row.get('company_website') or row.get('website') or ''
    linkedin = row_value(row, 'organization.linkedin_url') or row.get('company_linkedin_url') or ''
    return str(name), str(url), str(linkedin)


class CompanyTypeAdapter(ChunkedStepAdapter):
    step_id = 'companyType'
    description = 'Public/private company classification (OpenAI, cached per organization)'
    apis = ['OpenAI']
    api_tool = 'OpenAI'
    est_seconds_per_row = 0.5

    def __init__(
        self,
        cache: StaleCache = None,
        classifier: Callable[[str, str, str], Tuple[str, int]] = None,
        max_workers: int = MAX_CONCURRENT_REQUESTS,
        batch_delay: float = BATCH_DELAY_SECONDS,
        max_retries: int = RETRY_MAX_RETRIES,
        retry_delay: float = RETRY_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        chunker=None,
    ):
        self._cache = cache
        self.classifier = classifier
        self.max_workers = max_workers
        self.batch_delay = batch_delay
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        if chunker is not None:
            self.chunker = chunker

    @property
    def cache(self) -> StaleCache:
        if self._cache is None:
            self._cache = StaleCache(
                SqlCacheProvider('organizations'),
                timedelta(days=ORG_STALENESS_DAYS),
                validator=_valid_org_payload,
                name='organizations',
            )
        return self._cache

    def process_rows(self, rows, config, events):
        usage = UsageSummary()
        work = [row for row in rows if not is_tagged(row)]

        classifier = self.classifier
        if classifier is None:
            if not llm.is_configured():
                events.log("OpenAI API key not configured — rows annotated, no classification run", level='error')
                for row in work:
                    row['companyType'] = 'Error'
                    row['isPublicCompany'] = False
                    row['companyTypeError'] = 'OpenAI API key not configured'
                usage.errors = len(work)
                return StepResult(data=rows, analytics=usage)
            classifier = classify_company

        # One lookup per organization, however many rows share it
        orgs: Dict[str, Dict[str, Any]] = {}
        for row in work:
            org_id = org_id_of(row)
            if org_id is None:
                row[TAG_FIELD] = MISSING_ORG_TAG
                continue
            orgs.setdefault(org_id, row)

        events.log(f"Classifying {len(orgs)} organizations for {len(work)} rows")

        def classify(org_id: str) -> Dict[str, Any]:
            name, url, linkedin = _org_fields(orgs[org_id])
            spent = {'tokens': 0, 'calls': 0}

            def fetch():
                spent['calls'] += 1
                text, tokens = call_with_retries(
                    classifier, name, url, linkedin,
                    max_retries=self.max_retries, base_delay=self.retry_delay,
                    no_retry=(CircuitOpenError, llm.LLMNotConfigured),
                    sleep=self.sleep, label=f"classify {name or org_id}",
                )
                spent['tokens'] += tokens or 0
                company_type = parse_company_type(text)
                logger.debug("Model answered %r for %s → %s", text, name, company_type)
                return {'company_type': company_type, 'company_name': name, 'company_url': url}

            payload, hit = cached_fetch(self.cache, org_id, fetch, should_cache=_valid_org_payload)
            return {'type': payload['company_type'], 'hit': hit, **spent}

        def on_error(org_id, exc):
            return {'error': str(exc), 'tokens': 0, 'calls': 1}

        def on_batch_done(done, total):
            events.progress(done / total * 100 if total else 100)

        org_ids = list(orgs)
        outcomes = dict(zip(org_ids, run_bounded(
            org_ids, classify,
            max_workers=self.max_workers, batch_delay=self.batch_delay, sleep=self.sleep,
            on_error=on_error, on_batch_done=on_batch_done,
        )))

        counts = {'Public': 0, 'Private': 0, 'Unknown': 0}
        for outcome in outcomes.values():
            usage.tokens_used += outcome.get('tokens', 0)
            usage.api_calls += outcome.get('calls', 0)
            if outcome.get('hit'):
                usage.cache_hits += 1

        for row in work:
            if is_tagged(row):
                continue
            outcome = outcomes[org_id_of(row)]
            if 'error' in outcome:
                row['companyType'] = 'Error'
                row['isPublicCompany'] = False
                row['companyTypeError'] = outcome['error']
                usage.errors += 1
                continue
            company_type = outcome['type']
            row['companyType'] = company_type
            row['isPublicCompany'] = company_type == 'Public'
            counts[company_type if company_type in counts else 'Unknown'] += 1
            if company_type != 'Public':
                row[TAG_FIELD] = PRIVATE_TAG

        usage.specific_metrics.update({
            'public_count': counts['Public'],
            'private_count': counts['Private'],
            'unknown_count': counts['Unknown'],
            'organizations': len(orgs),
        })
        events.log(f"Company types — public: {counts['Public']}, private: {counts['Private']}, "
                   f"unknown: {counts['Unknown']}, errors: {usage.errors}")
        return StepResult(data=rows, analytics=usage)


ADAPTERS: Dict[str, type] = {
    'companyType': CompanyTypeAdapter,
}
