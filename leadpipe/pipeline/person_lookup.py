"""
Step: personLookup — Apollo people match by LinkedIn URL, plus optional
follow-up analyses of the matched person and company.

Options in the step config:
  analyzeExperience  LLM read of the employment history  → experienceAnalysis
  analyzeWebsite     fetch the company homepage, LLM summary → websiteAnalysis
  analyzeSitemap     fetch <website>/sitemap.xml, list key pages → sitemapUrlCount, sitemapKeyPages

Apollo responses are cached per normalized LinkedIn URL for DATA_STALENESS_DAYS.
A live match costs one credit. The follow-up analyses are reported as
sub-steps (personLookup_website, ...) through enabled_substeps().
"""
import json
import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import requests
from bs4 import BeautifulSoup

from leadpipe.config import (
    APOLLO_API_KEY, DATA_STALENESS_DAYS,
    MAX_CONCURRENT_REQUESTS, BATCH_DELAY_SECONDS,
    RETRY_MAX_RETRIES, RETRY_BASE_DELAY,
)
from leadpipe.pipeline.base import StepResult, UsageSummary, is_tagged, row_value
from leadpipe.pipeline.cache import SqlCacheProvider, StaleCache
from leadpipe.pipeline.chunking import ChunkedStepAdapter
from leadpipe.pipeline.errors import RetryExhaustedError
from leadpipe.pipeline.fetch import cached_fetch, call_with_retries, run_bounded
from leadpipe.pipeline.merge import profile_url_key
from leadpipe.services import llm
from leadpipe.services.api_client import NoMatchError, match_person
from leadpipe.services.circuit_breaker import CircuitOpenError

logger = logging.getLogger('pipeline.person_lookup')

SUBSTEP_OPTIONS = (
    ('website', 'analyzeWebsite'),
    ('experience', 'analyzeExperience'),
    ('sitemap', 'analyzeSitemap'),
)

PAGE_FETCH_TIMEOUT = 5
MAX_PAGE_CHARS = 8000
MAX_SITEMAP_URLS = 100
KEY_PAGE_WORDS = ('about', 'team', 'pricing', 'careers', 'jobs', 'contact', 'product', 'customers', 'investor')

DEFAULT_EXPERIENCE_PROMPT = (
    "Summarize this person's career in two sentences: seniority, functions and "
    "industries, and how long they have been in their current role.\n\n{{employment_history}}"
)
DEFAULT_WEBSITE_PROMPT = (
    "In two sentences, describe what this company sells and to whom.\n\n{{website_content}}"
)


# ── Field extraction ──────────────────────────────────────────────────────────

def linkedin_url_of(row: Dict[str, Any]) -> Optional[str]:
    for path in ('linkedin_url', 'linkedinUrl', 'person.linkedin_url', 'profile_url'):
        value = row_value(row, path)
        if value and str(value).strip():
            return str(value).strip()
    return None


def _summarize_employment(history: List[Dict[str, Any]]) -> str:
    lines = []
    for job in history or []:
        if not isinstance(job, dict):
            continue
        title = job.get('title') or 'Unknown title'
        org = job.get('organization_name') or 'Unknown company'
        start = job.get('start_date') or '?'
        end = 'present' if job.get('current') else (job.get('end_date') or '?')
        lines.append(f"{title} at {org} ({start} – {end})")
    return '; '.join(lines)


def _summarize_education(history: List[Dict[str, Any]]) -> str:
    lines = []
    for school in history or []:
        if not isinstance(school, dict):
            continue
        parts = [school.get('degree'), school.get('field_of_study'), school.get('school_name') or school.get('organization_name')]
        text = ', '.join(p for p in parts if p)
        if text:
            lines.append(text)
    return '; '.join(lines)


def extract_apollo_fields(payload: Dict[str, Any], source: str) -> Dict[str, Any]:
    """
    Flatten an Apollo match into row fields.

    person.* and organization.* scalars are copied under dotted names; nested
    structures are summarized. source is 'cache' or 'apollo'.
    """
    person = payload.get('person') or {}
    org = payload.get('organization') or person.get('organization') or {}

    fields: Dict[str, Any] = {}
    for key, value in person.items():
        if key != 'organization' and not isinstance(value, (dict, list)):
            fields[f'person.{key}'] = value
    for key, value in org.items():
        if not isinstance(value, (dict, list)):
            fields[f'organization.{key}'] = value

    fields.update({
        'apollo_person_id': person.get('id'),
        'headcount': org.get('estimated_num_employees'),
        'company_industry': org.get('industry'),
        'company_website': org.get('website_url'),
        'education': _summarize_education(person.get('education') or person.get('education_history')),
        'employment_history_summary': _summarize_employment(person.get('employment_history')),
        'entire_json_response': json.dumps(payload, default=str),
        'apolloLeadSource': source,
    })
    return fields


def step_options(config: Dict[str, Any]) -> Dict[str, Any]:
    """Flags may sit at the top of the config or under config['options']; the latter wins."""
    options = {k: v for k, v in config.items() if k != 'options'}
    options.update(config.get('options') or {})
    return options


def _valid_person_payload(payload: Any) -> bool:
    return isinstance(payload, dict) and isinstance(payload.get('person'), dict) and bool(payload['person'])


def _fill(template: str, values: Dict[str, str]) -> str:
    for key, value in values.items():
        template = template.replace('{{' + key + '}}', value)
    return template


def page_text(html: str) -> str:
    """Visible text of an HTML page, whitespace-collapsed and truncated."""
    soup = BeautifulSoup(html or '', 'html.parser')
    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    text = soup.get_text(' ', strip=True)
    return ' '.join(text.split())[:MAX_PAGE_CHARS]


def sitemap_urls(xml: str) -> List[str]:
    # html.parser only keeps CDATA inside svg/math on newer Pythons
    xml = (xml or '').replace('<![CDATA[', '').replace(']]>', '')
    soup = BeautifulSoup(xml, 'html.parser')
    urls = [loc.get_text(strip=True) for loc in soup.find_all('loc')]
    return [u for u in urls if u][:MAX_SITEMAP_URLS]


def key_pages(urls: List[str]) -> List[str]:
    return [u for u in urls if any(word in u.lower() for word in KEY_PAGE_WORDS)]


def _site_root(website: str) -> str:
    website = website.strip().rstrip('/')
    if not website.startswith(('http://', 'https://')):
        website = f'https://{website}'
    return website


# ── Adapter ───────────────────────────────────────────────────────────────────

class PersonLookupAdapter(ChunkedStepAdapter):
    step_id = 'personLookup'
    description = 'Apollo person match by LinkedIn URL, with optional website, experience and sitemap analysis'
    apis = ['Apollo', 'OpenAI']
    api_tool = 'Apollo'
    est_seconds_per_row = 1.5

    def __init__(
        self,
        cache: StaleCache = None,
        matcher: Callable[[str, str], Dict[str, Any]] = match_person,
        analyzer: Callable[..., Any] = None,
        http_get: Callable[..., Any] = None,
        api_key: str = None,
        max_workers: int = MAX_CONCURRENT_REQUESTS,
        batch_delay: float = BATCH_DELAY_SECONDS,
        max_retries: int = RETRY_MAX_RETRIES,
        retry_delay: float = RETRY_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        chunker=None,
    ):
        self._cache = cache
        self.matcher = matcher
        self.analyzer = analyzer or llm.chat
        self.http_get = http_get or requests.get
        self.api_key = api_key if api_key is not None else APOLLO_API_KEY
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
                SqlCacheProvider('people'),
                timedelta(days=DATA_STALENESS_DAYS),
                validator=_valid_person_payload,
                name='people',
            )
        return self._cache

    def enabled_substeps(self, config):
        options = step_options(config)
        return [name for name, option in SUBSTEP_OPTIONS if options.get(option)]

    def _retry(self, fn, *args, label='', no_retry=(CircuitOpenError,), **kwargs):
        return call_with_retries(
            fn, *args,
            max_retries=self.max_retries, base_delay=self.retry_delay,
            no_retry=no_retry, sleep=self.sleep, label=label, **kwargs,
        )

    def process_rows(self, rows, config, events):
        usage = UsageSummary()
        work = [row for row in rows if not is_tagged(row)]

        if not self.api_key:
            events.log("Apollo API key not configured — rows annotated, no lookups run", level='error')
            for row in work:
                row['apollo_error'] = 'Apollo API key not configured'
            usage.errors = len(work)
            return StepResult(data=rows, analytics=usage)

        options = step_options(config)
        substeps = self.enabled_substeps(config)
        if substeps:
            events.log(f"Follow-up analyses enabled: {', '.join(substeps)}")

        def on_error(row, exc):
            return {'fields': {'apollo_error': str(exc)}, 'errors': 1, 'api_calls': 1}

        def on_batch_done(done, total):
            events.progress(done / total * 100 if total else 100, f"Looked up {done}/{total} rows")

        outcomes = run_bounded(
            work, lambda row: self._lookup_row(row, options, substeps),
            max_workers=self.max_workers, batch_delay=self.batch_delay, sleep=self.sleep,
            on_error=on_error, on_batch_done=on_batch_done,
        )

        no_match = 0
        for row, outcome in zip(work, outcomes):
            row.update(outcome['fields'])
            usage.tokens_used += outcome.get('tokens', 0)
            usage.credits_used += outcome.get('credits', 0)
            usage.api_calls += outcome.get('api_calls', 0)
            usage.cache_hits += outcome.get('cache_hits', 0)
            usage.errors += outcome.get('errors', 0)
            no_match += outcome.get('no_match', 0)

        matched = sum(1 for row in work if row.get('apollo_person_id'))
        usage.specific_metrics.update({'matched': matched, 'no_match': no_match})
        events.log(f"Apollo lookups — matched: {matched}, no match: {no_match}, "
                   f"cache hits: {usage.cache_hits}, errors: {usage.errors}")
        return StepResult(data=rows, analytics=usage)

    def _lookup_row(self, row, config, substeps) -> Dict[str, Any]:
        outcome: Dict[str, Any] = {'fields': {}, 'tokens': 0, 'credits': 0, 'api_calls': 0,
                                   'cache_hits': 0, 'errors': 0}
        url = linkedin_url_of(row)
        if not url:
            outcome['fields']['apollo_error'] = 'No LinkedIn URL'
            outcome['errors'] = 1
            return outcome

        def fetch():
            outcome['api_calls'] += 1
            payload = self._retry(self.matcher, url, self.api_key,
                                  no_retry=(CircuitOpenError, NoMatchError), label=f"apollo match {url}")
            outcome['credits'] += 1
            return payload

        try:
            payload, hit = cached_fetch(self.cache, profile_url_key({'linkedin_url': url}), fetch)
        except NoMatchError:
            outcome['fields']['apollo_error'] = 'No match found'
            outcome['no_match'] = 1
            return outcome

        if hit:
            outcome['cache_hits'] = 1
        fields = extract_apollo_fields(payload, 'cache' if hit else 'apollo')
        outcome['fields'].update(fields)

        for name in substeps:
            try:
                getattr(self, f'_analyze_{name}')(fields, config, outcome)
            except (RetryExhaustedError, CircuitOpenError, llm.LLMNotConfigured, requests.RequestException) as e:
                logger.warning("%s analysis failed for %s: %s", name, url, e)
                outcome['fields'][f'{name}AnalysisError'] = str(e)
                outcome['errors'] += 1
        return outcome

    # ── Follow-up analyses ────────────────────────────────────────────────────

    def _ask(self, prompt, outcome, label):
        outcome['api_calls'] += 1
        text, tokens = self._retry(self.analyzer, prompt,
                                   no_retry=(CircuitOpenError, llm.LLMNotConfigured), label=label)
        outcome['tokens'] += tokens or 0
        return text

    def _analyze_experience(self, fields, config, outcome):
        history = fields.get('employment_history_summary')
        if not history:
            outcome['fields']['experienceAnalysis'] = ''
            return
        prompt = _fill(config.get('experiencePrompt') or DEFAULT_EXPERIENCE_PROMPT,
                       {'employment_history': history})
        outcome['fields']['experienceAnalysis'] = self._ask(prompt, outcome, 'experience analysis')

    def _analyze_website(self, fields, config, outcome):
        website = fields.get('company_website')
        if not website:
            outcome['fields']['websiteAnalysis'] = ''
            return
        outcome['api_calls'] += 1
        resp = self.http_get(_site_root(website), timeout=PAGE_FETCH_TIMEOUT)
        resp.raise_for_status()
        content = page_text(resp.text)
        prompt = _fill(config.get('websitePrompt') or DEFAULT_WEBSITE_PROMPT, {'website_content': content})
        outcome['fields']['websiteAnalysis'] = self._ask(prompt, outcome, f'website analysis {website}')

    def _analyze_sitemap(self, fields, config, outcome):
        website = fields.get('company_website')
        if not website:
            outcome['fields']['sitemapUrlCount'] = 0
            outcome['fields']['sitemapKeyPages'] = ''
            return
        outcome['api_calls'] += 1
        resp = self.http_get(f"{_site_root(website)}/sitemap.xml", timeout=PAGE_FETCH_TIMEOUT)
        resp.raise_for_status()
        urls = sitemap_urls(resp.text)
        outcome['fields']['sitemapUrlCount'] = len(urls)
        outcome['fields']['sitemapKeyPages'] = ', '.join(key_pages(urls))
        if config.get('sitemapPrompt') and urls:
            prompt = _fill(config['sitemapPrompt'], {'website_sitemaps': '\n'.join(urls)})
            outcome['fields']['sitemapAnalysis'] = self._ask(prompt, outcome, f'sitemap analysis {website}')


ADAPTERS: Dict[str, type] = {
    'personLookup': PersonLookupAdapter,
}
