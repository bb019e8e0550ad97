"""
Mock step adapters — realistic fake enrichment for local testing.

Activated with MOCK_PIPELINE=1 env var. Every external API call is replaced
with canned responses; usage counters, cache hits and sub-steps are reported
the same way the real adapters report them, so the dashboard, metrics and
report paths can be exercised without credentials.
"""
import logging
import random
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict

from leadpipe.config import TAG_FIELD, DATA_STALENESS_DAYS, ORG_STALENESS_DAYS
from leadpipe.pipeline.base import StepResult, UsageSummary, is_tagged
from leadpipe.pipeline.cache import MemoryCacheProvider, StaleCache
from leadpipe.pipeline.chunking import ChunkedStepAdapter
from leadpipe.pipeline.company_type import MISSING_ORG_TAG, PRIVATE_TAG, org_id_of
from leadpipe.pipeline.fetch import cached_fetch
from leadpipe.pipeline.merge import profile_url_key
from leadpipe.pipeline.person_lookup import SUBSTEP_OPTIONS, extract_apollo_fields, linkedin_url_of, step_options
from leadpipe.pipeline.prompt_analysis import render_prompt
from leadpipe.pipeline.errors import StepConfigError

logger = logging.getLogger('pipeline.mock')


# ── Fake data ─────────────────────────────────────────────────────────────────

MOCK_COMPANIES = [
    {'name': 'Northwind Analytics', 'industry': 'Computer Software', 'employees': 420, 'public': False},
    {'name': 'Contoso Health', 'industry': 'Hospital & Health Care', 'employees': 12800, 'public': True},
    {'name': 'Fabrikam Logistics', 'industry': 'Logistics & Supply Chain', 'employees': 2300, 'public': True},
    {'name': 'Tailspin Robotics', 'industry': 'Industrial Automation', 'employees': 85, 'public': False},
    {'name': 'Wingtip Payments', 'industry': 'Financial Services', 'employees': 640, 'public': False},
    {'name': 'Litware Security', 'industry': 'Computer & Network Security', 'employees': 5100, 'public': True},
]

MOCK_TITLES = ['VP Engineering', 'Head of Data', 'CTO', 'Director of Operations', 'Staff Engineer', 'COO']

MOCK_ANALYSES = [
    'Strong fit: senior buyer at a growing company with an active data team.',
    'Moderate fit: relevant function, but company size is below target.',
    'Weak fit: role is not involved in purchasing decisions.',
]

# Shared across mock runs in one process so repeated runs show cache hits
_people_provider = MemoryCacheProvider()
_org_provider = MemoryCacheProvider()


def _simulate_delay(min_s=0.01, max_s=0.05):
    """Small delay to simulate API latency."""
    time.sleep(random.uniform(min_s, max_s))


def _company_for(key: str) -> dict:
    return MOCK_COMPANIES[sum(map(ord, key or '')) % len(MOCK_COMPANIES)]


def reset_mock_caches():
    _people_provider.records.clear()
    _org_provider.records.clear()


# ── personLookup ──────────────────────────────────────────────────────────────

class MockPersonLookup(ChunkedStepAdapter):
    step_id = 'personLookup'
    description = '[MOCK] Simulated Apollo person match'
    apis = ['Mock']
    api_tool = 'Apollo'
    est_seconds_per_row = 0.05

    def __init__(self):
        self.cache = StaleCache(_people_provider, timedelta(days=DATA_STALENESS_DAYS), name='mock-people')

    def enabled_substeps(self, config):
        options = step_options(config)
        return [name for name, option in SUBSTEP_OPTIONS if options.get(option)]

    def process_rows(self, rows, config, events):
        usage = UsageSummary()
        work = [row for row in rows if not is_tagged(row)]
        substeps = self.enabled_substeps(config)

        for i, row in enumerate(work, 1):
            url = linkedin_url_of(row)
            if not url:
                row['apollo_error'] = 'No LinkedIn URL'
                usage.errors += 1
                continue

            def fetch():
                _simulate_delay()
                usage.api_calls += 1
                usage.credits_used += 1
                company = _company_for(url)
                org_id = uuid.uuid5(uuid.NAMESPACE_URL, company['name']).hex[:24]
                return {
                    'person': {
                        'id': uuid.uuid5(uuid.NAMESPACE_URL, url).hex[:24],
                        'name': row.get('name') or 'Jordan Example',
                        'title': random.choice(MOCK_TITLES),
                        'linkedin_url': url,
                        'employment_history': [
                            {'title': random.choice(MOCK_TITLES), 'organization_name': company['name'],
                             'start_date': '2021-03-01', 'current': True},
                        ],
                    },
                    'organization': {
                        'id': org_id,
                        'name': company['name'],
                        'industry': company['industry'],
                        'estimated_num_employees': company['employees'],
                        'website_url': f"https://{company['name'].split()[0].lower()}.example.com",
                    },
                }

            payload, hit = cached_fetch(self.cache, profile_url_key({'linkedin_url': url}), fetch)
            if hit:
                usage.cache_hits += 1
            row.update(extract_apollo_fields(payload, 'cache' if hit else 'apollo'))

            for name in substeps:
                usage.api_calls += 1
                usage.tokens_used += random.randint(150, 400)
                if name == 'website':
                    row['websiteAnalysis'] = f"{row.get('organization.name')} sells software to mid-market teams."
                elif name == 'experience':
                    row['experienceAnalysis'] = 'Senior operator with 10+ years across data and engineering.'
                elif name == 'sitemap':
                    row['sitemapUrlCount'] = random.randint(12, 90)
                    row['sitemapKeyPages'] = '/about, /pricing, /careers'

            events.progress(i / len(work) * 100)

        usage.specific_metrics['matched'] = sum(1 for row in work if row.get('apollo_person_id'))
        return StepResult(data=rows, analytics=usage)


# ── companyType ───────────────────────────────────────────────────────────────

class MockCompanyType(ChunkedStepAdapter):
    step_id = 'companyType'
    description = '[MOCK] Simulated public/private classification'
    apis = ['Mock']
    api_tool = 'OpenAI'
    est_seconds_per_row = 0.02

    def __init__(self):
        self.cache = StaleCache(_org_provider, timedelta(days=ORG_STALENESS_DAYS), name='mock-organizations')

    def process_rows(self, rows, config, events):
        usage = UsageSummary()
        public = private = 0
        for row in rows:
            if is_tagged(row):
                continue
            org_id = org_id_of(row)
            if org_id is None:
                row[TAG_FIELD] = MISSING_ORG_TAG
                continue

            def fetch():
                _simulate_delay()
                usage.api_calls += 1
                usage.tokens_used += random.randint(60, 120)
                company = _company_for(row.get('organization.name') or org_id)
                return {'company_type': 'Public' if company['public'] else 'Private'}

            payload, hit = cached_fetch(self.cache, org_id, fetch)
            if hit:
                usage.cache_hits += 1
            row['companyType'] = payload['company_type']
            row['isPublicCompany'] = payload['company_type'] == 'Public'
            if row['isPublicCompany']:
                public += 1
            else:
                private += 1
                row[TAG_FIELD] = PRIVATE_TAG

        usage.specific_metrics.update({'public_count': public, 'private_count': private})
        return StepResult(data=rows, analytics=usage)


# ── promptAnalysis ────────────────────────────────────────────────────────────

class MockPromptAnalysis(ChunkedStepAdapter):
    step_id = 'promptAnalysis'
    description = '[MOCK] Simulated prompt analysis'
    apis = ['Mock']
    api_tool = 'OpenAI'
    est_seconds_per_row = 0.03
    analysis_field = 'promptAnalysis'

    def process(self, rows, config, events):
        if not (config.get('prompt') or '').strip():
            raise StepConfigError("promptAnalysis requires a non-empty 'prompt' in its config")
        return super().process(rows, config, events)

    def process_rows(self, rows, config, events):
        usage = UsageSummary()
        stamp = datetime.now(timezone.utc).isoformat()
        for row in rows:
            if is_tagged(row):
                continue
            _simulate_delay()
            prompt = render_prompt(config['prompt'], row)
            usage.api_calls += 1
            usage.tokens_used += len(prompt) // 4 + random.randint(40, 90)
            row['promptAnalysis'] = random.choice(MOCK_ANALYSES)
            row['analysisTimestamp'] = stamp
        return StepResult(data=rows, analytics=usage)


MOCK_ADAPTERS: Dict[str, type] = {
    'personLookup': MockPersonLookup,
    'companyType': MockCompanyType,
    'promptAnalysis': MockPromptAnalysis,
}
