"""Tests for leadpipe.pipeline.person_lookup — Apollo match, cache, follow-up analyses."""
import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from leadpipe.pipeline.cache import MemoryCacheProvider, StaleCache
from leadpipe.pipeline.person_lookup import (
    ADAPTERS, PersonLookupAdapter, extract_apollo_fields, key_pages, linkedin_url_of,
    page_text, sitemap_urls, step_options,
)
from leadpipe.services.api_client import NoMatchError
from leadpipe.services.circuit_breaker import CircuitOpenError


def _payload(person_id='p1', website='northwind.example'):
    org = {'id': 'org-1', 'name': 'Northwind Analytics', 'estimated_num_employees': 420,
           'industry': 'software', 'website_url': website, 'keywords': ['analytics']}
    return {
        'person': {
            'id': person_id,
            'first_name': 'Ada',
            'last_name': 'Park',
            'title': 'CTO',
            'employment_history': [
                {'title': 'CTO', 'organization_name': 'Northwind', 'start_date': '2021-03', 'current': True},
                {'title': 'Engineer', 'organization_name': 'Contoso', 'start_date': '2015-01',
                 'end_date': '2021-02'},
            ],
            'organization': org,
        },
        'organization': org,
    }


def _response(text, status=200):
    resp = MagicMock()
    resp.text = text
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f'{status} error')
    return resp


def _adapter(matcher, no_sleep, cache=None, **kwargs):
    kwargs.setdefault('api_key', 'test-key')
    return PersonLookupAdapter(
        cache=cache or StaleCache(MemoryCacheProvider(), timedelta(days=90)),
        matcher=matcher, max_workers=2, batch_delay=0, max_retries=2, retry_delay=0.01,
        sleep=no_sleep, **kwargs,
    )


class TestHelpers:

    def test_linkedin_url_sources(self):
        assert linkedin_url_of({'linkedin_url': ' https://linkedin.com/in/a '}) == 'https://linkedin.com/in/a'
        assert linkedin_url_of({'person': {'linkedin_url': 'https://linkedin.com/in/b'}}) == 'https://linkedin.com/in/b'
        assert linkedin_url_of({'linkedinUrl': ''}) is None

    def test_extract_fields(self):
        fields = extract_apollo_fields(_payload(), 'apollo')
        assert fields['person.first_name'] == 'Ada'
        assert fields['organization.estimated_num_employees'] == 420
        assert 'organization.keywords' not in fields
        assert fields['apollo_person_id'] == 'p1'
        assert fields['headcount'] == 420
        assert fields['company_website'] == 'northwind.example'
        assert fields['employment_history_summary'] == (
            'CTO at Northwind (2021-03 – present); Engineer at Contoso (2015-01 – 2021-02)')
        assert json.loads(fields['entire_json_response'])['person']['id'] == 'p1'
        assert fields['apolloLeadSource'] == 'apollo'

    def test_step_options_nested_wins(self):
        assert step_options({'analyzeWebsite': True, 'options': {'analyzeWebsite': False}}) == {
            'analyzeWebsite': False}

    def test_page_text_strips_markup(self):
        html = '<html><script>var x=1;</script><body><h1>Hello</h1>\n<p>world</p></body></html>'
        assert page_text(html) == 'Hello world'

    def test_sitemap_and_key_pages(self):
        xml = ('<urlset><url><loc>https://x.example/about</loc></url>'
               '<url><loc> https://x.example/blog/1 </loc></url>'
               '<url><loc>https://x.example/Pricing</loc></url></urlset>')
        urls = sitemap_urls(xml)
        assert urls == ['https://x.example/about', 'https://x.example/blog/1', 'https://x.example/Pricing']
        assert key_pages(urls) == ['https://x.example/about', 'https://x.example/Pricing']

    def test_page_text_drops_comments_and_decodes_entities(self):
        html = ('<html><head><title>T</title><style>p {color: red}</style></head><body>'
                '<!-- <b>hidden</b> --><p>Tom &amp; Jerry&nbsp;Inc &lt;3</p></body></html>')
        assert page_text(html) == 'T Tom & Jerry Inc <3'

    def test_page_text_truncates(self):
        assert len(page_text('<p>' + 'word ' * 5000 + '</p>')) == 8000

    def test_sitemap_cdata_and_blank_locs(self):
        xml = ('<?xml version="1.0" encoding="UTF-8"?>'
               '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
               '<url><loc><![CDATA[https://x.example/team]]></loc></url>'
               '<url><loc>https://x.example/a?p=1&amp;q=2</loc></url>'
               '<url><loc>  </loc></url></urlset>')
        assert sitemap_urls(xml) == ['https://x.example/team', 'https://x.example/a?p=1&q=2']

    def test_sitemap_capped(self):
        xml = ''.join(f'<url><loc>https://x.example/{i}</loc></url>' for i in range(150))
        assert len(sitemap_urls(xml)) == 100


class TestPersonLookupAdapter:
    """PersonLookupAdapter.process() match, cache and error handling."""

    def test_match_fills_row(self, sample_rows, no_sleep):
        matcher = MagicMock(return_value=_payload())
        result = _adapter(matcher, no_sleep).process(sample_rows, {}, MagicMock())

        assert matcher.call_count == 3
        row = result.data[0]
        assert row['apollo_person_id'] == 'p1'
        assert row['person.title'] == 'CTO'
        assert row['apolloLeadSource'] == 'apollo'
        assert row['headcount'] == 420
        assert result.analytics.credits_used == 3
        assert result.analytics.api_calls == 3
        assert result.analytics.specific_metrics == {'matched': 3, 'no_match': 0}

    def test_second_lookup_from_cache(self, sample_rows, no_sleep):
        cache = StaleCache(MemoryCacheProvider(), timedelta(days=90))
        matcher = MagicMock(return_value=_payload())
        _adapter(matcher, no_sleep, cache=cache).process([dict(r) for r in sample_rows[:1]], {}, MagicMock())
        result = _adapter(matcher, no_sleep, cache=cache).process(sample_rows[:1], {}, MagicMock())

        assert matcher.call_count == 1
        assert result.data[0]['apolloLeadSource'] == 'cache'
        assert result.analytics.cache_hits == 1
        assert result.analytics.credits_used == 0
        assert result.analytics.api_calls == 0

    def test_url_variants_share_cache_entry(self, no_sleep):
        cache = StaleCache(MemoryCacheProvider(), timedelta(days=90))
        matcher = MagicMock(return_value=_payload())
        rows = [{'id': '1', 'linkedin_url': 'https://www.linkedin.com/in/adapark/'}]
        _adapter(matcher, no_sleep, cache=cache).process(rows, {}, MagicMock())
        rows = [{'id': '2', 'linkedin_url': 'http://linkedin.com/in/adapark'}]
        result = _adapter(matcher, no_sleep, cache=cache).process(rows, {}, MagicMock())
        assert matcher.call_count == 1
        assert result.analytics.cache_hits == 1

    def test_no_match_not_retried(self, no_sleep):
        matcher = MagicMock(side_effect=NoMatchError('nobody'))
        result = _adapter(matcher, no_sleep).process([{'id': '1', 'linkedin_url': 'linkedin.com/in/x'}],
                                                     {}, MagicMock())
        assert matcher.call_count == 1
        assert result.data[0]['apollo_error'] == 'No match found'
        assert result.analytics.specific_metrics['no_match'] == 1
        assert result.analytics.errors == 0

    def test_missing_url(self, no_sleep):
        matcher = MagicMock()
        result = _adapter(matcher, no_sleep).process([{'id': '1'}], {}, MagicMock())
        assert result.data[0]['apollo_error'] == 'No LinkedIn URL'
        assert result.analytics.errors == 1
        matcher.assert_not_called()

    def test_retries_exhausted(self, no_sleep):
        matcher = MagicMock(side_effect=requests.ConnectionError('reset'))
        result = _adapter(matcher, no_sleep).process([{'id': '1', 'linkedin_url': 'linkedin.com/in/x'}],
                                                     {}, MagicMock())
        assert matcher.call_count == 3
        assert 'Gave up after 3 attempts' in result.data[0]['apollo_error']
        assert result.analytics.errors == 1
        assert result.analytics.credits_used == 0

    def test_open_circuit_fails_fast(self, no_sleep):
        matcher = MagicMock(side_effect=CircuitOpenError('apollo', retry_after=30))
        result = _adapter(matcher, no_sleep).process([{'id': '1', 'linkedin_url': 'linkedin.com/in/x'}],
                                                     {}, MagicMock())
        assert matcher.call_count == 1
        assert result.data[0]['apollo_error']

    def test_no_api_key(self, sample_rows, no_sleep):
        matcher = MagicMock()
        result = _adapter(matcher, no_sleep, api_key='').process(sample_rows, {}, MagicMock())
        assert all(r['apollo_error'] == 'Apollo API key not configured' for r in result.data)
        assert result.analytics.errors == 3
        matcher.assert_not_called()


class TestFollowUpAnalyses:
    """Experience, website and sitemap sub-analyses."""

    def test_enabled_substeps(self):
        adapter = PersonLookupAdapter(api_key='k')
        assert adapter.enabled_substeps({'options': {'analyzeWebsite': True, 'analyzeSitemap': True}}) == [
            'website', 'sitemap']
        assert adapter.enabled_substeps({'analyzeExperience': True}) == ['experience']
        assert adapter.enabled_substeps({}) == []

    def test_all_analyses(self, no_sleep):
        analyzer = MagicMock(side_effect=lambda prompt: (f'summary of {len(prompt)} chars', 20))
        pages = {
            'https://northwind.example': _response('<h1>Northwind</h1><p>Analytics for retailers</p>'),
            'https://northwind.example/sitemap.xml': _response(
                '<urlset><url><loc>https://northwind.example/about</loc></url>'
                '<url><loc>https://northwind.example/blog</loc></url></urlset>'),
        }
        http_get = MagicMock(side_effect=lambda url, timeout: pages[url])
        adapter = _adapter(MagicMock(return_value=_payload()), no_sleep, analyzer=analyzer, http_get=http_get)
        config = {'options': {'analyzeExperience': True, 'analyzeWebsite': True, 'analyzeSitemap': True},
                  'sitemapPrompt': 'Which pages matter?\n{{website_sitemaps}}'}

        result = adapter.process([{'id': '1', 'linkedin_url': 'linkedin.com/in/adapark'}], config, MagicMock())
        row = result.data[0]

        assert row['experienceAnalysis'].startswith('summary of')
        assert row['websiteAnalysis'].startswith('summary of')
        assert row['sitemapUrlCount'] == 2
        assert row['sitemapKeyPages'] == 'https://northwind.example/about'
        assert 'sitemapAnalysis' in row
        website_prompt = analyzer.call_args_list[0].args[0]
        assert 'Analytics for retailers' in website_prompt
        # match + experience + page + website LLM + sitemap + sitemap LLM
        assert result.analytics.api_calls == 6
        assert result.analytics.tokens_used == 60
        assert result.analytics.errors == 0

    def test_custom_experience_prompt(self, no_sleep):
        analyzer = MagicMock(return_value=('ok', 5))
        adapter = _adapter(MagicMock(return_value=_payload()), no_sleep, analyzer=analyzer)
        adapter.process([{'id': '1', 'linkedin_url': 'linkedin.com/in/adapark'}],
                        {'analyzeExperience': True, 'experiencePrompt': 'Career: {{employment_history}}'},
                        MagicMock())
        assert analyzer.call_args.args[0].startswith('Career: CTO at Northwind')

    def test_website_failure_is_row_level(self, no_sleep):
        http_get = MagicMock(return_value=_response('', status=503))
        analyzer = MagicMock(return_value=('career', 5))
        adapter = _adapter(MagicMock(return_value=_payload()), no_sleep, analyzer=analyzer, http_get=http_get)
        result = adapter.process([{'id': '1', 'linkedin_url': 'linkedin.com/in/adapark'}],
                                 {'analyzeWebsite': True, 'analyzeExperience': True}, MagicMock())
        row = result.data[0]
        assert '503' in row['websiteAnalysisError']
        assert row['experienceAnalysis'] == 'career'
        assert row['apollo_person_id'] == 'p1'
        assert result.analytics.errors == 1

    def test_no_website_skips_fetch(self, no_sleep):
        http_get = MagicMock()
        adapter = _adapter(MagicMock(return_value=_payload(website=None)), no_sleep, http_get=http_get,
                           analyzer=MagicMock())
        result = adapter.process([{'id': '1', 'linkedin_url': 'linkedin.com/in/adapark'}],
                                 {'analyzeWebsite': True, 'analyzeSitemap': True}, MagicMock())
        assert result.data[0]['websiteAnalysis'] == ''
        assert result.data[0]['sitemapUrlCount'] == 0
        http_get.assert_not_called()


def test_registered():
    assert ADAPTERS == {'personLookup': PersonLookupAdapter}
