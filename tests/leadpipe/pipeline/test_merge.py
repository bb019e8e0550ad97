"""Tests for leadpipe.pipeline.merge — key extraction and order-preserving merge."""
import logging

from leadpipe.pipeline.merge import ResultMerger, email_key, name_key, profile_url_key


class TestKeyExtractors:

    def test_profile_url_normalized(self):
        a = profile_url_key({'linkedin_url': 'https://www.LinkedIn.com/in/adapark/?trk=x'})
        b = profile_url_key({'linkedin_url': 'http://linkedin.com/in/adapark'})
        assert a == b == 'linkedin.com/in/adapark'

    def test_email_lowercased(self):
        assert email_key({'email': ' Ada@Example.com '}) == 'ada@example.com'

    def test_name_key_needs_both_parts(self):
        assert name_key({'first_name': 'Ada'}) is None
        assert name_key({'firstName': 'Ada', 'lastName': 'Park'}) == 'ada|park'


class TestResultMerger:
    """ResultMerger.merge() folds step output back into the full row list."""

    def test_order_and_length_preserved(self):
        rows = [{'id': '1'}, {'id': '2', 'relevanceTag': 'x'}, {'id': '3'}]
        subset = [rows[0], rows[2]]
        results = [{'id': '3', 'v': 'c'}, {'id': '1', 'v': 'a'}]
        merged = ResultMerger().merge(rows, subset, results)
        assert [r['id'] for r in merged] == ['1', '2', '3']
        assert merged[0]['v'] == 'a'
        assert merged[2]['v'] == 'c'

    def test_tagged_rows_untouched(self):
        tagged = {'id': '2', 'relevanceTag': 'Private Company'}
        merged = ResultMerger().merge([tagged], [], [{'id': '2', 'v': 'new'}])
        assert merged[0] is tagged
        assert 'v' not in merged[0]

    def test_falls_back_through_key_priority(self):
        rows = [{'email': 'ada@example.com'}]
        results = [{'email': 'ADA@example.com', 'title': 'CTO'}]
        merged = ResultMerger().merge(rows, rows, results)
        assert merged[0]['title'] == 'CTO'

    def test_duplicate_keys_consumed_in_order(self):
        rows = [{'organization.id': 'o1', 'n': 1}, {'organization.id': 'o1', 'n': 2}]
        results = [{'organization.id': 'o1', 'r': 'first'}, {'organization.id': 'o1', 'r': 'second'}]
        merged = ResultMerger().merge(rows, rows, results)
        assert [m['r'] for m in merged] == ['first', 'second']

    def test_positional_fallback_for_keyless_rows(self):
        rows = [{'note': 'a'}, {'note': 'b'}]
        results = [{'note': 'a', 'x': 1}, {'note': 'b', 'x': 2}]
        merged = ResultMerger().merge(rows, rows, results)
        assert [m['x'] for m in merged] == [1, 2]

    def test_no_positional_fallback_when_both_have_keys(self):
        rows = [{'id': '1'}]
        results = [{'id': '999', 'x': 1}]
        merged = ResultMerger().merge(rows, rows, results)
        assert merged == [{'id': '1'}]

    def test_unmatched_results_warn(self, caplog):
        rows = [{'id': '1'}]
        with caplog.at_level(logging.WARNING, logger='pipeline.merge'):
            ResultMerger().merge(rows, rows, [{'id': '1'}, {'id': '2'}])
        assert 'no counterpart' in caplog.text

    def test_result_fields_overwrite_stale_values(self):
        rows = [{'id': '1', 'title': 'old'}]
        merged = ResultMerger().merge(rows, rows, [{'id': '1', 'title': 'new'}])
        assert merged[0]['title'] == 'new'
        assert rows[0]['title'] == 'old'

    def test_custom_extractors(self):
        merger = ResultMerger(key_extractors=[('sku', lambda r: r.get('sku'))])
        rows = [{'sku': 'a'}, {'sku': 'b'}]
        merged = merger.merge(rows, rows, [{'sku': 'b', 'p': 2}, {'sku': 'a', 'p': 1}])
        assert [m['p'] for m in merged] == [1, 2]
