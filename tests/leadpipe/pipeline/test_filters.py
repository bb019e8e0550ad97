"""Tests for leadpipe.pipeline.filters — operators, tag text, in-place tagging."""
import pytest

from leadpipe.pipeline.base import FilterRule, FilterSpec
from leadpipe.pipeline.filters import FilterEngine, canonical_operator, rule_matches


def _spec(*rules, prefix=''):
    return FilterSpec(rules=tuple(FilterRule(*r) for r in rules), tag_prefix=prefix)


class TestRuleMatches:
    """Single-rule evaluation."""

    @pytest.mark.parametrize('operator,value,actual,expected', [
        ('equals', 'Private', 'private', True),
        ('equals', 'Private', 'Public', False),
        ('contains', 'health', 'Hospital & Health Care', True),
        ('startsWith', 'vp', 'VP Engineering', True),
        ('endsWith', 'officer', 'Chief Data Officer', True),
        ('greaterThan', '100', 420, True),
        ('greaterThan', '100', '99', False),
        ('lessThan', '10', 5, True),
        ('lessThan', '10', 10, False),
        ('between', '10,500', 10, True),
        ('between', '10,500', 500, True),
        ('between', '10,500', 501, False),
    ])
    def test_operators(self, operator, value, actual, expected):
        assert rule_matches(FilterRule('f', operator, value), actual) is expected

    def test_numeric_operator_on_text_never_matches(self):
        assert not rule_matches(FilterRule('f', 'lessThan', '10'), 'unknown')

    def test_missing_value_never_matches(self):
        assert not rule_matches(FilterRule('f', 'equals', 'x'), None)

    def test_unknown_operator_never_matches(self):
        assert not rule_matches(FilterRule('f', 'regex', '.*'), 'anything')

    def test_malformed_range(self):
        assert not rule_matches(FilterRule('f', 'between', '10'), 5)

    def test_thousands_separator(self):
        assert rule_matches(FilterRule('f', 'greaterThan', '1000'), '12,800')

    def test_aliases(self):
        assert canonical_operator('GT') == 'greaterThan'
        assert canonical_operator('less_than') == 'lessThan'
        assert canonical_operator('nope') is None


class TestFilterEngine:
    """FilterEngine.apply_filters() tagging behaviour."""

    def test_eliminate_rule_tags_row(self):
        rows = [{'estimated_num_employees': 5}, {'estimated_num_employees': 50}]
        FilterEngine().apply_filters(rows, _spec(('estimated_num_employees', 'lessThan', '10', 'eliminate')))
        assert rows[0]['relevanceTag'] == 'filtered: estimated_num_employees lessThan 10'
        assert 'relevanceTag' not in rows[1]

    def test_pass_rule_tags_non_matching_row(self):
        rows = [{'title': 'VP Sales'}, {'title': 'Intern'}]
        FilterEngine().apply_filters(rows, _spec(('title', 'contains', 'vp', 'pass'), prefix='title'))
        assert 'relevanceTag' not in rows[0]
        assert rows[1]['relevanceTag'] == 'title: title contains vp'

    def test_first_tagging_rule_wins(self):
        rows = [{'a': 1, 'b': 2}]
        FilterEngine().apply_filters(rows, _spec(('a', 'equals', '1', 'eliminate'), ('b', 'equals', '2', 'eliminate')))
        assert rows[0]['relevanceTag'] == 'filtered: a equals 1'

    def test_incomplete_rules_skipped(self):
        rows = [{'a': 1}]
        FilterEngine().apply_filters(rows, _spec(('a', 'equals', '', 'eliminate')))
        assert 'relevanceTag' not in rows[0]

    def test_existing_tag_never_overwritten(self):
        rows = [{'a': 1, 'relevanceTag': 'Private Company'}]
        FilterEngine().apply_filters(rows, _spec(('a', 'equals', '1', 'eliminate')))
        assert rows[0]['relevanceTag'] == 'Private Company'

    def test_analysis_rule_reads_text_field(self):
        rows = [{'promptAnalysis': 'Weak fit: not a buyer'}, {'promptAnalysis': 'Strong fit'}]
        FilterEngine().apply_filters(rows, _spec(('analysis', 'contains', 'weak', 'eliminate')),
                                     text_field='promptAnalysis')
        assert rows[0]['relevanceTag'] == 'filtered: analysis contains weak'
        assert 'relevanceTag' not in rows[1]

    def test_nested_field(self):
        rows = [{'organization': {'estimated_num_employees': 3}}]
        FilterEngine().apply_filters(rows, _spec(('organization.estimated_num_employees', 'lessThan', '10', 'eliminate')))
        assert rows[0]['relevanceTag']

    def test_returns_same_list_and_row_count(self):
        rows = [{'a': i} for i in range(5)]
        out = FilterEngine().apply_filters(rows, _spec(('a', 'greaterThan', '2', 'eliminate')))
        assert out is rows
        assert len(out) == 5
        assert sum(1 for r in out if r.get('relevanceTag')) == 2

    def test_no_spec_is_noop(self):
        rows = [{'a': 1}]
        assert FilterEngine().apply_filters(rows, None) == [{'a': 1}]
