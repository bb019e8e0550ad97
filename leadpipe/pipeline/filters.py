"""
Filter engine — declarative rules that tag rows out of later steps.

A rule matches per its operator; a row is tagged when an 'eliminate' rule
matches or a 'pass' rule does not. The first tagging rule wins and its text
is written to relevanceTag, e.g. "filtered: estimated_num_employees lessThan 10".
Rows are annotated, never removed.
"""
import logging
from typing import Any, Dict, List, Optional

from leadpipe.config import TAG_FIELD
from leadpipe.pipeline.base import FilterRule, FilterSpec, row_value

logger = logging.getLogger('pipeline.filters')

# Rule fields that mean "the text this step generated" rather than a row column
ANALYSIS_FIELDS = ('analysis', 'promptAnalysis')

# Accepted spellings → canonical operator
OPERATOR_ALIASES = {
    'equals': 'equals',
    'equal': 'equals',
    'eq': 'equals',
    'contains': 'contains',
    'startswith': 'startsWith',
    'starts_with': 'startsWith',
    'endswith': 'endsWith',
    'ends_with': 'endsWith',
    'greaterthan': 'greaterThan',
    'greater_than': 'greaterThan',
    'gt': 'greaterThan',
    'lessthan': 'lessThan',
    'less_than': 'lessThan',
    'lt': 'lessThan',
    'between': 'between',
}


def canonical_operator(operator: str) -> Optional[str]:
    return OPERATOR_ALIASES.get((operator or '').strip().lower())


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().replace(',', ''))
    except ValueError:
        return None


def _parse_range(value: Any):
    parts = str(value).split(',')
    if len(parts) != 2:
        return None
    low, high = _to_number(parts[0]), _to_number(parts[1])
    if low is None or high is None:
        return None
    return low, high


def rule_matches(rule: FilterRule, actual: Any) -> bool:
    """Evaluate one rule against a value. Unknown operators and unparseable numbers never match."""
    op = canonical_operator(rule.operator)
    if op is None:
        logger.warning("Unknown filter operator '%s' — rule ignored", rule.operator)
        return False
    if actual is None:
        return False

    if op in ('greaterThan', 'lessThan', 'between'):
        number = _to_number(actual)
        if number is None:
            return False
        if op == 'between':
            bounds = _parse_range(rule.value)
            if bounds is None:
                return False
            return bounds[0] <= number <= bounds[1]
        threshold = _to_number(rule.value)
        if threshold is None:
            return False
        return number > threshold if op == 'greaterThan' else number < threshold

    text = str(actual).strip().lower()
    expected = str(rule.value).strip().lower()
    if op == 'equals':
        return text == expected
    if op == 'contains':
        return expected in text
    if op == 'startsWith':
        return text.startswith(expected)
    return text.endswith(expected)


class FilterEngine:
    """Stateless rule evaluator; one instance is shared by a whole run."""

    def tag_for(self, rule: FilterRule, tag_prefix: str = '') -> str:
        return f"{tag_prefix or 'filtered'}: {rule.describe()}"

    def evaluate(self, row: Dict[str, Any], spec: FilterSpec, analysis_text: Optional[str] = None) -> Optional[str]:
        """Return the tag the first tagging rule produces for this row, or None."""
        for rule in spec.rules:
            if not rule.is_complete:
                continue
            if rule.field in ANALYSIS_FIELDS and analysis_text is not None:
                actual = analysis_text
            else:
                actual = row_value(row, rule.field)
            matches = rule_matches(rule, actual)
            if (rule.action == 'eliminate' and matches) or (rule.action == 'pass' and not matches):
                return self.tag_for(rule, spec.tag_prefix)
        return None

    def apply_filters(
        self,
        rows: List[Dict[str, Any]],
        spec: Optional[FilterSpec],
        text_field: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Tag matching rows in place and return the same list.

        text_field names the row column holding generated analysis text; rules
        on 'analysis'/'promptAnalysis' read it. Already-tagged rows are skipped.
        """
        if not spec or not spec.rules:
            return rows
        tagged = 0
        for row in rows:
            if row.get(TAG_FIELD):
                continue
            analysis_text = row.get(text_field) if text_field else None
            tag = self.evaluate(row, spec, analysis_text=analysis_text)
            if tag:
                row[TAG_FIELD] = tag
                tagged += 1
        logger.info("Filter pass tagged %d of %d rows", tagged, len(rows))
        return rows
