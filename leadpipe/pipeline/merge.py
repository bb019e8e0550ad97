"""
Result merger — folds a step's output back into the full ordered dataset.

Rows have no single primary key, so each original row is matched to its result
through a priority-ordered list of key extractors. The first extractor that
yields a key on the original row and finds an unused result with the same key
wins. A row with no identity key at all falls back to its position in the
processed subset. Tagged rows are never touched and unmatched rows are kept
as they were, so the output always has the original length and order.
"""
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from leadpipe.config import TAG_FIELD
from leadpipe.pipeline.base import row_value

logger = logging.getLogger('pipeline.merge')

KeyExtractor = Callable[[Dict[str, Any]], Optional[str]]


def _first_value(row: Dict[str, Any], *paths: str) -> Optional[str]:
    for path in paths:
        value = row_value(row, path)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def id_key(row):
    return _first_value(row, 'id')


def profile_url_key(row):
    url = _first_value(row, 'linkedin_url', 'person.linkedin_url')
    if not url:
        return None
    url = url.lower().split('?')[0].rstrip('/')
    for prefix in ('https://', 'http://'):
        if url.startswith(prefix):
            url = url[len(prefix):]
    if url.startswith('www.'):
        url = url[4:]
    return url


def email_key(row):
    email = _first_value(row, 'email', 'person.email')
    return email.lower() if email else None


def organization_key(row):
    return _first_value(row, 'organization.id', 'organization_id')


def name_key(row):
    first = _first_value(row, 'first_name', 'firstName', 'fname', 'person.first_name')
    last = _first_value(row, 'last_name', 'lastName', 'lname', 'person.last_name')
    if not first or not last:
        return None
    return f"{' '.join(first.lower().split())}|{' '.join(last.lower().split())}"


DEFAULT_KEY_EXTRACTORS: Tuple[Tuple[str, KeyExtractor], ...] = (
    ('id', id_key),
    ('profile_url', profile_url_key),
    ('email', email_key),
    ('organization_id', organization_key),
    ('name', name_key),
)


class ResultMerger:
    """Order-preserving merge of step results into the authoritative row list."""

    def __init__(self, key_extractors: Sequence[Tuple[str, KeyExtractor]] = DEFAULT_KEY_EXTRACTORS):
        self.key_extractors = tuple(key_extractors)

    def keys_for(self, row: Dict[str, Any]) -> Dict[str, str]:
        keys = {}
        for name, extract in self.key_extractors:
            key = extract(row)
            if key:
                keys[name] = key
        return keys

    def merge(
        self,
        original_rows: List[Dict[str, Any]],
        processed_subset: List[Dict[str, Any]],
        results: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        # extractor name → key → result indexes in output order
        index: Dict[str, Dict[str, List[int]]] = {name: defaultdict(list) for name, _ in self.key_extractors}
        result_keys = []
        for i, result in enumerate(results):
            keys = self.keys_for(result)
            result_keys.append(keys)
            for name, key in keys.items():
                index[name][key].append(i)

        position = {id(row): i for i, row in enumerate(processed_subset)}
        used = set()

        def take(name, key):
            for i in index[name].get(key, ()):
                if i not in used:
                    used.add(i)
                    return i
            return None

        merged = []
        matched = 0
        for row in original_rows:
            if row.get(TAG_FIELD):
                merged.append(row)
                continue

            keys = self.keys_for(row)
            hit = None
            for name, _ in self.key_extractors:
                if name in keys:
                    hit = take(name, keys[name])
                    if hit is not None:
                        break

            if hit is None:
                pos = position.get(id(row))
                if (pos is not None and pos < len(results) and pos not in used
                        and (not keys or not result_keys[pos])):
                    used.add(pos)
                    hit = pos

            if hit is None:
                merged.append(row)
                continue

            combined = dict(row)
            combined.update(results[hit])
            merged.append(combined)
            matched += 1

        if matched < len(results):
            logger.warning("Merge matched %d of %d results; %d results had no counterpart",
                           matched, len(results), len(results) - matched)
        return merged
