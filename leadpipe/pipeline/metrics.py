"""
Metrics aggregator — per-step and run-total usage counters.

One instance per run. Records are created lazily on first reference to a step
id. All mutation goes through a single lock, so adapter worker threads can
increment counters directly.

Sub-step split: a step that fans out into internal analyses (website,
experience, sitemap, ...) can have its usage divided into derived sub-step
records. Each sub-step gets floor(base × ratio) of tokens, credits, API calls
and time; the parent keeps the remainder. Cache hits and errors stay on the
parent. Totals are never touched by a split.
"""
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from leadpipe.pipeline.base import COUNTER_FIELDS, UsageSummary

logger = logging.getLogger('pipeline.metrics')

SPLIT_FIELDS = ('tokens_used', 'credits_used', 'api_calls', 'processing_time')


@dataclass
class StepMetrics(UsageSummary):
    step_id: str = ''
    api_tool: str = ''

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d['step_id'] = self.step_id
        d['api_tool'] = self.api_tool
        rows = self.input_count or 0
        d['avg_tokens_per_row'] = round(self.tokens_used / rows, 2) if rows else 0
        d['avg_time_per_row_ms'] = round(self.processing_time / rows, 2) if rows else 0
        return d


class MetricsAggregator:

    def __init__(self):
        self._lock = threading.Lock()
        self._steps: Dict[str, StepMetrics] = {}
        self._order: List[str] = []
        self._totals = UsageSummary()
        # step id → parent record as it was before the first split
        self._split_base: Dict[str, StepMetrics] = {}
        self._substeps: Dict[str, List[str]] = {}

    # ── Internal helpers (lock held) ──────────────────────────────────

    def _step(self, step_id: str) -> StepMetrics:
        if step_id in self._split_base:
            self._unsplit(step_id)
        metrics = self._steps.get(step_id)
        if metrics is None:
            metrics = StepMetrics(step_id=step_id)
            self._steps[step_id] = metrics
            self._order.append(step_id)
        return metrics

    def _unsplit(self, step_id: str):
        """Put a split parent back to its pre-split record and drop its sub-steps."""
        self._steps[step_id] = self._split_base.pop(step_id)
        for sub_id in self._substeps.pop(step_id, []):
            self._steps.pop(sub_id, None)
            if sub_id in self._order:
                self._order.remove(sub_id)

    def _increment(self, step_id: str, field_name: str, amount: int):
        with self._lock:
            metrics = self._step(step_id)
            setattr(metrics, field_name, getattr(metrics, field_name) + amount)
            setattr(self._totals, field_name, getattr(self._totals, field_name) + amount)

    # ── Recording ─────────────────────────────────────────────────────

    def record(self, step_id: str, usage: UsageSummary):
        """Add a usage summary to the step's record and to the run totals."""
        with self._lock:
            self._step(step_id).add(usage)
            for name in COUNTER_FIELDS:
                setattr(self._totals, name, getattr(self._totals, name) + getattr(usage, name))

    def add_tokens(self, step_id: str, tokens: int):
        self._increment(step_id, 'tokens_used', int(tokens or 0))

    def add_credits(self, step_id: str, credits: int):
        self._increment(step_id, 'credits_used', int(credits or 0))

    def add_api_call(self, step_id: str, count: int = 1):
        self._increment(step_id, 'api_calls', count)

    def add_cache_hit(self, step_id: str, count: int = 1):
        self._increment(step_id, 'cache_hits', count)

    def add_error(self, step_id: str, count: int = 1):
        self._increment(step_id, 'errors', count)

    def add_processing_time(self, step_id: str, ms: int):
        self._increment(step_id, 'processing_time', int(ms or 0))

    def update_step_counts(self, step_id: str, input_count: int = None,
                           output_count: int = None, filtered_count: int = None):
        """Overwrite row counts for a step; totals move by the difference."""
        with self._lock:
            metrics = self._step(step_id)
            for name, value in (('input_count', input_count),
                                ('output_count', output_count),
                                ('filtered_count', filtered_count)):
                if value is None:
                    continue
                delta = value - getattr(metrics, name)
                setattr(metrics, name, value)
                setattr(self._totals, name, getattr(self._totals, name) + delta)

    def set_api_tool(self, step_id: str, api_tool: str):
        with self._lock:
            self._step(step_id).api_tool = api_tool or ''

    def set_specific(self, step_id: str, key: str, value: Any):
        with self._lock:
            self._step(step_id).specific_metrics[key] = value

    # ── Reading ───────────────────────────────────────────────────────

    def get(self, step_id: str) -> Optional[StepMetrics]:
        with self._lock:
            metrics = self._steps.get(step_id)
            return metrics.copy() if metrics else None

    def step_ids(self) -> List[str]:
        with self._lock:
            return list(self._order)

    def get_all(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'per_step': {step_id: self._steps[step_id].to_dict() for step_id in self._order},
                'totals': self._totals.to_dict(),
            }

    # ── Sub-step attribution ──────────────────────────────────────────

    def split_into_substeps(
        self,
        step_id: str,
        substeps: Dict[str, Dict[str, float]],
        descriptions: Dict[str, str] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Split a step's usage across derived sub-step records.

        Args:
            step_id:      parent step
            substeps:     { sub_step_id: { field: ratio } } for the enabled sub-steps
            descriptions: optional { sub_step_id: text }

        Splitting again with the same ratios gives the same records: the split
        always starts from the parent's pre-split usage. Ratio sets adding up to
        more than 1 for a field are scaled down to 1.

        Returns the new sub-step records as dicts.
        """
        descriptions = descriptions or {}
        with self._lock:
            if step_id in self._split_base:
                base = self._split_base[step_id]
                for sub_id in self._substeps.pop(step_id, []):
                    self._steps.pop(sub_id, None)
                    if sub_id in self._order:
                        self._order.remove(sub_id)
            elif step_id in self._steps:
                base = self._steps[step_id].copy()
            else:
                logger.warning("No metrics recorded for '%s' — nothing to split", step_id)
                return {}
            if not substeps:
                self._steps[step_id] = base.copy()
                self._split_base.pop(step_id, None)
                return {}

            scale = {}
            for name in SPLIT_FIELDS:
                total_ratio = sum(max(0.0, float(r.get(name, 0) or 0)) for r in substeps.values())
                if total_ratio > 1:
                    logger.warning("Sub-step %s ratios for '%s' sum to %.2f — normalising",
                                   name, step_id, total_ratio)
                    scale[name] = 1.0 / total_ratio
                else:
                    scale[name] = 1.0

            parent = base.copy()
            created = {}
            insert_at = self._order.index(step_id) + 1
            for sub_id, ratios in substeps.items():
                sub = StepMetrics(step_id=sub_id, api_tool=base.api_tool)
                for name in SPLIT_FIELDS:
                    ratio = max(0.0, float(ratios.get(name, 0) or 0)) * scale[name]
                    share = math.floor(getattr(base, name) * ratio)
                    setattr(sub, name, share)
                    setattr(parent, name, getattr(parent, name) - share)
                sub.input_count = base.input_count
                sub.output_count = base.output_count
                prefix = f"{step_id}_"
                sub.specific_metrics = {
                    'isSubstep': True,
                    'parentStep': step_id,
                    'substepType': sub_id[len(prefix):] if sub_id.startswith(prefix) else sub_id,
                    'description': descriptions.get(sub_id, ''),
                }
                self._steps[sub_id] = sub
                if sub_id not in self._order:
                    self._order.insert(insert_at, sub_id)
                    insert_at += 1
                created[sub_id] = sub.to_dict()

            for name in SPLIT_FIELDS:
                setattr(parent, name, max(0, getattr(parent, name)))
            parent.specific_metrics.update({
                'mainStep': True,
                'hasSubsteps': True,
                'substepCount': len(substeps),
            })
            self._steps[step_id] = parent
            self._split_base[step_id] = base
            self._substeps[step_id] = list(substeps)

        logger.info("Split '%s' usage into %d sub-steps", step_id, len(created))
        return created
