"""
Pipeline step contracts.

Every enrichment step implements StepAdapter.process() and returns a StepResult.
Provider-specific logic lives in concrete adapter classes; the orchestrator
only sees the uniform interface.
"""
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Type

from leadpipe.config import TAG_FIELD
from leadpipe.pipeline.errors import StepConfigError


# ── Row helpers ───────────────────────────────────────────────────────────────

def row_value(row: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Read a field that may be stored flat ('organization.id') or nested
    ({'organization': {'id': ...}}). The flat key wins when both exist.
    """
    if path in row:
        return row[path]
    current: Any = row
    for part in path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def is_tagged(row: Dict[str, Any]) -> bool:
    return bool(row.get(TAG_FIELD))


# ── Usage accounting ──────────────────────────────────────────────────────────

COUNTER_FIELDS = (
    'tokens_used',
    'credits_used',
    'api_calls',
    'cache_hits',
    'errors',
    'processing_time',
    'input_count',
    'output_count',
    'filtered_count',
)


@dataclass
class UsageSummary:
    """Usage counters for one step. processing_time is in milliseconds."""
    tokens_used: int = 0
    credits_used: int = 0
    api_calls: int = 0
    cache_hits: int = 0
    errors: int = 0
    processing_time: int = 0
    input_count: int = 0
    output_count: int = 0
    filtered_count: int = 0
    specific_metrics: Dict[str, Any] = field(default_factory=dict)

    def add(self, other: 'UsageSummary') -> 'UsageSummary':
        """Accumulate another summary into this one (in place)."""
        for name in COUNTER_FIELDS:
            setattr(self, name, getattr(self, name) + getattr(other, name))
        for key, value in other.specific_metrics.items():
            current = self.specific_metrics.get(key)
            if _is_number(value) and _is_number(current):
                self.specific_metrics[key] = current + value
            else:
                self.specific_metrics[key] = value
        return self

    def __add__(self, other: 'UsageSummary') -> 'UsageSummary':
        return self.copy().add(other)

    def copy(self) -> 'UsageSummary':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        d = {name: getattr(self, name) for name in COUNTER_FIELDS}
        d['specific_metrics'] = dict(self.specific_metrics)
        return d

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'UsageSummary':
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class StepResult:
    """Uniform output from every step adapter."""
    data: List[Dict[str, Any]]
    analytics: UsageSummary = field(default_factory=UsageSummary)


# ── Step definitions ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FilterRule:
    field: str
    operator: str
    value: Any
    action: str = 'eliminate'

    @property
    def is_complete(self) -> bool:
        """Rules missing a field, operator or value are skipped at evaluation."""
        return bool(self.field) and bool(self.operator) and self.value not in (None, '')

    def describe(self) -> str:
        return f"{self.field} {self.operator} {self.value}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FilterRule':
        return cls(
            field=data.get('field') or '',
            operator=data.get('operator') or '',
            value=data.get('value'),
            action=(data.get('action') or 'eliminate').lower(),
        )


@dataclass(frozen=True)
class FilterSpec:
    rules: tuple = ()
    tag_prefix: str = ''

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['FilterSpec']:
        if not data:
            return None
        if not isinstance(data, dict):
            raise StepConfigError(f"filter must be an object, got {type(data).__name__}")
        rules = tuple(FilterRule.from_dict(rule) for rule in data.get('rules') or [])
        return cls(rules=rules, tag_prefix=data.get('tagPrefix') or data.get('tag_prefix') or '')


@dataclass(frozen=True)
class StepConfig:
    """
    One entry of a pipeline definition. Immutable for the life of a run;
    adapters receive a deep copy of `config` via config_copy().
    """
    step_id: str
    config: Dict[str, Any] = field(default_factory=dict)
    filter: Optional[FilterSpec] = None

    def config_copy(self) -> Dict[str, Any]:
        return copy.deepcopy(self.config)

    def to_dict(self) -> Dict[str, Any]:
        d = {'step': self.step_id, 'config': self.config_copy()}
        if self.filter:
            d['filter'] = {
                'rules': [vars(rule).copy() for rule in self.filter.rules],
                'tagPrefix': self.filter.tag_prefix,
            }
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepConfig':
        if not isinstance(data, dict):
            raise StepConfigError(f"Step definition must be an object, got {type(data).__name__}")
        step_id = data.get('step') or data.get('stepId') or data.get('step_id')
        if not step_id or not isinstance(step_id, str):
            raise StepConfigError("Step definition is missing a step id")
        config = data.get('config') or {}
        if not isinstance(config, dict):
            raise StepConfigError(f"Config for step '{step_id}' must be an object")
        filter_data = data.get('filter') or config.get('filter')
        return cls(step_id=step_id, config=copy.deepcopy(config), filter=FilterSpec.from_dict(filter_data))


# ── Adapter contract ──────────────────────────────────────────────────────────

class StepAdapter(ABC):
    """
    Base class for all enrichment step adapters.

    An adapter receives the untagged rows of the dataset (copies; mutating them
    is safe), the step's config and a StepEvents handle for logs and progress.
    It returns every row it was given, enriched or annotated. Per-row failures
    are written onto the row; only whole-batch failures raise.
    """
    step_id: str = ''

    # Metadata served by GET /api/steps
    description: str = ''
    apis: List[str] = []
    api_tool: str = ''                      # primary service, recorded on step metrics
    est_seconds_per_row: float = None       # None = unknown / not yet measured

    # Row field holding generated text that filter rules on 'analysis' read
    analysis_field: Optional[str] = None

    @abstractmethod
    def process(self, rows: List[Dict[str, Any]], config: Dict[str, Any], events) -> StepResult:
        """
        Run this step over the given rows.

        Args:
            rows:   Untagged rows selected by the orchestrator.
            config: Deep copy of the step's config object.
            events: StepEvents — events.log(msg), events.progress(pct).

        Returns:
            StepResult with one output row per input row.
        """
        ...

    def enabled_substeps(self, config: Dict[str, Any]) -> List[str]:
        """Sub-analyses this config turns on, for usage attribution. Default: none."""
        return []


# ── Step registry ─────────────────────────────────────────────────────────────
# Each step module under leadpipe/pipeline populates its own ADAPTERS dict, e.g.:
#   ADAPTERS = {'companyType': CompanyTypeAdapter}
#
# The manager merges them into STEP_REGISTRY: { step_id: adapter class }.


def get_adapter(registry: Dict[str, Type[StepAdapter]], step_id: str) -> StepAdapter:
    """Look up and instantiate the adapter for a step id."""
    adapter_cls = registry.get(step_id)
    if not adapter_cls:
        raise StepConfigError(f"No adapter registered for step '{step_id}'. Available: {sorted(registry)}")
    return adapter_cls()


def get_pipeline_info(registry: Dict[str, Type[StepAdapter]]) -> Dict[str, Any]:
    """
    Serialize the step registry into a JSON-friendly dict.

    Returns: { "companyType": { "description": "...", "apis": [...], "est": null }, ... }
    """
    return {
        step_id: {
            'description': cls.description or '',
            'apis': cls.apis if isinstance(cls.apis, list) else [],
            'api_tool': cls.api_tool or '',
            'est': cls.est_seconds_per_row,
        }
        for step_id, cls in registry.items()
    }
