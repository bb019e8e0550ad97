"""
Pipeline definition loader.

Accepts the JSON shape posted to /api/runs, a {"steps": [...]} mapping, or a
path to a YAML file holding either, and returns an immutable PipelineConfig.

    steps:
      - step: companyType
      - step: personLookup
        config:
          options: {analyzeExperience: true}
        filter:
          tagPrefix: apollo
          rules:
            - {field: organization.estimated_num_employees, operator: lessThan, value: "10", action: eliminate}
"""
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Tuple, Union

import yaml

from leadpipe.pipeline.base import StepConfig
from leadpipe.pipeline.errors import StepConfigError

logger = logging.getLogger('pipeline.step_config')


@dataclass(frozen=True)
class PipelineConfig:
    steps: Tuple[StepConfig, ...]

    def __iter__(self) -> Iterator[StepConfig]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __getitem__(self, index) -> StepConfig:
        return self.steps[index]

    @property
    def step_ids(self) -> List[str]:
        return [s.step_id for s in self.steps]

    def to_list(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.steps]


def _read_yaml(path: str) -> Any:
    try:
        with open(path, 'r') as f:
            return yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise StepConfigError(f"Could not read pipeline definition {path}: {e}") from e


def load_pipeline_config(source: Union[str, List, Dict, PipelineConfig]) -> PipelineConfig:
    """Build a PipelineConfig, raising StepConfigError for anything malformed."""
    if isinstance(source, PipelineConfig):
        return source
    if isinstance(source, str):
        if not os.path.exists(source):
            raise StepConfigError(f"Pipeline definition not found: {source}")
        source = _read_yaml(source)
    if isinstance(source, dict):
        source = source.get('steps') or source.get('pipeline')
    if not isinstance(source, list) or not source:
        raise StepConfigError("Pipeline definition must be a non-empty list of steps")

    steps = tuple(StepConfig.from_dict(entry) for entry in source)

    seen = set()
    for step in steps:
        if step.step_id in seen:
            raise StepConfigError(f"Step '{step.step_id}' appears more than once")
        seen.add(step.step_id)

    logger.info("Pipeline definition loaded: %s", ' → '.join(s.step_id for s in steps))
    return PipelineConfig(steps=steps)
