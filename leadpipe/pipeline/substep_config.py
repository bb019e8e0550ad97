"""
Sub-step attribution config loader — ratios used to split a step's usage.

YAML file with in-memory cache and hardcoded fallback if the file is missing.
The ratios are tunable defaults, not business rules.
"""
import logging
import os
from typing import Dict, List

import yaml

logger = logging.getLogger('pipeline.substeps')


_substep_config = None


def _default_config():
    """Hardcoded fallback if YAML is missing."""
    return {
        'version': 'default',
        'even_split': ['api_calls', 'processing_time'],
        'steps': {
            'personLookup': {
                'website':    {'description': 'Company website analysis',
                               'ratios': {'tokens_used': 0.25, 'credits_used': 0.40}},
                'experience': {'description': 'Employment history analysis',
                               'ratios': {'tokens_used': 0.35, 'credits_used': 0.0}},
                'sitemap':    {'description': 'Sitemap and page discovery',
                               'ratios': {'tokens_used': 0.15, 'credits_used': 0.60}},
            },
        },
    }


def load_substep_config() -> dict:
    """Load sub-step config from YAML, with in-memory cache and hardcoded fallback."""
    global _substep_config
    if _substep_config is not None:
        return _substep_config

    config_path = os.path.join(os.path.dirname(__file__), 'substep_config.yaml')
    try:
        with open(config_path, 'r') as f:
            _substep_config = yaml.safe_load(f)
        logger.info("Sub-step config loaded from YAML (version=%s)", _substep_config.get('version', '?'))
    except Exception as e:
        logger.warning("Sub-step YAML not loaded (%s), using defaults", e)
        _substep_config = _default_config()

    return _substep_config


def substep_id(step_id: str, substep: str) -> str:
    return f"{step_id}_{substep}"


def get_substep_description(step_id: str, substep: str) -> str:
    cfg = load_substep_config()
    return cfg.get('steps', {}).get(step_id, {}).get(substep, {}).get('description', substep)


def get_substep_ratios(step_id: str, enabled: List[str]) -> Dict[str, Dict[str, float]]:
    """
    Ratios for the enabled sub-steps of a step.

    Returns { "personLookup_website": {"tokens_used": 0.25, "api_calls": 0.25, ...}, ... }.
    Sub-steps without a configured entry get zero ratios for the fixed fields.
    """
    if not enabled:
        return {}
    cfg = load_substep_config()
    configured = cfg.get('steps', {}).get(step_id, {})
    even_fields = cfg.get('even_split', [])
    even_share = 1.0 / (len(enabled) + 1)

    result = {}
    for name in enabled:
        entry = configured.get(name)
        if entry is None:
            logger.warning("No sub-step ratios configured for %s.%s", step_id, name)
            entry = {}
        ratios = {k: float(v) for k, v in (entry.get('ratios') or {}).items()}
        for field_name in even_fields:
            ratios.setdefault(field_name, even_share)
        result[substep_id(step_id, name)] = ratios
    return result


def reset_cache():
    """Reset the in-memory cache (useful for testing)."""
    global _substep_config
    _substep_config = None
