"""
Processing report — flattens run metrics into Category/Metric/Value rows.

Pure Python over the final rows and MetricsAggregator.get_all(); exporting
the rows (CSV, sheet, ...) is left to the caller.
"""
from typing import Any, Dict, List, Optional

from leadpipe.config import TAG_FIELD, PROCESSING_ERROR_FIELD


def processing_stats(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    """Row-level outcome counts for a dataset."""
    total = len(rows)
    errors = sum(1 for row in rows if row.get(PROCESSING_ERROR_FIELD))
    tagged = sum(1 for row in rows if row.get(TAG_FIELD))
    qualified = sum(1 for row in rows if not row.get(TAG_FIELD) and not row.get(PROCESSING_ERROR_FIELD))
    return {
        'total_rows': total,
        'processed_rows': total - errors,
        'error_rows': errors,
        'qualified_leads': qualified,
        'tagged_leads': tagged,
    }


def _line(category='', metric='', value='', unit='', notes='') -> Dict[str, Any]:
    return {'category': category, 'metric': metric, 'value': value, 'unit': unit, 'notes': notes}


def _pct(part: int, whole: int) -> str:
    return f"{(part / whole) * 100:.2f}" if whole else '0.00'


# (metric label, field, unit)
_STEP_FIELDS = [
    ('Input Rows', 'input_count', 'rows'),
    ('Output Rows', 'output_count', 'rows'),
    ('Filtered Rows', 'filtered_count', 'rows'),
    ('Tokens Used', 'tokens_used', 'tokens'),
    ('Credits Used', 'credits_used', 'credits'),
    ('API Calls', 'api_calls', 'calls'),
    ('Cache Hits', 'cache_hits', 'hits'),
    ('Errors', 'errors', 'errors'),
    ('Processing Time', 'processing_time', 'ms'),
]


def build_processing_report(
    rows: List[Dict[str, Any]],
    metrics: Dict[str, Any],
    run_name: str = '',
    total_time_ms: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Build the flattened report.

    Args:
        rows:          final dataset
        metrics:       MetricsAggregator.get_all() output ({'per_step', 'totals'})
        run_name:      label for the executive summary
        total_time_ms: wall-clock run time; defaults to the summed step time
    """
    stats = processing_stats(rows)
    per_step = metrics.get('per_step', {}) or {}
    totals = metrics.get('totals', {}) or {}
    if total_time_ms is None:
        total_time_ms = totals.get('processing_time', 0)
    total = stats['total_rows']

    report = [_line('EXECUTIVE SUMMARY')]
    if run_name:
        report.append(_line('Summary', 'Run Name', run_name))
    report.extend([
        _line('Summary', 'Total Runtime', round(total_time_ms / 1000, 2), 'seconds'),
        _line('Summary', 'Total Rows', total, 'rows'),
        _line('Summary', 'Qualified Leads', stats['qualified_leads'], 'rows', 'untagged and error-free'),
        _line('Summary', 'Filtered/Tagged Leads', stats['tagged_leads'], 'rows'),
        _line('Summary', 'Error Rate', _pct(stats['error_rows'], total), '%'),
        _line('Summary', 'Pass Rate', _pct(stats['qualified_leads'], total), '%'),
    ])

    main_steps = {k: v for k, v in per_step.items()
                  if not (v.get('specific_metrics') or {}).get('isSubstep')}
    if main_steps:
        report.append(_line())
        report.append(_line('PERFORMANCE'))
        if total:
            report.append(_line('Performance', 'Average Time Per Row',
                                round(total_time_ms / total / 1000, 3), 'seconds'))
        if total_time_ms:
            report.append(_line('Performance', 'Throughput',
                                round(total / (total_time_ms / 60000)), 'rows/minute'))
        slowest = max(main_steps.items(), key=lambda kv: kv[1].get('processing_time', 0))
        fastest = min(main_steps.items(), key=lambda kv: kv[1].get('processing_time', 0))
        report.append(_line('Performance', 'Slowest Step', slowest[0],
                            notes=f"{slowest[1].get('processing_time', 0)} ms"))
        report.append(_line('Performance', 'Fastest Step', fastest[0],
                            notes=f"{fastest[1].get('processing_time', 0)} ms"))

    for step_id, m in per_step.items():
        specific = m.get('specific_metrics') or {}
        report.append(_line())
        if specific.get('isSubstep'):
            header = f"SUB-STEP: {step_id}"
            note = f"part of {specific.get('parentStep', '')}: {specific.get('description', '')}".rstrip(': ')
        else:
            header = f"STEP: {step_id}"
            note = f"{specific.get('substepCount')} sub-steps split out" if specific.get('hasSubsteps') else ''
        report.append(_line(header, 'API Tool', m.get('api_tool', ''), notes=note))
        for label, key, unit in _STEP_FIELDS:
            report.append(_line(step_id, label, m.get(key, 0), unit))
        for key, value in specific.items():
            if key in ('isSubstep', 'parentStep', 'substepType', 'description',
                       'mainStep', 'hasSubsteps', 'substepCount'):
                continue
            report.append(_line(step_id, key, value))

    report.append(_line())
    report.append(_line('TOTAL'))
    for label, key, unit in _STEP_FIELDS:
        report.append(_line('TOTAL', label, totals.get(key, 0), unit))
    return report
