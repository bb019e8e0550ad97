"""
Database persistence helpers — called from the run manager.

All writes are wrapped in try/except so the pipeline never blocks on DB errors.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List

from leadpipe.database import get_session
from leadpipe.models.db_run import DbRun
from leadpipe.models.step_metric import StepMetricRecord

logger = logging.getLogger('services.db')

TERMINAL_STATUSES = ('completed', 'failed', 'cancelled')


def persist_run(run, tagged_count: int = None):
    """
    INSERT or UPDATE a run record.

    Called at launch (INSERT) and when the run ends (UPDATE).
    """
    session = get_session()
    try:
        db_run = session.get(DbRun, run.id)
        if db_run is None:
            db_run = DbRun(
                id=run.id,
                name=run.name,
                status=run.status,
                pipeline=run.pipeline,
                input_count=run.input_count,
                created_at=datetime.fromisoformat(run.created_at),
            )
            session.add(db_run)
        else:
            db_run.status = run.status
            db_run.current_step = run.current_step or ''
            db_run.step_status = run.step_status
            db_run.input_count = run.input_count
            db_run.output_count = run.output_count
            db_run.error_count = len(run.errors)
            db_run.use_file_storage = run.use_file_storage
            db_run.totals = run.totals or None
            db_run.summary = run.summary or None
            db_run.error = run.error or None
            if tagged_count is not None:
                db_run.tagged_count = tagged_count
            if run.status in TERMINAL_STATUSES:
                db_run.finished_at = datetime.now()

        session.commit()
    except Exception:
        session.rollback()
        logger.error("Failed to persist run %s", run.id, exc_info=True)
    finally:
        session.close()


def persist_step_metrics(run_id: str, per_step: Dict[str, Dict[str, Any]]):
    """Replace the stored step metrics of a run with MetricsAggregator.get_all()['per_step']."""
    session = get_session()
    try:
        session.query(StepMetricRecord).filter_by(run_id=run_id).delete()
        for step_id, m in per_step.items():
            specific = m.get('specific_metrics') or {}
            session.add(StepMetricRecord(
                run_id=run_id,
                step_id=step_id,
                api_tool=m.get('api_tool', ''),
                is_substep=bool(specific.get('isSubstep')),
                parent_step=specific.get('parentStep'),
                tokens_used=m.get('tokens_used', 0),
                credits_used=m.get('credits_used', 0),
                api_calls=m.get('api_calls', 0),
                cache_hits=m.get('cache_hits', 0),
                errors=m.get('errors', 0),
                processing_time_ms=m.get('processing_time', 0),
                input_count=m.get('input_count', 0),
                output_count=m.get('output_count', 0),
                filtered_count=m.get('filtered_count', 0),
                specific_metrics=specific or None,
            ))
        session.commit()
    except Exception:
        session.rollback()
        logger.error("Failed to persist step metrics for run %s", run_id, exc_info=True)
    finally:
        session.close()


def load_step_metrics(run_id: str) -> List[Dict[str, Any]]:
    """Stored step metrics for a run, in insertion order."""
    session = get_session()
    try:
        records = (session.query(StepMetricRecord)
                   .filter_by(run_id=run_id)
                   .order_by(StepMetricRecord.id)
                   .all())
        return [
            {
                'step_id': rec.step_id,
                'api_tool': rec.api_tool or '',
                'is_substep': bool(rec.is_substep),
                'parent_step': rec.parent_step,
                'tokens_used': rec.tokens_used or 0,
                'credits_used': rec.credits_used or 0,
                'api_calls': rec.api_calls or 0,
                'cache_hits': rec.cache_hits or 0,
                'errors': rec.errors or 0,
                'processing_time': rec.processing_time_ms or 0,
                'input_count': rec.input_count or 0,
                'output_count': rec.output_count or 0,
                'filtered_count': rec.filtered_count or 0,
                'specific_metrics': rec.specific_metrics or {},
            }
            for rec in records
        ]
    except Exception:
        logger.error("Failed to load step metrics for run %s", run_id, exc_info=True)
        return []
    finally:
        session.close()


def step_usage_history(step_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Recent per-run usage of one step, newest first, for cross-run comparison."""
    session = get_session()
    try:
        records = (session.query(StepMetricRecord)
                   .filter_by(step_id=step_id)
                   .order_by(StepMetricRecord.created_at.desc(), StepMetricRecord.id.desc())
                   .limit(limit)
                   .all())
        return [
            {
                'run_id': rec.run_id,
                'tokens_used': rec.tokens_used or 0,
                'credits_used': rec.credits_used or 0,
                'api_calls': rec.api_calls or 0,
                'cache_hits': rec.cache_hits or 0,
                'input_count': rec.input_count or 0,
                'processing_time': rec.processing_time_ms or 0,
            }
            for rec in records
        ]
    except Exception:
        logger.error("Failed to load usage history for step %s", step_id, exc_info=True)
        return []
    finally:
        session.close()
