"""
Pipeline Manager — run lifecycle around the PipelineOrchestrator.

  launch_run    validate the definition, store the rows, enqueue run_pipeline on RQ
  run_pipeline  (RQ job) drive the orchestrator, mirror its events into the Run,
                store output rows and metrics, summarize, notify
  request_cancel  raise the cooperative cancel flag

Steps are looked up from STEP_REGISTRY (mock adapters when MOCK_PIPELINE is set).
"""
import logging
import threading
from typing import Any, Dict, List, Optional, Type

from leadpipe.config import LARGE_DATASET_THRESHOLD, MOCK_PIPELINE, RUN_JOB_TIMEOUT
from leadpipe.logging_config import run_context
from leadpipe.models.run import Run
from leadpipe.pipeline.base import StepAdapter, get_pipeline_info
from leadpipe.pipeline.errors import PipelineError, StepConfigError
from leadpipe.pipeline.events import EventBus, PipelineEvent, LOG, PROGRESS, STATUS
from leadpipe.pipeline.metrics import MetricsAggregator
from leadpipe.pipeline.orchestrator import PipelineOrchestrator, RunResult
from leadpipe.pipeline.report import processing_stats
from leadpipe.pipeline.step_config import load_pipeline_config
from leadpipe.services import api_client
from leadpipe.services.db import persist_run, persist_step_metrics
from leadpipe.services.notifications import notify_run_complete, notify_run_failed

logger = logging.getLogger('pipeline.manager')

# Import adapter registries from each step module
from leadpipe.pipeline import company_type as company_type_mod
from leadpipe.pipeline import person_lookup as person_lookup_mod
from leadpipe.pipeline import prompt_analysis as prompt_analysis_mod


# ── Lazy RQ queue (avoids import-time Redis connection) ───────────────────────

_queue = None

def _get_queue():
    global _queue
    if _queue is None:
        from leadpipe.extensions import redis_client
        from rq import Queue
        _queue = Queue(connection=redis_client)
    return _queue


# ── Step registry ─────────────────────────────────────────────────────────────
# Maps step id → adapter class

if MOCK_PIPELINE:
    from leadpipe.pipeline.mock_adapters import MOCK_ADAPTERS
    STEP_REGISTRY: Dict[str, Type[StepAdapter]] = dict(MOCK_ADAPTERS)
    logger.info("MOCK_PIPELINE active — using fake adapters")
else:
    STEP_REGISTRY: Dict[str, Type[StepAdapter]] = {
        **person_lookup_mod.ADAPTERS,
        **company_type_mod.ADAPTERS,
        **prompt_analysis_mod.ADAPTERS,
    }


# ── Public API ────────────────────────────────────────────────────────────────

def validate_pipeline(pipeline) -> List[Dict[str, Any]]:
    """
    Parse a pipeline definition and check every step id against the registry.
    Returns the normalized list form. Raises StepConfigError.
    """
    config = load_pipeline_config(pipeline)
    for step in config:
        if step.step_id not in STEP_REGISTRY:
            raise StepConfigError(f"Unknown step '{step.step_id}'. Available: {sorted(STEP_REGISTRY)}")
        if step.step_id == 'promptAnalysis' and not (step.config.get('prompt') or '').strip():
            raise StepConfigError("promptAnalysis requires a non-empty 'prompt' in its config")
    return config.to_list()


def launch_run(pipeline, rows: List[Dict[str, Any]], name: str = '') -> Run:
    """
    Create a new Run and enqueue the pipeline as a background RQ job.

    Raises StepConfigError for an invalid definition and ValueError when
    rows is not a non-empty list of objects.
    """
    steps = validate_pipeline(pipeline)
    if not isinstance(rows, list) or not rows:
        raise ValueError("rows must be a non-empty list")
    if not all(isinstance(row, dict) for row in rows):
        raise ValueError("every row must be an object")

    run = Run(name=name, pipeline=steps)
    run.save_rows(rows, 'input')
    run.use_file_storage = len(rows) > LARGE_DATASET_THRESHOLD
    run.save()
    persist_run(run)

    # Launch async via RQ
    _get_queue().enqueue(run_pipeline, run.id, job_timeout=RUN_JOB_TIMEOUT)
    logger.info("Run %s queued — %d rows, steps=%s", run.id, len(rows), [s['step'] for s in steps])
    return run


def get_run_status(run_id: str) -> Optional[dict]:
    """Get the current status of a run."""
    run = Run.load(run_id)
    if not run:
        return None
    return run.to_dict()


def request_cancel(run_id: str) -> Optional[Run]:
    """
    Ask a run to stop after its current step. Returns the Run, or None if it
    does not exist. Runs that already ended are returned unchanged.
    """
    run = Run.load(run_id)
    if not run:
        return None
    if run.status in ('completed', 'failed', 'cancelled'):
        return run
    run.request_cancel()
    logger.info("Cancel requested for run %s", run_id)
    return run


def get_steps_info() -> Dict[str, Any]:
    return get_pipeline_info(STEP_REGISTRY)


# ── Event → Run bridge ────────────────────────────────────────────────────────

class RunRecorder:
    """
    EventBus listener that mirrors orchestrator events into the Redis Run.

    Status changes and logs are flushed immediately; progress is saved only
    when the percentage moves.
    """

    def __init__(self, run: Run):
        self.run = run
        self._lock = threading.Lock()

    def __call__(self, event: PipelineEvent):
        with self._lock:
            if event.kind == STATUS:
                self.run.update_step(event.step_id, event.status)
            elif event.kind == PROGRESS:
                if self.run.step_progress.get(event.step_id) != event.percent:
                    self.run.set_progress(event.step_id, event.percent)
            elif event.kind == LOG:
                self.run.add_log(event.message, event.step_id, event.level)
                self.run.save()


# ── Pipeline runner (enqueued via RQ) ─────────────────────────────────────────

def run_pipeline(run_id: str, preflight=None) -> Optional[RunResult]:
    """
    Execute every step of a run.

    The API proxy connectivity check runs before the first step (skipped for
    mock runs). The Redis cancel flag is polled between steps. A step failure
    halts the run; the rows merged so far are still stored.
    """
    with run_context(run_id):
        return _execute_run(run_id, preflight)


def _execute_run(run_id: str, preflight) -> Optional[RunResult]:
    run = Run.load(run_id)
    if not run:
        logger.error("Run %s not found", run_id)
        return None

    if preflight is None and not MOCK_PIPELINE:
        preflight = api_client.test_connection
    rows = run.load_rows('input')
    logger.info("Starting run %s — %d rows, %d steps", run_id, len(rows), len(run.pipeline))

    events = EventBus()
    events.subscribe(RunRecorder(run))
    metrics = MetricsAggregator()

    try:
        orchestrator = PipelineOrchestrator(run.pipeline, STEP_REGISTRY, metrics=metrics, events=events)
    except PipelineError as e:
        logger.error("Run %s has an invalid pipeline: %s", run_id, e)
        run.fail(f"Invalid pipeline: {e}")
        run.summary = _generate_run_summary(run, failed=True)
        run.save()
        persist_run(run)
        notify_run_failed(run)
        return None

    run.status = 'running'
    run.use_file_storage = len(rows) > orchestrator.large_dataset_threshold
    run.save()
    persist_run(run)

    result = orchestrator.run(rows, preflight=preflight, cancel_check=run.is_cancel_requested)
    analytics = orchestrator.get_complete_analytics()

    run.save_rows(result.data, 'output')
    run.analytics = result.metrics.get('per_step', {})
    run.totals = result.metrics.get('totals', {})
    persist_step_metrics(run.id, run.analytics)
    tagged = analytics['processing']['tagged_leads']

    if result.completed:
        run.summary = _generate_run_summary(run, stats=analytics['processing'])
        run.complete()
        persist_run(run, tagged_count=tagged)
        notify_run_complete(run)
        logger.info("Run %s completed — %d rows out, %d tagged", run_id, len(result.data), tagged)
    elif result.cancelled:
        run.summary = _generate_run_summary(run, stats=analytics['processing'], cancelled=True)
        run.cancel()
        persist_run(run, tagged_count=tagged)
        logger.info("Run %s cancelled at step %s", run_id, orchestrator.current_step)
    else:
        run.fail(str(result.error) if result.error else 'Pipeline stopped')
        run.summary = _generate_run_summary(run, stats=analytics['processing'], failed=True)
        run.save()
        persist_run(run, tagged_count=tagged)
        notify_run_failed(run)
        logger.error("Run %s failed — %s", run_id, run.error)

    return result


# ── Run summary generator ────────────────────────────────────────────────────

def _generate_run_summary(run, stats: Dict[str, int] = None, failed: bool = False,
                          cancelled: bool = False) -> str:
    """Human-readable summary of the run. Pure Python, no API calls."""
    stats = stats or processing_stats([])
    totals = run.totals or {}
    total = stats['total_rows'] or run.input_count or 0
    qualified = stats['qualified_leads']
    tagged = stats['tagged_leads']
    steps = [s.get('step', '') for s in run.pipeline or []]

    if failed:
        step = run.current_step or 'pre-flight'
        parts = [f"Run failed during {step}."]
        if run.error:
            parts.append(run.error.rstrip('.') + '.')
        done = [s for s in steps if run.step_status.get(s) == 'complete']
        if done:
            parts.append(f"Completed before failure: {', '.join(done)}.")
        return ' '.join(parts)

    lines = []
    verb = 'Cancelled after' if cancelled else 'Processed'
    completed_steps = [s for s in steps if run.step_status.get(s) == 'complete']
    lines.append(f"{verb} {total} rows through {len(completed_steps)} of {len(steps)} steps.")
    if total:
        lines.append(f"{qualified} qualified ({round(qualified / total * 100)}%), {tagged} tagged.")
    if stats.get('error_rows'):
        lines.append(f"{stats['error_rows']} rows hit processing errors.")

    usage = []
    if totals.get('api_calls'):
        usage.append(f"{totals['api_calls']} API calls")
    if totals.get('cache_hits'):
        usage.append(f"{totals['cache_hits']} cache hits")
    if totals.get('credits_used'):
        usage.append(f"{totals['credits_used']} credits")
    if totals.get('tokens_used'):
        usage.append(f"{totals['tokens_used']} tokens")
    if usage:
        lines.append('Usage: ' + ', '.join(usage) + '.')

    lookups = (totals.get('api_calls') or 0) + (totals.get('cache_hits') or 0)
    if lookups and totals.get('cache_hits'):
        lines.append(f"Cache served {round(totals['cache_hits'] / lookups * 100)}% of lookups.")
    return ' '.join(lines)
