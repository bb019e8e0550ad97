"""
Pipeline orchestrator — drives an ordered list of enrichment steps over a dataset.

States:
    Idle → Running → StepComplete → Running ... → Done
                   ↘ StepError → Halted
    (any) → Cancelled

Each advance() runs exactly one step:
  1. select the untagged rows
  2. hand copies to the step adapter
  3. apply the step's filter to the adapter output
  4. merge the output back into the full row list (order preserved)
  5. record usage (and split it into sub-steps when the step fans out)

Steps are strictly sequential. Adapter failures halt the run at that step;
row- and chunk-level problems are the adapter's to absorb. Everything the
orchestrator wants an observer to know goes out through the EventBus.
"""
import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

from leadpipe.config import TAG_FIELD, LARGE_DATASET_THRESHOLD
from leadpipe.logging_config import step_context
from leadpipe.pipeline.base import StepAdapter, StepResult, UsageSummary, get_adapter
from leadpipe.pipeline.errors import PipelineError, PreflightError, StepError
from leadpipe.pipeline.events import EventBus, PipelineEvent, StepEvents, LOG, STATUS
from leadpipe.pipeline.filters import FilterEngine
from leadpipe.pipeline.merge import ResultMerger
from leadpipe.pipeline.metrics import MetricsAggregator
from leadpipe.pipeline.report import processing_stats
from leadpipe.pipeline.step_config import PipelineConfig, load_pipeline_config
from leadpipe.pipeline.substep_config import get_substep_ratios, get_substep_description

logger = logging.getLogger('pipeline.orchestrator')

_LEVELS = {'info': logging.INFO, 'warning': logging.WARNING, 'error': logging.ERROR}


@dataclass
class RunResult:
    completed: bool
    error: Optional[PipelineError]
    data: List[Dict[str, Any]]
    analytics: Dict[str, Dict[str, Any]]
    cancelled: bool = False
    metrics: Dict[str, Any] = field(default_factory=dict)


class PipelineOrchestrator:
    """
    One instance per run. Holds the pipeline definition, the current
    position and the authoritative row list.

    Args:
        pipeline:  PipelineConfig or anything load_pipeline_config accepts
        registry:  { step_id: StepAdapter subclass }; resolved here, so an
                   unknown step id fails construction
        metrics:   MetricsAggregator for this run (a fresh one by default)
        events:    EventBus to publish to (a fresh one by default)
    """

    def __init__(
        self,
        pipeline,
        registry: Dict[str, Type[StepAdapter]],
        metrics: MetricsAggregator = None,
        events: EventBus = None,
        filter_engine: FilterEngine = None,
        merger: ResultMerger = None,
        large_dataset_threshold: int = LARGE_DATASET_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pipeline: PipelineConfig = load_pipeline_config(pipeline)
        self.adapters: Dict[str, StepAdapter] = {
            step.step_id: get_adapter(registry, step.step_id) for step in self.pipeline
        }
        self.metrics = metrics or MetricsAggregator()
        self.events = events or EventBus()
        self.filter_engine = filter_engine or FilterEngine()
        self.merger = merger or ResultMerger()
        self.large_dataset_threshold = large_dataset_threshold
        self.clock = clock

        self._lock = threading.Lock()
        self.rows: List[Dict[str, Any]] = []
        self.current_index = 0
        self.step_status: Dict[str, str] = {s.step_id: 'pending' for s in self.pipeline}
        self.analytics: Dict[str, UsageSummary] = {}
        self.is_processing = False
        self.is_cancelling = False
        self.done = False
        self.cancelled = False
        self.error: Optional[PipelineError] = None
        self._started = None
        self._elapsed_ms = 0

    # ── Event helpers ─────────────────────────────────────────────────

    def _log(self, message: str, step_id: str = '', level: str = 'info'):
        logger.log(_LEVELS.get(level, logging.INFO), "%s%s", f"[{step_id}] " if step_id else '', message)
        self.events.publish(PipelineEvent(kind=LOG, step_id=step_id, message=message, level=level))

    def _set_status(self, step_id: str, status: str, message: str = ''):
        self.step_status[step_id] = status
        self.events.publish(PipelineEvent(kind=STATUS, step_id=step_id, status=status, message=message))

    # ── State ─────────────────────────────────────────────────────────

    def load(self, rows: List[Dict[str, Any]]):
        """Replace the dataset and rewind to the first step."""
        with self._lock:
            if self.is_processing:
                raise PipelineError("Cannot load rows while a step is processing")
            self.rows = [dict(row) for row in rows]
            self.current_index = 0
            self.step_status = {s.step_id: 'pending' for s in self.pipeline}
            self.analytics = {}
            self.is_cancelling = False
            self.done = False
            self.cancelled = False
            self.error = None
            self._started = None
            self._elapsed_ms = 0

    @property
    def use_file_storage(self) -> bool:
        """Large datasets keep their rows out of the run state blob."""
        return len(self.rows) > self.large_dataset_threshold

    @property
    def current_step(self) -> Optional[str]:
        if self.current_index < len(self.pipeline):
            return self.pipeline[self.current_index].step_id
        return None

    def get_state(self) -> Dict[str, Any]:
        return {
            'steps': self.pipeline.step_ids,
            'current_index': self.current_index,
            'current_step': self.current_step,
            'step_status': dict(self.step_status),
            'is_processing': self.is_processing,
            'is_cancelling': self.is_cancelling,
            'done': self.done,
            'cancelled': self.cancelled,
            'error': str(self.error) if self.error else None,
            'row_count': len(self.rows),
            'use_file_storage': self.use_file_storage,
        }

    # ── Stepping ──────────────────────────────────────────────────────

    def advance(self) -> bool:
        """
        Run the next step. Returns True while more steps remain, False when
        the run is finished, halted, cancelled, or a step is already running.
        """
        with self._lock:
            if self.is_processing or self.done or self.is_cancelling:
                return False
            if self.current_index >= len(self.pipeline):
                self.done = True
                return False
            self.is_processing = True
            if self._started is None:
                self._started = self.clock()

        step = self.pipeline[self.current_index]
        try:
            self._set_status(step.step_id, 'processing')
            with step_context(step.step_id):
                self._execute_step(step)
        except Exception as e:
            error = e if isinstance(e, StepError) else StepError(step.step_id, e)
            logger.error("Step '%s' failed", step.step_id, exc_info=True)
            with self._lock:
                self.error = error
                self.done = True
                self.is_processing = False
                self._finish_clock()
            self._set_status(step.step_id, 'error', str(error))
            self._log(f"Pipeline halted: {error}", step.step_id, level='error')
            return False

        with self._lock:
            self.current_index += 1
            self.is_processing = False
            cancelling = self.is_cancelling
            finished = self.current_index >= len(self.pipeline)
            if finished:
                self.done = True
                self._finish_clock()
        self._set_status(step.step_id, 'complete')

        if cancelling and not finished:
            self._finalize_cancel()
            return False
        if finished:
            self._log("All steps complete")
            return False
        return True

    def _execute_step(self, step):
        adapter = self.adapters[step.step_id]
        untagged = [row for row in self.rows if not row.get(TAG_FIELD)]
        skipped = len(self.rows) - len(untagged)
        self._log(f"Starting step {self.current_index + 1}/{len(self.pipeline)} — "
                  f"{len(untagged)} rows to process, {skipped} tagged rows skipped", step.step_id)

        config = step.config_copy()
        started = self.clock()
        result = adapter.process(copy.deepcopy(untagged), config, StepEvents(self.events, step.step_id))
        if not isinstance(result, StepResult) or not isinstance(result.data, list):
            raise StepError(step.step_id, message=f"Step '{step.step_id}' returned an invalid result")

        data = result.data
        if step.filter and step.filter.rules:
            self.filter_engine.apply_filters(data, step.filter, text_field=adapter.analysis_field)

        self.rows = self.merger.merge(self.rows, untagged, data)

        usage = result.analytics.copy() if isinstance(result.analytics, UsageSummary) \
            else UsageSummary.from_dict(result.analytics)
        still_untagged = sum(1 for row in data if not row.get(TAG_FIELD))
        usage.input_count = len(untagged)
        usage.output_count = still_untagged
        usage.filtered_count = len(untagged) - still_untagged
        usage.processing_time = int((self.clock() - started) * 1000)

        self.metrics.record(step.step_id, usage)
        if adapter.api_tool:
            self.metrics.set_api_tool(step.step_id, adapter.api_tool)
        substeps = adapter.enabled_substeps(config)
        if substeps:
            ratios = get_substep_ratios(step.step_id, substeps)
            descriptions = {sid: get_substep_description(step.step_id, sid[len(step.step_id) + 1:])
                            for sid in ratios}
            self.metrics.split_into_substeps(step.step_id, ratios, descriptions)
        self.analytics[step.step_id] = usage

        self._log(f"Step complete — {usage.output_count} rows passed, {usage.filtered_count} tagged, "
                  f"{usage.errors} errors, {usage.api_calls} API calls, {usage.cache_hits} cache hits",
                  step.step_id)

    # ── Whole-run driver ──────────────────────────────────────────────

    def run(
        self,
        initial_rows: List[Dict[str, Any]],
        preflight: Callable[[], Any] = None,
        cancel_check: Callable[[], bool] = None,
    ) -> RunResult:
        """
        Run every step over initial_rows.

        preflight runs once before the first step; if it raises or returns
        False the run aborts with a PreflightError and no row is touched.
        cancel_check is polled between steps; returning True cancels the run.
        A failing cancel_check counts as "not cancelled" so the run can finish.
        """
        self.load(initial_rows)
        if self.use_file_storage:
            self._log(f"Large dataset ({len(self.rows)} rows) — rows kept out of run state")

        if preflight is not None:
            try:
                ok = preflight()
            except Exception as e:
                ok = False
                reason = str(e)
            else:
                reason = 'connectivity check returned a failure'
            if ok is False:
                self.error = PreflightError(f"Pre-flight check failed: {reason}")
                self.done = True
                self._log(str(self.error), level='error')
                return self.result()
            self._log("Pre-flight connectivity check passed")

        while True:
            if cancel_check is not None and self._cancel_requested(cancel_check):
                self.cancel()
            if not self.advance():
                break
        return self.result()

    def _cancel_requested(self, cancel_check: Callable[[], bool]) -> bool:
        try:
            return bool(cancel_check())
        except Exception as e:
            logger.warning("Cancel check failed, continuing: %s", e, exc_info=True)
            self._log(f"Cancel check failed: {e}", self.current_step or '', level='warning')
            return False

    def cancel(self):
        """
        Stop after the step in flight (if any). Rows already merged are kept.
        The next pending step is marked cancelled.
        """
        with self._lock:
            if self.done or self.is_cancelling:
                return
            self.is_cancelling = True
            in_flight = self.is_processing
        if in_flight:
            self._log("Cancellation requested — finishing the current step first")
        else:
            self._finalize_cancel()

    def _finalize_cancel(self):
        with self._lock:
            self.done = True
            self.cancelled = True
            self._finish_clock()
            step_id = self.current_step
        if step_id:
            self._set_status(step_id, 'cancelled')
        self._log("Pipeline cancelled", level='warning')

    def _finish_clock(self):
        if self._started is not None:
            self._elapsed_ms = int((self.clock() - self._started) * 1000)

    # ── Results ───────────────────────────────────────────────────────

    def result(self) -> RunResult:
        completed = (self.done and self.error is None and not self.cancelled
                     and self.current_index >= len(self.pipeline))
        return RunResult(
            completed=completed,
            error=self.error,
            data=self.rows,
            analytics={step_id: usage.to_dict() for step_id, usage in self.analytics.items()},
            cancelled=self.cancelled,
            metrics=self.metrics.get_all(),
        )

    def get_complete_analytics(self) -> Dict[str, Any]:
        """Per-step analytics, split metrics, row statistics and run timing."""
        return {
            'steps': {step_id: usage.to_dict() for step_id, usage in self.analytics.items()},
            'metrics': self.metrics.get_all(),
            'processing': processing_stats(self.rows),
            'step_status': dict(self.step_status),
            'total_time_ms': self._elapsed_ms,
            'use_file_storage': self.use_file_storage,
        }
