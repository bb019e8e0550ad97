"""
Pipeline event channel.

The orchestrator and the adapters publish log, progress and status events
here; the run manager (and tests) subscribe. Nothing in the pipeline holds a
reference to an observer directly.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

logger = logging.getLogger('pipeline.events')

LOG = 'log'
PROGRESS = 'progress'
STATUS = 'status'


@dataclass
class PipelineEvent:
    kind: str
    step_id: str = ''
    message: str = ''
    percent: Optional[int] = None
    status: Optional[str] = None
    level: str = 'info'
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


Listener = Callable[[PipelineEvent], None]


class EventBus:
    """Synchronous fan-out to subscribed listeners. Safe to publish from worker threads."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Listener:
        with self._lock:
            self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: PipelineEvent):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # An observer must never break a run
                logger.error("Event listener %r failed on %s event", listener, event.kind, exc_info=True)


class StepEvents:
    """Per-step handle passed to adapters in place of raw callbacks."""

    def __init__(self, bus: EventBus, step_id: str):
        self.bus = bus
        self.step_id = step_id

    def log(self, message: str, level: str = 'info'):
        self.bus.publish(PipelineEvent(kind=LOG, step_id=self.step_id, message=message, level=level))

    def progress(self, percent: float, message: str = ''):
        pct = max(0, min(100, int(percent)))
        self.bus.publish(PipelineEvent(kind=PROGRESS, step_id=self.step_id, percent=pct, message=message))

    def status(self, status: str, message: str = ''):
        self.bus.publish(PipelineEvent(kind=STATUS, step_id=self.step_id, status=status, message=message))
