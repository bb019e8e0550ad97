"""
Structured logging configuration.

configure_logging() is called once from create_app().
LOG_FORMAT picks text (human-readable) or single-line JSON; LOG_LEVEL
defaults to INFO.

Every record carries the run and step it was logged under. run_context()
and step_context() set them for the current thread, so the RQ job log
lines can be grepped per run without passing ids into every call.
"""
import contextvars
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone


_run_id = contextvars.ContextVar('run_id', default='')
_step_id = contextvars.ContextVar('step_id', default='')


@contextmanager
def run_context(run_id: str):
    """Tag log records emitted inside the block with run_id."""
    token = _run_id.set(run_id or '')
    try:
        yield
    finally:
        _run_id.reset(token)


@contextmanager
def step_context(step_id: str):
    """Tag log records emitted inside the block with step_id."""
    token = _step_id.set(step_id or '')
    try:
        yield
    finally:
        _step_id.reset(token)


class RunContextFilter(logging.Filter):
    """Copies the active run/step ids onto each record (an explicit extra= wins)."""

    def filter(self, record):
        if not getattr(record, 'run_id', ''):
            record.run_id = _run_id.get()
        if not getattr(record, 'step_id', ''):
            record.step_id = _step_id.get()
        record.context = ''
        if record.run_id:
            record.context = f" [run={record.run_id}" + (f" step={record.step_id}]" if record.step_id else ']')
        return True


class JSONFormatter(logging.Formatter):
    """Single-line JSON log formatter for log aggregators."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for key in ('run_id', 'step_id'):
            value = getattr(record, key, None)
            if value:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


TEXT_FORMAT = '[%(asctime)s] %(levelname)s %(name)s%(context)s: %(message)s'

# Chatty at INFO: HTTP clients and the RQ worker loop
_NOISY_LOGGERS = [
    'urllib3',
    'openai',
    'httpcore',
    'httpx',
    'rq.worker',
]


def configure_logging(app=None):
    """
    Install one stderr handler on the root logger.

    Environment variables:
        LOG_LEVEL  Python log level name (default: INFO)
        LOG_FORMAT "text" (default) or "json"
    """
    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    log_format = os.getenv('LOG_FORMAT', 'text').lower()

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(RunContextFilter())
    if log_format == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if app is not None:
        app.logger.setLevel(level)
