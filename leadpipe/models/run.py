"""
Run model — Redis-backed live state for one pipeline run.

A Run is a dataset flowing through an ordered list of enrichment steps. The
state blob is small and rewritten often; the row sets live under their own
keys so status polling never pulls tens of thousands of rows.
"""
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from leadpipe.extensions import redis_client as r


RUN_TTL = 86400 * 7  # 7 days
MAX_LOG_ENTRIES = 200


class Run:
    """
    Redis-backed Run object.

    Keys:
        run:{id}          → JSON blob of run state
        run:{id}:input    → JSON list of input rows
        run:{id}:output   → JSON list of output rows
        run:{id}:cancel   → cooperative cancel flag
        runs:list         → sorted set of run IDs by creation time
    """

    def __init__(
        self,
        id: str = None,
        status: str = 'queued',
        name: str = '',
        pipeline: List[Dict] = None,
    ):
        self.id = id or str(uuid.uuid4())
        self.status = status
        self.name = name
        self.pipeline = pipeline or []
        self.created_at = datetime.now().isoformat()
        self.updated_at = self.created_at
        self.current_step = ''
        self.step_status = {s.get('step', ''): 'pending' for s in self.pipeline}
        self.step_progress = {s.get('step', ''): 0 for s in self.pipeline}
        self.logs: List[Dict] = []
        self.errors: List[Dict] = []
        self.input_count = 0
        self.output_count = 0
        self.use_file_storage = False
        self.analytics: Dict[str, Dict] = {}
        self.totals: Dict[str, Any] = {}
        self.summary = ''
        self.error = ''

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'status': self.status,
            'name': self.name,
            'pipeline': self.pipeline,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'current_step': self.current_step,
            'step_status': self.step_status,
            'step_progress': self.step_progress,
            'logs': self.logs[-MAX_LOG_ENTRIES:],
            'errors': self.errors[-20:],
            'input_count': self.input_count,
            'output_count': self.output_count,
            'use_file_storage': self.use_file_storage,
            'analytics': self.analytics,
            'totals': self.totals,
            'summary': self.summary,
            'error': self.error,
        }

    def save(self):
        """Persist run state to Redis."""
        self.updated_at = datetime.now().isoformat()
        r.setex(f'run:{self.id}', RUN_TTL, json.dumps(self.to_dict()))
        r.zadd('runs:list', {self.id: datetime.fromisoformat(self.created_at).timestamp()})
        return self

    # ── Step tracking ─────────────────────────────────────────────────

    def update_step(self, step_id: str, status: str):
        """Record a step status change; a processing step becomes the current step."""
        self.step_status[step_id] = status
        if status == 'processing':
            self.current_step = step_id
        self.save()

    def set_progress(self, step_id: str, percent: int):
        self.step_progress[step_id] = max(0, min(100, int(percent)))
        self.save()

    def add_log(self, message: str, step_id: str = '', level: str = 'info'):
        """Append a log line. Flushed to Redis on the next save()."""
        self.logs.append({
            'step': step_id,
            'level': level,
            'message': message,
            'timestamp': datetime.now().isoformat(),
        })
        if len(self.logs) > MAX_LOG_ENTRIES:
            del self.logs[:-MAX_LOG_ENTRIES]

    def add_error(self, step_id: str, message: str):
        self.errors.append({
            'step': step_id,
            'message': message,
            'timestamp': datetime.now().isoformat(),
        })
        self.save()

    # ── Row storage ───────────────────────────────────────────────────

    def save_rows(self, rows: List[Dict], kind: str = 'input'):
        r.setex(f'run:{self.id}:{kind}', RUN_TTL, json.dumps(rows, default=str))
        if kind == 'input':
            self.input_count = len(rows)
        else:
            self.output_count = len(rows)

    def load_rows(self, kind: str = 'input') -> List[Dict]:
        data = r.get(f'run:{self.id}:{kind}')
        return json.loads(data) if data else []

    # ── Cancellation ──────────────────────────────────────────────────

    def request_cancel(self):
        """Raise the cooperative cancel flag; the worker checks it between steps."""
        r.setex(f'run:{self.id}:cancel', RUN_TTL, '1')
        if self.status in ('queued', 'running'):
            self.status = 'cancelling'
        self.save()

    def is_cancel_requested(self) -> bool:
        return bool(r.get(f'run:{self.id}:cancel'))

    # ── Terminal states ───────────────────────────────────────────────

    def complete(self):
        self.status = 'completed'
        self.save()

    def cancel(self):
        self.status = 'cancelled'
        self.save()

    def fail(self, reason: str = ''):
        self.status = 'failed'
        if reason:
            self.error = reason
            self.add_error(self.current_step, reason)
        self.save()

    # ── Loading ───────────────────────────────────────────────────────

    @classmethod
    def _from_dict(cls, d: Dict) -> 'Run':
        run = cls.__new__(cls)
        run.id = d['id']
        run.status = d['status']
        run.name = d.get('name', '')
        run.pipeline = d.get('pipeline', [])
        run.created_at = d['created_at']
        run.updated_at = d.get('updated_at', run.created_at)
        run.current_step = d.get('current_step', '')
        run.step_status = d.get('step_status', {})
        run.step_progress = d.get('step_progress', {})
        run.logs = d.get('logs', [])
        run.errors = d.get('errors', [])
        run.input_count = d.get('input_count', 0)
        run.output_count = d.get('output_count', 0)
        run.use_file_storage = d.get('use_file_storage', False)
        run.analytics = d.get('analytics', {})
        run.totals = d.get('totals', {})
        run.summary = d.get('summary', '')
        run.error = d.get('error', '')
        return run

    @classmethod
    def _from_db_run(cls, db_run) -> 'Run':
        """Build a Run from a DbRun row (Redis entry expired)."""
        created = db_run.created_at.isoformat() if db_run.created_at else ''
        return cls._from_dict({
            'id': db_run.id,
            'status': db_run.status,
            'name': db_run.name or '',
            'pipeline': db_run.pipeline or [],
            'created_at': created,
            'updated_at': db_run.finished_at.isoformat() if db_run.finished_at else created,
            'current_step': db_run.current_step or '',
            'step_status': db_run.step_status or {},
            'input_count': db_run.input_count or 0,
            'output_count': db_run.output_count or 0,
            'use_file_storage': bool(db_run.use_file_storage),
            'totals': db_run.totals or {},
            'summary': db_run.summary or '',
            'error': db_run.error or '',
        })

    @classmethod
    def load(cls, run_id: str) -> Optional['Run']:
        """Load a run from Redis, falling back to the database."""
        data = r.get(f'run:{run_id}')
        if data:
            return cls._from_dict(json.loads(data))

        from leadpipe.database import get_session
        from leadpipe.models.db_run import DbRun
        session = get_session()
        try:
            db_run = session.get(DbRun, run_id)
            return cls._from_db_run(db_run) if db_run else None
        finally:
            session.close()

    @classmethod
    def list_recent(cls, limit: int = 20) -> List['Run']:
        """List recent runs from Redis, falling back to the database."""
        run_ids = r.zrevrange('runs:list', 0, limit - 1)
        if run_ids:
            runs = []
            for run_id in run_ids:
                run = cls.load(run_id)
                if run:
                    runs.append(run)
            return runs

        from leadpipe.database import get_session
        from leadpipe.models.db_run import DbRun
        session = get_session()
        try:
            db_runs = session.query(DbRun).order_by(DbRun.created_at.desc()).limit(limit).all()
            return [cls._from_db_run(row) for row in db_runs]
        finally:
            session.close()

    @classmethod
    def delete(cls, run_id: str):
        """Delete a run and its row sets from Redis."""
        r.delete(f'run:{run_id}', f'run:{run_id}:input', f'run:{run_id}:output', f'run:{run_id}:cancel')
        r.zrem('runs:list', run_id)
