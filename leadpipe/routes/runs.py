"""
Run routes — launch, inspect, cancel and report on pipeline runs.
"""
import logging
from flask import Blueprint, request, jsonify

from leadpipe.models.run import Run
from leadpipe.pipeline.errors import StepConfigError
from leadpipe.pipeline.manager import launch_run, get_run_status, request_cancel, get_steps_info
from leadpipe.pipeline.report import build_processing_report
from leadpipe.services.db import load_step_metrics

logger = logging.getLogger('routes.runs')

bp = Blueprint('runs', __name__)


# ── Run API ──────────────────────────────────────────────────────────────────

@bp.route('/api/runs', methods=['POST'])
def create_run():
    """Create a new pipeline run: {"pipeline": [...], "rows": [...], "name": "..."}."""
    data = request.get_json(silent=True) or {}
    pipeline = data.get('pipeline')
    rows = data.get('rows')

    if not pipeline:
        return jsonify({'error': 'pipeline is required'}), 400
    if not isinstance(rows, list) or not rows:
        return jsonify({'error': 'rows must be a non-empty list'}), 400

    try:
        run = launch_run(pipeline, rows, name=data.get('name') or '')
    except (StepConfigError, ValueError) as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error("Failed to launch run", exc_info=True)
        return jsonify({'error': str(e)}), 500
    return jsonify(run.to_dict()), 202


@bp.route('/api/runs')
def list_runs():
    """List recent pipeline runs."""
    limit = request.args.get('limit', 20, type=int)
    runs = Run.list_recent(limit=limit)
    return jsonify([run.to_dict() for run in runs])


@bp.route('/api/runs/<run_id>')
def get_run(run_id):
    """Get a single run's status."""
    status = get_run_status(run_id)
    if not status:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(status)


@bp.route('/api/runs/<run_id>/cancel', methods=['POST'])
def cancel_run(run_id):
    """Stop a run after its current step."""
    run = request_cancel(run_id)
    if not run:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(run.to_dict()), 202


@bp.route('/api/runs/<run_id>/metrics')
def run_metrics(run_id):
    """Per-step (and sub-step) usage plus totals."""
    run = Run.load(run_id)
    if not run:
        return jsonify({'error': 'Run not found'}), 404

    per_step = run.analytics
    if not per_step:
        # Redis state expired: rebuild from the stored step metrics
        per_step = {m['step_id']: m for m in load_step_metrics(run_id)}
    return jsonify({'run_id': run_id, 'status': run.status, 'per_step': per_step, 'totals': run.totals})


@bp.route('/api/runs/<run_id>/report')
def run_report(run_id):
    """Flattened Category/Metric/Value processing report for a finished run."""
    run = Run.load(run_id)
    if not run:
        return jsonify({'error': 'Run not found'}), 404
    if run.status not in ('completed', 'cancelled', 'failed'):
        return jsonify({'error': f'Run is still {run.status}'}), 409

    rows = run.load_rows('output')
    report = build_processing_report(
        rows,
        {'per_step': run.analytics, 'totals': run.totals},
        run_name=run.name or run.id,
    )
    return jsonify({'run_id': run_id, 'report': report})


@bp.route('/api/steps')
def list_steps():
    """Registered step adapters and their metadata."""
    return jsonify(get_steps_info())
