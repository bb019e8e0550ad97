"""Tests for leadpipe.services.db — run and step metric persistence."""
from unittest.mock import MagicMock, patch

from leadpipe.models.db_run import DbRun
from leadpipe.models.step_metric import StepMetricRecord
from leadpipe.services.db import load_step_metrics, persist_run, persist_step_metrics, step_usage_history


PER_STEP = {
    'personLookup': {'api_tool': 'Apollo', 'tokens_used': 250, 'credits_used': 0, 'api_calls': 10,
                     'cache_hits': 6, 'errors': 2, 'processing_time': 2000, 'input_count': 20,
                     'output_count': 18, 'filtered_count': 2,
                     'specific_metrics': {'mainStep': True, 'hasSubsteps': True, 'substepCount': 1}},
    'personLookup_website': {'api_tool': 'Apollo', 'tokens_used': 750, 'credits_used': 10, 'api_calls': 30,
                             'processing_time': 6000, 'input_count': 20, 'output_count': 18,
                             'specific_metrics': {'isSubstep': True, 'parentStep': 'personLookup'}},
}


class TestPersistRun:

    def test_insert_then_update(self, make_run, db_session):
        run = make_run()
        persist_run(run)
        assert db_session.get(DbRun, run.id).status == 'queued'

        run.status = 'completed'
        run.output_count = 2
        run.totals = {'api_calls': 3}
        run.summary = 'Processed 3 rows.'
        persist_run(run, tagged_count=1)

        db_session.expire_all()
        stored = db_session.get(DbRun, run.id)
        assert stored.status == 'completed'
        assert stored.tagged_count == 1
        assert stored.totals == {'api_calls': 3}
        assert stored.finished_at is not None

    def test_non_terminal_has_no_finish_time(self, make_run, db_session):
        run = make_run()
        persist_run(run)
        run.status = 'running'
        persist_run(run)
        db_session.expire_all()
        assert db_session.get(DbRun, run.id).finished_at is None

    def test_db_error_swallowed(self, make_run):
        session = MagicMock()
        session.get.side_effect = RuntimeError('db down')
        with patch('leadpipe.services.db.get_session', return_value=session):
            persist_run(make_run())
        session.rollback.assert_called_once()
        session.close.assert_called_once()


class TestStepMetrics:

    def test_persist_and_load(self, db_session):
        persist_step_metrics('run-1', PER_STEP)
        loaded = load_step_metrics('run-1')
        assert [m['step_id'] for m in loaded] == ['personLookup', 'personLookup_website']
        assert loaded[1]['is_substep'] is True
        assert loaded[1]['parent_step'] == 'personLookup'
        assert loaded[1]['processing_time'] == 6000
        assert loaded[1]['cache_hits'] == 0

    def test_persist_replaces_previous(self, db_session):
        persist_step_metrics('run-1', PER_STEP)
        persist_step_metrics('run-1', {'companyType': {'api_calls': 1}})
        assert db_session.query(StepMetricRecord).filter_by(run_id='run-1').count() == 1

    def test_usage_history(self):
        persist_step_metrics('run-1', PER_STEP)
        persist_step_metrics('run-2', PER_STEP)
        history = step_usage_history('personLookup')
        assert {h['run_id'] for h in history} == {'run-1', 'run-2'}
        assert history[0]['cache_hits'] == 6

    def test_load_unknown_run(self):
        assert load_step_metrics('nope') == []
