"""Tests for leadpipe.pipeline.chunking — chunk sizing, failure isolation, chunked adapters."""
from unittest.mock import MagicMock, call

import pytest

from leadpipe.pipeline.base import StepResult, UsageSummary
from leadpipe.pipeline.chunking import ChunkProcessor, ChunkedStepAdapter


def _rows(n):
    return [{'id': str(i)} for i in range(n)]


class TestChunkProcessor:
    """ChunkProcessor.process_large_dataset() sequencing."""

    def test_should_chunk_above_threshold_only(self):
        chunker = ChunkProcessor(threshold=1000)
        assert not chunker.should_chunk(_rows(1000))
        assert chunker.should_chunk(_rows(1001))

    def test_chunk_count(self):
        chunker = ChunkProcessor(chunk_size=1000)
        assert chunker.chunk_count(2500) == 3
        assert chunker.chunk_count(0) == 0

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            ChunkProcessor(chunk_size=0)

    def test_chunks_run_in_order(self, no_sleep):
        seen = []
        chunker = ChunkProcessor(chunk_size=2, sleep=no_sleep)

        def step(chunk):
            seen.append([r['id'] for r in chunk])
            return chunk

        out = chunker.process_large_dataset(_rows(5), step)
        assert seen == [['0', '1'], ['2', '3'], ['4']]
        assert [r['id'] for r in out] == ['0', '1', '2', '3', '4']

    def test_progress_reports(self, no_sleep):
        progress = MagicMock()
        chunker = ChunkProcessor(chunk_size=1000, sleep=no_sleep)
        chunker.process_large_dataset(_rows(2500), lambda c: c, on_progress=progress)
        assert progress.call_args_list == [
            call(33, 'Processed 1000/2500 rows'),
            call(66, 'Processed 2000/2500 rows'),
            call(100, 'Processed 2500/2500 rows'),
        ]

    def test_delay_between_chunks_only(self, no_sleep):
        chunker = ChunkProcessor(chunk_size=2, delay=0.1, sleep=no_sleep)
        chunker.process_large_dataset(_rows(6), lambda c: c)
        assert no_sleep.call_args_list == [call(0.1), call(0.1)]

    def test_failed_chunk_isolated(self, no_sleep):
        """Chunk 2 of 3 raises; its rows are kept with error markers and chunk 3 still runs."""
        chunker = ChunkProcessor(chunk_size=2, sleep=no_sleep)
        calls = []

        def step(chunk):
            calls.append(len(calls) + 1)
            if len(calls) == 2:
                raise RuntimeError('quota exceeded')
            return [dict(r, done=True) for r in chunk]

        on_error = MagicMock()
        out = chunker.process_large_dataset(_rows(6), step, on_error=on_error)

        assert calls == [1, 2, 3]
        assert len(out) == 6
        assert [r.get('done') for r in out] == [True, True, None, None, True, True]
        assert out[2]['processingError'] == 'quota exceeded'
        assert out[2]['chunkIndex'] == 2
        assert 'processingError' not in out[0]
        on_error.assert_called_once()
        assert on_error.call_args[0][0] == 2

    def test_non_list_result_counts_as_failure(self, no_sleep):
        chunker = ChunkProcessor(chunk_size=2, sleep=no_sleep)
        out = chunker.process_large_dataset(_rows(2), lambda c: None)
        assert all(r['chunkIndex'] == 1 for r in out)


class _CountingAdapter(ChunkedStepAdapter):
    step_id = 'counting'

    def __init__(self, chunker, fail_on=None):
        self.chunker = chunker
        self.fail_on = fail_on
        self.batches = 0

    def process_rows(self, rows, config, events):
        self.batches += 1
        if self.batches == self.fail_on:
            raise RuntimeError('upstream 500')
        return StepResult(data=[dict(r, seen=True) for r in rows],
                          analytics=UsageSummary(api_calls=len(rows), specific_metrics={'seen': len(rows)}))


class TestChunkedStepAdapter:
    """ChunkedStepAdapter routes large inputs through the chunker."""

    def test_small_input_single_batch(self, no_sleep):
        adapter = _CountingAdapter(ChunkProcessor(chunk_size=2, threshold=10, sleep=no_sleep))
        result = adapter.process(_rows(5), {}, MagicMock())
        assert adapter.batches == 1
        assert result.analytics.api_calls == 5
        assert 'chunks' not in result.analytics.specific_metrics

    def test_large_input_sums_usage(self, no_sleep):
        adapter = _CountingAdapter(ChunkProcessor(chunk_size=2, threshold=3, sleep=no_sleep))
        result = adapter.process(_rows(5), {}, MagicMock())
        assert adapter.batches == 3
        assert result.analytics.api_calls == 5
        assert result.analytics.specific_metrics == {'seen': 5, 'chunks': 3}
        assert len(result.data) == 5

    def test_failed_chunk_counts_errors(self, no_sleep):
        events = MagicMock()
        adapter = _CountingAdapter(ChunkProcessor(chunk_size=2, threshold=3, sleep=no_sleep), fail_on=2)
        result = adapter.process(_rows(5), {}, events)
        assert result.analytics.errors == 2
        assert result.analytics.api_calls == 3
        assert sum(1 for r in result.data if r.get('processingError')) == 2
        assert any(c.kwargs.get('level') == 'error' for c in events.log.call_args_list)


def test_process_rows_must_be_implemented():
    class Incomplete(ChunkedStepAdapter):
        step_id = 'incomplete'

    with pytest.raises(TypeError):
        Incomplete()
