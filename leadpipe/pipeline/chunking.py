"""
Chunked processing for large datasets.

Datasets above LARGE_DATASET_THRESHOLD rows are split into CHUNK_SIZE slices
that run one after another. A chunk that raises is kept, with every row marked
processingError/chunkIndex, and the next chunk still runs.
"""
import logging
import math
import time
from abc import abstractmethod
from typing import Any, Callable, Dict, List

from leadpipe.config import (
    LARGE_DATASET_THRESHOLD, CHUNK_SIZE, CHUNK_DELAY_SECONDS,
    PROCESSING_ERROR_FIELD, CHUNK_INDEX_FIELD,
)
from leadpipe.pipeline.base import StepAdapter, StepResult, UsageSummary

logger = logging.getLogger('pipeline.chunking')

Rows = List[Dict[str, Any]]


class ChunkProcessor:

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        threshold: int = LARGE_DATASET_THRESHOLD,
        delay: float = CHUNK_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.chunk_size = chunk_size
        self.threshold = threshold
        self.delay = delay
        self.sleep = sleep

    def should_chunk(self, rows: Rows) -> bool:
        return len(rows) > self.threshold

    def chunk_count(self, total: int) -> int:
        return math.ceil(total / self.chunk_size) if total else 0

    def process_large_dataset(
        self,
        rows: Rows,
        step_fn: Callable[[Rows], Rows],
        on_progress: Callable[[int, str], None] = None,
        on_error: Callable[[int, Exception, Rows], None] = None,
    ) -> Rows:
        """
        Run step_fn over each chunk in order and concatenate the results.

        on_progress(percent, message) is called after every chunk with
        percent = floor(chunks_done / chunks × 100) and "Processed N/M rows".
        on_error(chunk_number, exc, chunk) is called for each failed chunk.
        """
        total = len(rows)
        chunks = self.chunk_count(total)
        output: Rows = []

        for i in range(chunks):
            start = i * self.chunk_size
            end = min(start + self.chunk_size, total)
            chunk = rows[start:end]
            try:
                processed = step_fn(chunk)
                if not isinstance(processed, list):
                    raise TypeError(f"chunk step returned {type(processed).__name__}, expected list")
                output.extend(processed)
            except Exception as e:
                logger.error("Chunk %d/%d (rows %d-%d) failed: %s", i + 1, chunks, start, end - 1, e, exc_info=True)
                for row in chunk:
                    failed = dict(row)
                    failed[PROCESSING_ERROR_FIELD] = str(e)
                    failed[CHUNK_INDEX_FIELD] = i + 1
                    output.append(failed)
                if on_error is not None:
                    on_error(i + 1, e, chunk)

            percent = math.floor((i + 1) / chunks * 100)
            message = f"Processed {end}/{total} rows"
            logger.info("Chunk %d/%d done — %s", i + 1, chunks, message)
            if on_progress is not None:
                on_progress(percent, message)

            if i + 1 < chunks and self.delay > 0:
                self.sleep(self.delay)

        return output


class ChunkedStepAdapter(StepAdapter):
    """
    Adapter base that routes large datasets through a ChunkProcessor.

    Subclasses implement process_rows(); usage from every chunk is summed,
    and each failed chunk counts one error per row.
    """
    chunker: ChunkProcessor = None

    def get_chunker(self) -> ChunkProcessor:
        return self.chunker or ChunkProcessor()

    @abstractmethod
    def process_rows(self, rows, config, events) -> StepResult:
        """Process one batch (the whole input, or one chunk of it)."""

    def process(self, rows, config, events):
        chunker = self.get_chunker()
        if not chunker.should_chunk(rows):
            return self.process_rows(rows, config, events)

        events.log(f"Large dataset ({len(rows)} rows) — processing in "
                   f"{chunker.chunk_count(len(rows))} chunks of {chunker.chunk_size}")
        usage = UsageSummary()

        def step_fn(chunk):
            result = self.process_rows(chunk, config, events)
            usage.add(result.analytics)
            return result.data

        def on_progress(percent, message):
            events.progress(percent, message)
            events.log(message)

        def on_error(chunk_number, exc, chunk):
            usage.errors += len(chunk)
            events.log(f"Chunk {chunk_number} failed: {exc}", level='error')

        data = chunker.process_large_dataset(rows, step_fn, on_progress, on_error)
        usage.specific_metrics['chunks'] = chunker.chunk_count(len(rows))
        return StepResult(data=data, analytics=usage)
