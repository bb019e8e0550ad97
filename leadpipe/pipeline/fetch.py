"""
Remote fetch helpers shared by step adapters.

  call_with_retries — bounded retry with linear backoff (3s, 6s, 9s by default)
  cached_fetch      — StaleCache first, live fetch on miss, best-effort write-back
  run_bounded       — fan a per-row function out over a bounded thread pool
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Iterable, List, Optional, Tuple, Type

from leadpipe.config import (
    RETRY_MAX_RETRIES, RETRY_BASE_DELAY,
    MAX_CONCURRENT_REQUESTS, BATCH_DELAY_SECONDS,
)
from leadpipe.pipeline.errors import RetryExhaustedError

logger = logging.getLogger('pipeline.fetch')


def call_with_retries(
    fn: Callable[..., Any],
    *args,
    max_retries: int = RETRY_MAX_RETRIES,
    base_delay: float = RETRY_BASE_DELAY,
    no_retry: Tuple[Type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
    label: str = '',
    **kwargs,
) -> Any:
    """
    Call fn, retrying up to max_retries times after the first attempt.

    The wait before retry n is n × base_delay. Exceptions listed in no_retry
    propagate immediately. When every attempt fails, raises
    RetryExhaustedError carrying the last exception.
    """
    attempts = max_retries + 1
    label = label or getattr(fn, '__name__', 'call')
    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except no_retry:
            raise
        except Exception as e:
            if attempt + 1 >= attempts:
                logger.error("%s failed after %d attempts: %s", label, attempts, e)
                raise RetryExhaustedError(attempts, e) from e
            delay = (attempt + 1) * base_delay
            logger.warning("%s attempt %d/%d failed (%s) — retrying in %.1fs",
                           label, attempt + 1, attempts, e, delay)
            sleep(delay)


def cached_fetch(
    cache,
    key: Optional[str],
    fetch: Callable[[], Any],
    should_cache: Callable[[Any], bool] = None,
) -> Tuple[Any, bool]:
    """
    Return (payload, from_cache).

    A fresh cache hit skips the fetch entirely. On a miss the live result is
    written back when it is not None (and should_cache accepts it); a failed
    write does not fail the fetch. Without a key the cache is bypassed.
    """
    if key and cache is not None:
        payload = cache.get(key)
        if payload is not None:
            return payload, True
    payload = fetch()
    if key and cache is not None and payload is not None:
        if should_cache is None or should_cache(payload):
            cache.put(key, payload)
    return payload, False


def run_bounded(
    items: Iterable[Any],
    fn: Callable[[Any], Any],
    max_workers: int = MAX_CONCURRENT_REQUESTS,
    batch_delay: float = BATCH_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    on_error: Callable[[Any, Exception], Any] = None,
    on_batch_done: Callable[[int, int], None] = None,
) -> List[Any]:
    """
    Apply fn to every item with at most max_workers calls in flight.

    Items run in sub-batches of max_workers; each sub-batch is joined before
    the next starts, with batch_delay seconds in between. Results come back in
    input order regardless of completion order. If fn raises, on_error(item, exc)
    supplies the result; without on_error the exception propagates.
    """
    items = list(items)
    results: List[Any] = [None] * len(items)
    size = max(1, int(max_workers))

    for start in range(0, len(items), size):
        batch = items[start:start + size]
        with ThreadPoolExecutor(max_workers=len(batch)) as executor:
            future_to_index = {
                executor.submit(fn, item): start + offset
                for offset, item in enumerate(batch)
            }
            for future in as_completed(future_to_index):
                i = future_to_index[future]
                try:
                    results[i] = future.result()
                except Exception as e:
                    if on_error is None:
                        raise
                    logger.error("Worker error on item %d: %s", i, e)
                    results[i] = on_error(items[i], e)

        done = min(start + size, len(items))
        if on_batch_done is not None:
            on_batch_done(done, len(items))
        if done < len(items) and batch_delay > 0:
            sleep(batch_delay)

    return results
