"""
Redis-backed circuit breakers for the remote services steps call.

States:
  - CLOSED    → calls pass through
  - OPEN      → failure threshold reached; calls fail fast with CircuitOpenError
  - HALF_OPEN → reset_timeout elapsed; the next call is a probe

State lives in Redis so every RQ worker sees the same breaker. Redis trouble
never blocks a call: the breaker then behaves as CLOSED.

Only outages trip a breaker. A 4xx answer (bad key, malformed request) says
nothing about the service being down, so it is re-raised without counting.
429 rate limiting counts.
"""
import logging
import time
from functools import wraps

import requests

logger = logging.getLogger('services.circuit_breaker')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'


class CircuitOpenError(Exception):
    """Raised instead of calling a service whose breaker is open."""

    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN — service unavailable")


def is_service_outage(error) -> bool:
    """True for errors that suggest the remote service is unavailable."""
    status = getattr(error, 'status_code', None)  # openai.APIStatusError
    if isinstance(error, requests.HTTPError) and error.response is not None:
        status = error.response.status_code
    if isinstance(status, int) and 400 <= status < 500:
        return status == 429
    return True


class CircuitBreaker:

    PREFIX = 'cb'

    def __init__(self, name, redis_client, failure_threshold=5, reset_timeout=120, is_failure=is_service_outage):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.is_failure = is_failure

    def _key(self, suffix):
        return f'{self.PREFIX}:{self.name}:{suffix}'

    def _seconds_since_failure(self):
        last = self.redis.get(self._key('last_failure'))
        return time.time() - float(last) if last else None

    @property
    def state(self):
        try:
            current = self.redis.get(self._key('state')) or CLOSED
            if current == OPEN:
                elapsed = self._seconds_since_failure()
                if elapsed is not None and elapsed > self.reset_timeout:
                    self.redis.set(self._key('state'), HALF_OPEN)
                    return HALF_OPEN
            return current
        except Exception:
            logger.warning("Circuit '%s' state unreadable — treating as closed", self.name)
            return CLOSED

    @property
    def failure_count(self):
        try:
            return int(self.redis.get(self._key('failures')) or 0)
        except Exception:
            return 0

    def call(self, func, *args, **kwargs):
        """Run func through the breaker, recording the outcome."""
        if self.state == OPEN:
            retry_after = None
            try:
                elapsed = self._seconds_since_failure()
                if elapsed is not None:
                    retry_after = max(0.0, self.reset_timeout - elapsed)
            except Exception:
                logger.debug("Circuit '%s' retry-after unavailable", self.name)
            raise CircuitOpenError(self.name, retry_after=retry_after)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if self.is_failure(e):
                self._on_failure(e)
            raise
        self._on_success()
        return result

    def protect(self, func):
        """Decorator form of call()."""
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper

    def _on_success(self):
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.hincrby(self._key('health'), 'success', 1)
            pipe.hset(self._key('health'), 'last_success', str(time.time()))
            pipe.execute()
        except Exception:
            logger.debug("Circuit '%s' could not record success", self.name)

    def _on_failure(self, error):
        try:
            count = self.redis.incr(self._key('failures'))
            now = str(time.time())
            pipe = self.redis.pipeline()
            pipe.set(self._key('last_failure'), now)
            pipe.hincrby(self._key('health'), 'failure', 1)
            pipe.hset(self._key('health'), 'last_failure', now)
            pipe.hset(self._key('health'), 'last_error', str(error)[:200])
            if count >= self.failure_threshold:
                pipe.set(self._key('state'), OPEN)
            pipe.execute()
            if count >= self.failure_threshold:
                logger.warning("Circuit '%s' OPEN after %d failures: %s", self.name, count, error)
            else:
                logger.info("Circuit '%s' failure %d/%d: %s", self.name, count, self.failure_threshold, error)
        except Exception:
            logger.debug("Circuit '%s' could not record failure", self.name)

    def reset(self):
        """Force the breaker closed."""
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.delete(self._key('last_failure'))
            pipe.execute()
            logger.info("Circuit '%s' manually reset", self.name)
        except Exception as e:
            logger.error("Failed to reset circuit '%s': %s", self.name, e)

    def get_health(self):
        """Health snapshot for GET /api/health."""
        health = {
            'name': self.name,
            'state': 'unknown',
            'failure_count': 0,
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'total_success': 0,
            'total_failure': 0,
            'last_error': '',
        }
        try:
            data = self.redis.hgetall(self._key('health')) or {}
            health.update({
                'state': self.state,
                'failure_count': self.failure_count,
                'total_success': int(data.get('success', 0)),
                'total_failure': int(data.get('failure', 0)),
                'last_error': data.get('last_error', ''),
            })
        except Exception:
            logger.warning("Circuit '%s' health unreadable", self.name)
        return health


# ── Registry ──────────────────────────────────────────────────────────────

# name → (failure_threshold, reset_timeout seconds)
DEFAULT_BREAKERS = {
    'api_proxy': (3, 60),
    'apollo': (5, 120),
    'openai': (5, 60),
}

_registry = {}


def get_breaker(name, redis_client=None):
    """Get or create the named breaker."""
    if name not in _registry:
        if redis_client is None:
            from leadpipe.extensions import redis_client
        threshold, timeout = DEFAULT_BREAKERS.get(name, (5, 120))
        _registry[name] = CircuitBreaker(name, redis_client, failure_threshold=threshold, reset_timeout=timeout)
    return _registry[name]


def get_all_breakers():
    return dict(_registry)


def init_breakers(redis_client):
    """Register the standard breakers against a Redis client."""
    for name, (threshold, timeout) in DEFAULT_BREAKERS.items():
        _registry[name] = CircuitBreaker(name, redis_client, failure_threshold=threshold, reset_timeout=timeout)
    return dict(_registry)
