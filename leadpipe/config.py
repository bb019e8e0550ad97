"""
Centralized configuration — env vars, pipeline constants, status values.
"""
import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── Database (enrichment cache + run history) ────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── OpenAI ────────────────────────────────────────────────────────────────────
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')

# ── Apollo (via the API proxy) ───────────────────────────────────────────────
APOLLO_API_KEY = os.getenv('APOLLO_API_KEY')
API_BASE_URL = os.getenv('API_BASE_URL', 'http://localhost:3001')
API_TIMEOUT_SECONDS = _env_float('API_TIMEOUT_SECONDS', 30.0)

# ── Slack notifications ──────────────────────────────────────────────────────
SLACK_WEBHOOK_URL = os.getenv('SLACK_WEBHOOK_URL')

# ── Cache staleness (days) ───────────────────────────────────────────────────
DATA_STALENESS_DAYS = _env_int('DATA_STALENESS_DAYS', 90)
ORG_STALENESS_DAYS = _env_int('ORG_STALENESS_DAYS', 180)

# ── Scale / throughput ───────────────────────────────────────────────────────
LARGE_DATASET_THRESHOLD = _env_int('LARGE_DATASET_THRESHOLD', 1000)
CHUNK_SIZE = _env_int('CHUNK_SIZE', 1000)
CHUNK_DELAY_SECONDS = _env_float('CHUNK_DELAY_SECONDS', 0.1)
MAX_CONCURRENT_REQUESTS = _env_int('MAX_CONCURRENT_REQUESTS', 5)
BATCH_DELAY_SECONDS = _env_float('BATCH_DELAY_SECONDS', 1.0)

# ── Remote call retries (3 retries → 3s, 6s, 9s) ─────────────────────────────
RETRY_MAX_RETRIES = _env_int('RETRY_MAX_RETRIES', 3)
RETRY_BASE_DELAY = _env_float('RETRY_BASE_DELAY', 3.0)

# ── Background jobs ──────────────────────────────────────────────────────────
RUN_JOB_TIMEOUT = _env_int('RUN_JOB_TIMEOUT', 14400)
MOCK_PIPELINE = bool(os.getenv('MOCK_PIPELINE'))

# ── Row field names shared across steps ──────────────────────────────────────
TAG_FIELD = 'relevanceTag'
PROCESSING_ERROR_FIELD = 'processingError'
CHUNK_INDEX_FIELD = 'chunkIndex'

# ── Step status values ───────────────────────────────────────────────────────
STEP_STATUSES = [
    'pending',
    'processing',
    'complete',
    'error',
    'cancelled',
]

# ── Run status values ─────────────────────────────────────────────────────────
RUN_STATUSES = [
    'queued',
    'running',
    'cancelling',
    'cancelled',
    'completed',
    'failed',
]
