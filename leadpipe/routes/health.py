"""
Health routes — liveness and dependency checks.
"""
import logging
from flask import Blueprint, jsonify
from sqlalchemy import text

from leadpipe.extensions import redis_client as r

logger = logging.getLogger('routes.health')

bp = Blueprint('health', __name__)


@bp.route('/health')
def health_check():
    """Health check endpoint."""
    return jsonify({"status": "healthy"}), 200


@bp.route('/api/health')
def dependency_health():
    """Redis, database, API proxy and circuit breaker state. 503 if Redis or the DB is down."""
    checks = {}

    try:
        r.ping()
        checks['redis'] = 'ok'
    except Exception as e:
        logger.warning("Redis health check failed: %s", e)
        checks['redis'] = f'error: {e}'

    from leadpipe.database import get_session
    session = get_session()
    try:
        session.execute(text('SELECT 1'))
        checks['database'] = 'ok'
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        checks['database'] = f'error: {e}'
    finally:
        session.close()

    from leadpipe.services.api_client import test_connection
    try:
        test_connection(timeout=5)
        checks['api_proxy'] = 'ok'
    except Exception as e:
        checks['api_proxy'] = f'error: {e}'

    from leadpipe.services.circuit_breaker import get_all_breakers
    breakers = {name: breaker.get_health() for name, breaker in get_all_breakers().items()}

    healthy = checks['redis'] == 'ok' and checks['database'] == 'ok'
    body = {'status': 'healthy' if healthy else 'degraded', 'checks': checks, 'circuit_breakers': breakers}
    return jsonify(body), 200 if healthy else 503
