"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints.
"""
import os
from flask import Flask, jsonify


def create_app(init_database: bool = True):
    """Create and configure the Flask application."""
    from leadpipe.logging_config import configure_logging

    app = Flask(__name__)

    configure_logging(app)

    app.secret_key = os.getenv('SECRET_KEY', 'dev-secret-change-me')

    # Register blueprints
    from leadpipe.routes.health import bp as health_bp
    from leadpipe.routes.runs import bp as runs_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(runs_bp)

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({'error': 'Internal server error'}), 500

    # Initialize circuit breakers for external API services
    from leadpipe.extensions import redis_client
    from leadpipe.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Run history, step metrics and the enrichment cache share one schema
    if init_database:
        from leadpipe.database import init_db
        init_db()

    return app
