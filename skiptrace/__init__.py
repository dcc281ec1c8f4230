"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints and wires the
process-wide RunManager (shared so budget reservations cover every request).
"""
import importlib

from flask import Flask

MODEL_MODULES = [
    'skiptrace.models.lead',
    'skiptrace.models.enrichment_result',
    'skiptrace.models.provider_call',
    'skiptrace.models.run',
    'skiptrace.models.run_item',
    'skiptrace.models.run_report',
    'skiptrace.models.budget_window',
    'skiptrace.models.dnc_entry',
]


def import_models():
    """Import models so Base.metadata knows about every table."""
    for name in MODEL_MODULES:
        importlib.import_module(name)


def create_app(run_manager=None):
    """Create and configure the Flask application."""
    from skiptrace.logging_config import configure_logging

    app = Flask(__name__)

    configure_logging(app)
    app.json.sort_keys = False

    # Register blueprints
    from skiptrace.routes.health import bp as health_bp
    from skiptrace.routes.skiptrace import bp as skiptrace_bp
    from skiptrace.routes.runs import bp as runs_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(skiptrace_bp)
    app.register_blueprint(runs_bp)

    # Schema is managed by Alembic; no create_all() here.
    import_models()

    if run_manager is None:
        # Circuit breakers for every provider in the configured chain
        from skiptrace.extensions import redis_client
        from skiptrace.pipeline.provider_config import get_chain_settings
        from skiptrace.services.circuit_breaker import init_breakers
        init_breakers(redis_client, get_chain_settings())

        from skiptrace.pipeline.manager import get_run_manager
        run_manager = get_run_manager()

    app.extensions['run_manager'] = run_manager

    return app
