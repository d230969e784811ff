# backend/kasir/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate
from .payment_gateway import DuitkuClient


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("kasir").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    if app.config.get("ENVIRONMENT") == "production" and not app.config.get("STRICT_SIGNATURE_VERIFICATION", True):
        raise RuntimeError("STRICT_SIGNATURE_VERIFICATION cannot be disabled in production")
    if not app.config.get("STRICT_SIGNATURE_VERIFICATION", True):
        app.logger.warning("Payment callback signature verification is relaxed (non-production only)")

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # One gateway client per app; routes pass it into the payment service
    app.extensions["payment_gateway"] = DuitkuClient.from_config(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.subscriptions import subscriptions_bp
    from .routes.payments import payments_bp
    from .routes.stores import stores_bp
    from .routes.transactions import transactions_bp
    from .routes.admin import admin_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(stores_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(admin_bp)

    allowed_origins = set(app.config.get("CORS_ALLOWED_ORIGINS") or [])

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
