# app.py
import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

# ----- Extensions (import these in models.py) -----
db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()


def _configure_logging(app: Flask) -> None:
    """
    Make INFO logs visible and also write to <LOG_DIR>/billing.log with rotation.
    """
    app.logger.setLevel(logging.INFO)
    for h in app.logger.handlers:
        h.setLevel(logging.INFO)

    log_dir = app.config.get("LOG_DIR") or os.path.join(
        os.path.dirname(os.path.abspath(__file__)), "logs"
    )
    os.makedirs(log_dir, exist_ok=True)
    file_path = os.path.join(log_dir, "billing.log")

    file_handler = RotatingFileHandler(file_path, maxBytes=1_000_000, backupCount=3)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s"
    ))

    # Avoid adding duplicate handlers if app reloads
    already_added = any(
        isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", "") == file_path
        for h in app.logger.handlers
    )
    if not already_added:
        app.logger.addHandler(file_handler)

    app.logger.info("Logging configured. Writing to %s", file_path)


def _register_error_handlers(app: Flask) -> None:
    from services.errors import BillingError

    @app.errorhandler(BillingError)
    def _billing_error(e: BillingError):
        db.session.rollback()
        if e.status >= 500:
            app.logger.error("[Error] %s: %s", type(e).__name__, e.message)
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(ValidationError)
    def _validation_error(e: ValidationError):
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in e.errors()
        ]
        return jsonify({"error": "Invalid data", "details": details}), 400

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return jsonify({"error": e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):
        db.session.rollback()
        app.logger.exception("[Error] unhandled: %s", e)
        return jsonify({"error": "Internal server error"}), 500


def create_app(overrides: Optional[Dict[str, Any]] = None):
    app = Flask(__name__)

    # Load configuration (config.py in project root), then test/local overrides
    app.config.from_object("config")
    if overrides:
        app.config.update(overrides)

    # Initialize extensions
    db.init_app(app)
    bcrypt.init_app(app)
    login_manager.init_app(app)

    _configure_logging(app)
    _register_error_handlers(app)

    # Import models after db is ready to avoid circulars
    from models import User  # noqa: F401

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.request_loader
    def load_user_from_token(req):
        # Authorization: Bearer <user_id>.<token>
        header = req.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        raw = header[len("Bearer "):].strip()
        uid, _, token = raw.partition(".")
        if not uid.isdigit() or not token:
            return None
        user = db.session.get(User, int(uid))
        if user and user.check_api_token(token):
            return user
        return None

    @login_manager.unauthorized_handler
    def _unauthorized():
        return jsonify({"error": "Unauthorized"}), 401

    # ----- Blueprints -----
    from auth.routes import auth_bp
    from customers.routes import customers_bp
    from pricing.routes import pricing_bp
    from subscriptions.routes import subscriptions_bp
    from invoices.routes import invoices_bp
    from payments.routes import payments_bp
    from tax.routes import tax_bp
    from webhooks.routes import bp as provider_webhooks_bp
    from webhooks.endpoints import endpoints_bp
    from billing import bp as billing_bp
    from analytics.routes import analytics_bp
    from notifications.routes import notifications_bp
    from admin import bp as admin_bp
    from cron.routes import cron_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(customers_bp)
    app.register_blueprint(pricing_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(invoices_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(tax_bp)
    app.register_blueprint(provider_webhooks_bp)
    app.register_blueprint(endpoints_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(analytics_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(admin_bp)  # platform admins only: /admin/*
    app.register_blueprint(cron_bp)

    # ----- Routes -----
    @app.route("/")
    def index():
        return jsonify({
            "ok": True,
            "service": "billing-manager",
            "version": app.config.get("APP_VERSION", "dev"),
        })

    # Dev convenience: create tables if they don't exist
    with app.app_context():
        db.create_all()
        app.logger.info("Database tables ensured (create_all).")

    return app


if __name__ == "__main__":
    app = create_app()
    # Use Flask's reloader for local dev
    app.run(debug=True)
