"""
app/__init__.py — Flask application factory for the ledger service.

create_app(config_name) returns a fully wired app and touches nothing at
import time, so tests, the `flask ledger` commands and Alembic can each
build their own instance.

Wiring order:
  1. config_by_name[config_name], production guard
  2. logging from LOG_LEVEL
  3. Flask-SQLAlchemy (db.init_app) and model registration
  4. LedgerStore + ReconciliationCoordinator, kept in
     app.extensions["ledger_coordinator"] for handlers and CLI commands
  5. blueprints under /api/v1
  6. error handlers: AppError, marshmallow ValidationError, anything else → 500
  7. `flask ledger ...` commands

Money leaves the API as strings; DecimalJSONProvider makes jsonify() do that.
"""

from __future__ import annotations

import logging
import traceback
from datetime import timedelta
from decimal import Decimal

from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider
from marshmallow import ValidationError
from werkzeug.exceptions import HTTPException

from ledger_service.config import config_by_name, validate_production_config


# ── Custom JSON provider ───────────────────────────────────────────────────
# Balances, totals and expense amounts are Decimal and go out as strings.

class DecimalJSONProvider(DefaultJSONProvider):
    """Decimal("-30.00") → "-30.00"; everything else as Flask does it."""

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Builds the ledger service app.

    `config_name` is a key of config_by_name ("development", "testing",
    "production"); unknown names get the development config.
    """
    app = Flask(__name__)
    app.json_provider_class = DecimalJSONProvider
    app.json = DecimalJSONProvider(app)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    _configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    # models import db from extensions, so the import stays local.
    from ledger_service.app.extensions import db
    db.init_app(app)

    # ── Model registration ─────────────────────────────────────────────────
    # Populates db.metadata for create_all() and Alembic autogenerate.
    with app.app_context():
        from ledger_service.app.models import (  # noqa: F401
            dirty_group,
            expense,
            expense_payer,
            group,
            membership,
        )

    # ── Ledger engine ──────────────────────────────────────────────────────
    _register_coordinator(app)

    # ── Blueprints ─────────────────────────────────────────────────────────
    _register_blueprints(app)

    # ── Error handlers ─────────────────────────────────────────────────────
    _register_error_handlers(app)
    _register_cors(app)

    # ── CLI ────────────────────────────────────────────────────────────────
    from ledger_service.app.cli import ledger_cli
    app.cli.add_command(ledger_cli)

    return app


def _configure_logging(app: Flask) -> None:
    """
    Applies LOG_LEVEL to the app logger and to every ledger_service.* module
    logger. A root handler is installed only if none exists yet.
    """
    level = logging.getLevelName(app.config.get("LOG_LEVEL", "INFO"))
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("ledger_service").setLevel(level)
    app.logger.setLevel(level)


def _register_coordinator(app: Flask) -> None:
    """
    Builds the explicit store handle and the coordinator once per app.
    The store wraps the Flask-SQLAlchemy scoped session, so each request
    (and each CLI command) works in its own session.
    """
    from ledger_service.app.extensions import COORDINATOR_KEY, db
    from ledger_service.app.services.ledger_store import LedgerStore
    from ledger_service.app.services.reconciliation import ReconciliationCoordinator

    store = LedgerStore(db.session)
    app.extensions[COORDINATOR_KEY] = ReconciliationCoordinator(
        store,
        policy=app.config["LEDGER_RECONCILE_POLICY"],
        lock_lease=timedelta(seconds=app.config["LEDGER_LOCK_LEASE_SECONDS"]),
    )
    app.logger.info(
        "Ledger reconciliation policy: %s", app.config["LEDGER_RECONCILE_POLICY"]
    )


def _register_blueprints(app: Flask) -> None:
    """Mounts groups, expenses and balances under /api/v1."""
    from ledger_service.app.routes.balances import balances_bp
    from ledger_service.app.routes.expenses import expenses_bp
    from ledger_service.app.routes.groups import groups_bp

    app.register_blueprint(groups_bp,   url_prefix="/api/v1/groups")
    # Serves both /groups/<id>/expenses and /expenses/<id>.
    app.register_blueprint(expenses_bp, url_prefix="/api/v1")
    app.register_blueprint(balances_bp, url_prefix="/api/v1/groups")


def _first_validation_message(messages) -> tuple[str | None, str]:
    """
    Walks marshmallow's nested messages down to the first leaf.

    {"payers": {0: {"amount": ["INVALID_AMOUNT_PRECISION"]}}}
        → ("payers", "INVALID_AMOUNT_PRECISION")
    """
    field = None
    current = messages
    while True:
        if isinstance(current, dict):
            if not current:
                return field, "Invalid input."
            key, current = next(iter(current.items()))
            if field is None and isinstance(key, str) and key != "_schema":
                field = key
        elif isinstance(current, list):
            if not current:
                return field, "Invalid value."
            current = current[0]
        else:
            return field, str(current)


def _register_error_handlers(app: Flask) -> None:
    """
    Every failure leaves the API as {"error": {"code", "message"[, "field"]}}.

      AppError        → its own code and status
      ValidationError → 400, first message only
      HTTPException   → unchanged (routing 404/405)
      anything else   → 500 INTERNAL_ERROR, traceback to the log only
    """
    from ledger_service.app.errors import AppError, ErrorCode

    known_codes = {
        value for name, value in vars(ErrorCode).items()
        if not name.startswith("_")
    }

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Schemas raise registered ErrorCode values as their messages; those
        become the code. Other messages map to MISSING_FIELD / INVALID_FIELD.
        """
        field, raw_message = _first_validation_message(error.messages)

        if raw_message in known_codes:
            code = raw_message
            message = _code_to_message(code)
        elif raw_message.startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD
            message = raw_message
        else:
            code = ErrorCode.INVALID_FIELD
            message = raw_message

        response_body = {"error": {"code": code, "message": message}}
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        if isinstance(error, HTTPException):
            return error

        app.logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.path,
            error,
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "The ledger service hit an unexpected error.",
            }
        }), 500


def _register_cors(app: Flask) -> None:
    """Permissive CORS headers, only in DEBUG or TESTING."""

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"

        return response


def _code_to_message(code: str) -> str:
    """Prose for schema errors whose message is a bare ErrorCode."""
    _messages = {
        "INVALID_AMOUNT_PRECISION": "Too many decimal places: amounts allow 2, split values 4.",
        "INVALID_SPLIT_TYPE": "split_type must be one of 'equal', 'shares', 'percent', 'custom'.",
        "INVALID_CURRENCY": "currency must be a 3 to 10 letter code, e.g. 'USD'.",
        "CUSTOM_SPLITS_SENT_FOR_EQUAL": "Do not send custom_splits when split_type is 'equal'.",
        "CUSTOM_SPLITS_REQUIRED": "custom_splits must not be empty for 'percent' or 'custom' splits.",
        "DUPLICATE_SPLIT_USER": "The same user_id appears more than once in custom_splits.",
        "DUPLICATE_PARTICIPANT": "The same user_id appears more than once in participant_ids.",
    }
    return _messages.get(code, "Invalid input.")
