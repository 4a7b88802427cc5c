import json
import os
import subprocess
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from app.extensions import cors, db, migrate
from app.segments.segment_banking import banking_bp
from app.segments.segment_functions import functions_bp
from app.segments.segment_notifications import notifications_bp
from app.segments.segment_orders import orders_bp
from app.segments.segment_webhooks import webhooks_bp
from app.services.errors import WorkflowError
from app.utils.observability import init_sentry, install_request_observers
from app.utils.settings import get_settings

JSON_PREFIXES = ("/api/", "/functions/")


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _wants_json() -> bool:
    return request.path.startswith(JSON_PREFIXES)


def _with_trace(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("REBOOKED_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        if not (os.getenv("BANKING_ENCRYPTION_KEY") or "").strip():
            raise RuntimeError("BANKING_ENCRYPTION_KEY must be set in production")

    # Basic config
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # Ensure instance dir exists for SQLite paths
    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    # Database config
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = "sqlite:///instance/rebooked.db"
    if database_url.startswith("sqlite://") and database_url != "sqlite:///:memory:":
        canonical_path = os.path.join(instance_dir, "rebooked.db")
        database_url = f"sqlite:///{canonical_path.replace(os.sep, '/')}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            int(engine_options.get("pool_size", 0) or 0),
            int(engine_options.get("max_overflow", 0) or 0),
            int(engine_options.get("pool_timeout", 0) or 0),
            int(engine_options.get("pool_recycle", 0) or 0),
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}, r"/functions/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.errorhandler(WorkflowError)
    def _workflow_error(error: WorkflowError):
        status = error.http_status
        if status >= 500:
            app.logger.error("workflow_error path=%s kind=%s message=%s", request.path, error.kind.value, error.message)
        else:
            app.logger.info("workflow_rejected path=%s kind=%s", request.path, error.kind.value)
        try:
            db.session.rollback()
        except Exception:
            pass
        return jsonify(_with_trace(error.to_dict())), status

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not _wants_json():
            return error
        payload = {
            "ok": False,
            "success": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_with_trace(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        try:
            db.session.rollback()
        except Exception:
            pass
        payload = {
            "ok": False,
            "success": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        if not _wants_json():
            payload.pop("status")
            return jsonify(payload), 500
        return jsonify(_with_trace(payload)), 500

    # Register API routes
    app.register_blueprint(functions_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(banking_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(webhooks_bp)

    # Health check
    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "rebooked-backend",
            "env": env,
            "db": db_state,
            "integrations_mode": get_settings().integrations_mode,
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/")
    def root():
        return jsonify({
            "ok": True,
            "service": "rebooked-backend",
            "env": env,
        })

    @app.get("/api/version")
    def version():
        return jsonify({
            "ok": True,
            "alembic_head": _resolve_alembic_head(),
            "git_sha": _resolve_git_sha(),
        })

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("expire-commits")
    @click.option("--limit", default=200, show_default=True, help="Max orders to expire in this run")
    def expire_commits(limit: int):
        from app.jobs.commit_expiry_runner import run_commit_expiry

        click.echo(json.dumps(run_commit_expiry(limit=limit), default=str))

    @app.cli.command("run-escrow")
    @click.option("--limit", default=500, show_default=True, help="Max orders to settle in this run")
    def run_escrow(limit: int):
        from app.jobs.escrow_runner import run_escrow_settlement

        click.echo(json.dumps(run_escrow_settlement(limit=limit), default=str))

    @app.cli.command("schedule-pickups")
    @click.option("--limit", default=200, show_default=True, help="Max orders to book in this run")
    def schedule_pickups(limit: int):
        from app.jobs.pickup_runner import run_pickup_scheduler

        click.echo(json.dumps(run_pickup_scheduler(limit=limit), default=str))

    @app.cli.command("commit-order")
    @click.argument("order_id")
    @click.argument("seller_id")
    @click.option("--delivery-method", type=click.Choice(["home", "locker"]), default="home", show_default=True)
    @click.option("--locker-id", default=None, help="Locker for locker delivery")
    @click.option("--api-url", envvar="REBOOKED_API_URL", default="", help="Base URL of the primary commit endpoint")
    @click.option("--token", envvar="REBOOKED_API_TOKEN", default="", help="Bearer token for the primary endpoint")
    def commit_order(order_id: str, seller_id: str, delivery_method: str, locker_id: str | None, api_url: str, token: str):
        """Commit an order through the primary endpoint, falling back to a direct commit."""
        from app.client.rebooked_client import RebookedClient
        from app.services.commit_handler import CommitCommandHandler, DirectCommitTransport, HttpCommitTransport
        from app.services.commit_service import CommitCommand

        settings = get_settings()
        command = CommitCommand(order_id=order_id, seller_id=seller_id, delivery_method=delivery_method, locker_id=locker_id)
        fallback = DirectCommitTransport()
        if api_url:
            primary = HttpCommitTransport(
                RebookedClient(
                    api_url,
                    token=token or None,
                    timeout=settings.http_timeout_seconds,
                    retries=settings.retry_attempts,
                    retry_delay=settings.retry_delay_seconds,
                )
            )
            handler = CommitCommandHandler(primary, fallback)
        else:
            handler = CommitCommandHandler(fallback, fallback)
        try:
            outcome = handler.handle(command)
        except WorkflowError as e:
            raise click.ClickException(f"{e.kind.value}: {e.message}")
        click.echo(json.dumps(outcome.to_dict(), default=str))

    return app
