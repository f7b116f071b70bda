import json
import os
import subprocess
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from nemy.errors import NemyError
from nemy.extensions import cors, db, migrate
from nemy.models import User
from nemy.utils.jwt_utils import decode_token, get_bearer_token
from nemy.utils.observability import format_audit_context, init_otel, init_sentry, install_request_observers


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
    except (OSError, subprocess.CalledProcessError):
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


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _error_payload(code: str, message: str, status: int) -> dict:
    payload = {
        "ok": False,
        "error": code,
        "message": message,
        "status": int(status),
    }
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app(test_config=None):
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("NEMY_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["NEMY_ENV"] = env

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'nemy.db').replace(os.sep, '/')}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url

    # Commission split (basis points out of 10000, amounts in minor units)
    app.config["COMMISSION_BUSINESS_BPS"] = _env_int("COMMISSION_BUSINESS_BPS", 7000, minimum=0, maximum=10000)
    app.config["COMMISSION_DRIVER_MODE"] = (os.getenv("COMMISSION_DRIVER_MODE") or "flat").strip().lower()
    app.config["COMMISSION_DRIVER_FLAT_MINOR"] = _env_int("COMMISSION_DRIVER_FLAT_MINOR", 2500, minimum=0, maximum=10_000_000)
    app.config["COMMISSION_DRIVER_BPS"] = _env_int("COMMISSION_DRIVER_BPS", 1500, minimum=0, maximum=10000)

    app.config["ORDER_REGRET_WINDOW_SECONDS"] = _env_int("ORDER_REGRET_WINDOW_SECONDS", 60, minimum=0, maximum=3600)
    app.config["AUTO_ASSIGN_ON_READY"] = _env_flag("AUTO_ASSIGN_ON_READY", True)
    app.config["ASSIGNMENT_MAX_ATTEMPTS"] = _env_int("ASSIGNMENT_MAX_ATTEMPTS", 3, minimum=1, maximum=50)
    app.config["SETTLEMENT_DEADLINE_HOURS"] = _env_int("SETTLEMENT_DEADLINE_HOURS", 48, minimum=1, maximum=24 * 14)
    app.config["WITHDRAWAL_MIN_MINOR"] = _env_int("WITHDRAWAL_MIN_MINOR", 10000, minimum=0, maximum=100_000_000)
    app.config["CASH_OWED_LIMIT_MINOR"] = _env_int("CASH_OWED_LIMIT_MINOR", 50000, minimum=0, maximum=100_000_000)
    app.config["STRIKE_BLOCK_DAYS"] = _env_int("STRIKE_BLOCK_DAYS", 7, minimum=1, maximum=365)

    app.config["OUTBOX_INTERVAL_SECONDS"] = _env_int("OUTBOX_INTERVAL_SECONDS", 30, minimum=5, maximum=3600)
    app.config["OUTBOX_BATCH_LIMIT"] = _env_int("OUTBOX_BATCH_LIMIT", 100, minimum=1, maximum=1000)
    app.config["OUTBOX_MAX_ATTEMPTS"] = _env_int("OUTBOX_MAX_ATTEMPTS", 5, minimum=1, maximum=50)

    app.config["PAYOUTS_PROVIDER"] = (os.getenv("PAYOUTS_PROVIDER") or "mock").strip().lower()
    app.config["NOTIFICATION_SINK"] = (os.getenv("NOTIFICATION_SINK") or "in_app").strip().lower()
    app.config["PAYSTACK_SECRET_KEY"] = (os.getenv("PAYSTACK_SECRET_KEY") or "").strip()
    app.config["PAYSTACK_WEBHOOK_SECRET"] = (os.getenv("PAYSTACK_WEBHOOK_SECRET") or "").strip()
    app.config["STRIPE_WEBHOOK_SECRET"] = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    app.config["PAYMENTS_WEBHOOK_VERIFY"] = _env_flag("PAYMENTS_WEBHOOK_VERIFY", env in ("prod", "production"))
    app.config["PAYMENTS_WEBHOOK_QUEUE"] = _env_flag("PAYMENTS_WEBHOOK_QUEUE", False)
    app.config["WEBHOOK_EVENT_RETENTION"] = _env_int("WEBHOOK_EVENT_RETENTION", 100000, minimum=100, maximum=10_000_000)
    app.config["PLATFORM_USER_ID"] = (os.getenv("PLATFORM_USER_ID") or "").strip() or None

    if test_config:
        app.config.update(test_config)

    database_url = app.config["SQLALCHEMY_DATABASE_URI"]
    engine_options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_reset_on_return": "rollback",
                "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            int(engine_options["pool_size"]),
            int(engine_options["max_overflow"]),
            int(engine_options["pool_timeout"]),
            int(engine_options["pool_recycle"]),
        )
    app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", engine_options)

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    with app.app_context():
        init_otel(app, enabled=_env_flag("OTEL_ENABLED", False))

    @app.errorhandler(NemyError)
    def _api_domain_error(error: NemyError):
        payload = error.to_dict()
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        app.logger.info(
            "api_domain_error path=%s code=%s status=%s message=%s %s",
            request.path,
            error.code,
            error.status,
            error.message,
            format_audit_context(),
        )
        return jsonify(payload), int(error.status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        return jsonify(_error_payload(error.name, error.description or error.name, status)), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception(
            "unhandled_exception path=%s request_id=%s %s",
            request.path,
            getattr(g, "request_id", ""),
            format_audit_context(),
        )
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    from nemy.segments.segment_drivers import admin_drivers_bp
    from nemy.segments.segment_notifications import notifications_bp
    from nemy.segments.segment_orders import orders_bp
    from nemy.segments.segment_payment_webhooks import webhooks_bp
    from nemy.segments.segment_reconciliation_admin import recon_bp
    from nemy.segments.segment_settlements import admin_settlements_bp, settlements_bp
    from nemy.segments.segment_wallets import wallets_bp

    app.register_blueprint(orders_bp)
    app.register_blueprint(wallets_bp)
    app.register_blueprint(settlements_bp)
    app.register_blueprint(admin_settlements_bp)
    app.register_blueprint(admin_drivers_bp)
    app.register_blueprint(recon_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(notifications_bp)

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
        from nemy.integrations.payouts.factory import payouts_health
        from nemy.utils.job_runs import job_health

        payload = {
            "ok": True,
            "service": "nemy-backend",
            "env": env,
            "db": db_state,
            "payouts": payouts_health(app.config),
            "jobs": job_health() if db_state == "ok" else {},
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        token = get_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        try:
            uid = int(payload.get("sub"))
        except (TypeError, ValueError):
            return
        user = db.session.get(User, uid)
        if user is None or not user.is_active:
            return
        g.auth_user_id = uid
        g.auth_role = (user.role or "customer").strip().lower()

    @app.cli.command("bootstrap-admin")
    @click.option("--email", "email", required=False, help="Admin email")
    @click.option("--password", "password", required=False, help="Admin password")
    def bootstrap_admin(email, password):
        email = (email or os.getenv("ADMIN_EMAIL") or "").strip().lower()
        password = (password or os.getenv("ADMIN_PASSWORD") or "").strip()
        if not email or not password:
            raise click.ClickException("Provide --email/--password or set ADMIN_EMAIL and ADMIN_PASSWORD.")
        u = User.query.filter_by(email=email).first()
        try:
            if u:
                u.role = "admin"
            else:
                u = User(name=email.split("@")[0], email=email, role="admin")
                db.session.add(u)
            u.set_password(password)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        click.echo(f"admin_bootstrap_ok {u.email}")

    @app.cli.command("settlement-close-week")
    def settlement_close_week_cmd():
        from nemy.jobs.settlement_runner import close_week

        click.echo(json.dumps(close_week()))

    @app.cli.command("settlement-block-overdue")
    def settlement_block_overdue_cmd():
        from nemy.jobs.settlement_runner import block_overdue

        click.echo(json.dumps(block_overdue()))

    @app.cli.command("driver-lift-expired-blocks")
    def driver_lift_expired_blocks_cmd():
        from nemy.services.driver_service import lift_expired_blocks

        click.echo(json.dumps(lift_expired_blocks()))

    return app
