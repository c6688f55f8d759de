import os
import subprocess
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from campus_market.errors import MarketError
from campus_market.extensions import cors, db, migrate
from campus_market.models import User
from campus_market.segments.segment_admin_orders import admin_orders_bp
from campus_market.segments.segment_negotiations import negotiations_bp
from campus_market.segments.segment_orders_api import orders_bp
from campus_market.segments.segment_payment_webhooks import webhooks_bp
from campus_market.segments.segment_payments import payments_bp
from campus_market.segments.segment_pricing import pricing_bp
from campus_market.segments.segment_transaction_pin import pin_bp
from campus_market.segments.segment_wallets import wallet_bp
from campus_market.services.pricing import PricingConfig, PricingEngine
from campus_market.utils.jwt_utils import decode_token, get_bearer_token
from campus_market.utils.observability import capture_exception, init_sentry, install_request_observers
from campus_market.utils.rate_limit import check_limit, rate_limit_enabled, rate_limit_subject


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
    for env_key in ("RENDER_GIT_COMMIT", "GIT_SHA", "SOURCE_VERSION"):
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


def _error_response(payload: dict, status: int):
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return jsonify(payload), int(status)


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("CAMPUS_MARKET_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        if not (os.getenv("SQUAD_SECRET_KEY") or "").strip():
            app.logger.warning("squad_not_configured env=%s", env)

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["PAYMENTS_PROVIDER"] = (os.getenv("PAYMENTS_PROVIDER") or "squad").strip().lower()

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(instance_dir, 'campus_market.db').replace(os.sep, '/')}"
    # Heroku-style URLs still use the legacy scheme.
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
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

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    # Pricing configuration is read once here; the engine never reads the environment itself.
    app.extensions["pricing_engine"] = PricingEngine(PricingConfig.from_env())

    @app.errorhandler(MarketError)
    def _api_market_error(error: MarketError):
        db.session.rollback()
        status = int(error.status_code or 500)
        if status >= 500:
            app.logger.error("market_error path=%s code=%s message=%s", request.path, error.code, error.message)
            capture_exception(error)
        else:
            app.logger.info("request_rejected path=%s code=%s status=%s", request.path, error.code, status)
        return _error_response(error.to_payload(), status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return _error_response(payload, int(error.code or 500))

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        db.session.rollback()
        app.logger.exception("unhandled_exception path=%s", request.path)
        capture_exception(error)
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return _error_response(payload, 500)

    app.register_blueprint(pricing_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(admin_orders_bp)
    app.register_blueprint(negotiations_bp)
    app.register_blueprint(wallet_bp)
    app.register_blueprint(pin_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)

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
            "service": "campus-market-backend",
            "env": env,
            "db": db_state,
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/")
    def root():
        return jsonify({"ok": True, "service": "campus-market-backend", "env": env})

    @app.get("/api/version")
    def version():
        return jsonify({"ok": True, "alembic_head": _resolve_alembic_head(), "git_sha": _resolve_git_sha()})

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        try:
            import sentry_sdk

            sentry_sdk.set_user(None)
        except Exception:
            pass
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
        g.auth_user_id = uid
        user = db.session.get(User, uid)
        if user:
            g.auth_role = (getattr(user, "role", None) or "buyer").strip().lower()
            try:
                import sentry_sdk

                sentry_sdk.set_user({"id": str(uid)})
                sentry_sdk.set_tag("auth_role", g.auth_role or "buyer")
            except Exception:
                pass

    def _rate_limited_response(retry_after_seconds: int):
        retry_after = int(max(1, retry_after_seconds or 1))
        resp, _ = _error_response(
            {
                "ok": False,
                "error": "RATE_LIMITED",
                "message": "Too many requests. Please retry later.",
                "status": 429,
                "retry_after": retry_after,
            },
            429,
        )
        resp.status_code = 429
        resp.headers["Retry-After"] = str(retry_after)
        return resp

    @app.before_request
    def _global_rate_limit_guard():
        if bool(app.config.get("TESTING")):
            allow_in_tests = (os.getenv("RATE_LIMIT_IN_TESTS") or "").strip().lower() in ("1", "true", "yes", "on")
            if not allow_in_tests:
                return None
        if not rate_limit_enabled(True):
            return None
        method = (request.method or "GET").strip().upper()
        path = (request.path or "").strip()
        if method == "OPTIONS" or not path.startswith("/api/") or path == "/api/squad/webhook":
            return None
        subject = rate_limit_subject(getattr(g, "auth_user_id", None))
        if method == "GET":
            limit, tier = 120, "browse"
        else:
            limit, tier = 60, "write"
        ok, retry_after = check_limit(f"tier:{tier}:{method}:{path}:{subject}", limit=limit, window_seconds=60)
        if not ok:
            return _rate_limited_response(retry_after)
        return None

    @app.before_request
    def _reset_db_session():
        db.session.rollback()

    @app.teardown_request
    def _cleanup_db_session(exc):
        if exc is not None:
            db.session.rollback()
        db.session.remove()

    @app.cli.command("reconcile-ledger")
    @click.option("--since", default="", help="Optional since marker for report metadata.")
    def reconcile_ledger(since: str):
        """Recompute wallet and escrow balances from the ledger and report drift."""
        from campus_market.services.reconciliation_service import recompute_wallet_balances

        summary = recompute_wallet_balances(since=since or None)
        click.echo(f"wallets={summary['wallet_count']} drift={summary['drift_count']}")
        for item in summary["drift_items"]:
            click.echo(
                f"  user_id={item['user_id']} balance_drift={item['drift']} escrow_drift={item['escrow_drift']}"
            )
        if summary["drift_count"]:
            raise click.ClickException("Ledger drift detected.")

    @app.cli.command("settle-orders")
    @click.option("--limit", default=200, type=int, show_default=True)
    def settle_orders(limit: int):
        """Complete buyer-confirmed orders past the grace period."""
        from campus_market.jobs.order_settlement_runner import run_order_settlement

        result = run_order_settlement(limit=limit)
        click.echo(f"processed={result['processed']} completed={result['completed']} errors={result['errors']}")

    @app.cli.command("flush-order-outbox")
    @click.option("--limit", default=200, type=int, show_default=True)
    def flush_order_outbox(limit: int):
        """Re-deliver order notifications that never dispatched."""
        from campus_market.jobs.outbox_runner import run_outbox_flush

        result = run_outbox_flush(limit=limit)
        click.echo(f"processed={result['processed']} delivered={result['delivered']} failed={result['failed']}")

    @app.cli.command("make-admin")
    @click.option("--email", "email", required=True, help="Email of the user to promote")
    def make_admin(email: str):
        """Grant the admin role used for dispute resolution."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if user is None:
            raise click.ClickException(f"No user with email {email}")
        user.role = "admin"
        db.session.commit()
        click.echo(f"admin_granted {user.email}")

    return app
