import os
from pathlib import Path

import click
from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_smorest import Api
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException, InternalServerError

from blog_backend.extensions import bcrypt, db
from blog_backend.routes.blogs import register_blog_routes
from blog_backend.routes.comments import register_comment_routes
from blog_backend.routes.users import register_user_routes
from blog_backend.services.media import MediaRelay
from blog_backend.services.session_cache import SessionCache
from blog_backend.services.tokens import TokenIssuer
from blog_backend.web import error_payload

# Load env vars from `blog_backend/.env` regardless of the process working directory.
load_dotenv(dotenv_path=Path(__file__).with_name(".env"))
# Also allow a repo/root `.env` (or process env) to supply values without overriding.
load_dotenv()

# ── CORS origins ──────────────────────────────────────────────────────────
_DEFAULT_CORS_ORIGINS = (
    "http://localhost:8080",
    "http://127.0.0.1:8080",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
)

_EXPECTED_TABLES = {"users", "blogs", "comments"}


def _cors_origins(raw: str | None) -> list[str]:
    raw = (raw or "").strip()
    if not raw:
        return list(_DEFAULT_CORS_ORIGINS)
    origins = [o.strip().rstrip("/") for o in raw.split(",") if o.strip()]
    if "*" in origins:
        raise RuntimeError(
            "CORS_ORIGIN cannot include '*' when supports_credentials=True. "
            "Specify explicit origins instead."
        )
    return origins or list(_DEFAULT_CORS_ORIGINS)


def _normalize_database_uri(uri: str) -> str:
    normalized = uri.strip()
    if normalized.startswith("postgres://"):
        normalized = f"postgresql://{normalized[len('postgres://'):]}"
    if normalized.startswith("mysql://"):
        normalized = f"mysql+pymysql://{normalized[len('mysql://'):]}"
    return normalized


def _database_uri() -> str:
    raw = os.environ.get("DATABASE_URL", "").strip()
    if raw:
        return _normalize_database_uri(raw)
    # Local development: fall back to a bundled sqlite database.
    return f"sqlite:///{Path(__file__).with_name('blog_dev.sqlite')}"


def _redis_url() -> str:
    url = os.environ.get("REDIS_URL", "").strip()
    if url:
        return url
    host = os.environ.get("REDIS_HOST", "localhost").strip() or "localhost"
    port = os.environ.get("REDIS_PORT", "6379").strip() or "6379"
    database = os.environ.get("REDIS_DB", "0").strip() or "0"
    password = os.environ.get("REDIS_PASSWORD", "").strip()
    auth = f":{password}@" if password else ""
    return f"redis://{auth}{host}:{port}/{database}"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if raw in ("1", "true", "yes"):
        return True
    if raw in ("0", "false", "no"):
        return False
    return default


def _config_from_env() -> dict:
    return {
        "SQLALCHEMY_DATABASE_URI": _database_uri(),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "CORS_ORIGINS": _cors_origins(os.environ.get("CORS_ORIGIN")),
        "ACCESS_TOKEN_SECRET": os.environ.get("ACCESS_TOKEN_SECRET", ""),
        "ACCESS_TOKEN_EXPIRY": os.environ.get("ACCESS_TOKEN_EXPIRY", "1d"),
        "REFRESH_TOKEN_SECRET": os.environ.get("REFRESH_TOKEN_SECRET", ""),
        "REFRESH_TOKEN_EXPIRY": os.environ.get("REFRESH_TOKEN_EXPIRY", "10d"),
        "MEDIA_ACCESS_KEY_ID": os.environ.get("MEDIA_ACCESS_KEY_ID"),
        "MEDIA_SECRET_ACCESS_KEY": os.environ.get("MEDIA_SECRET_ACCESS_KEY"),
        "MEDIA_ENDPOINT_URL": os.environ.get("MEDIA_ENDPOINT_URL"),
        "MEDIA_BUCKET": os.environ.get("MEDIA_BUCKET"),
        "MEDIA_PUBLIC_BASE_URL": os.environ.get("MEDIA_PUBLIC_BASE_URL"),
        "REDIS_URL": _redis_url(),
        "SESSION_CACHE_TTL_SECONDS": int(os.environ.get("SESSION_CACHE_TTL_SECONDS", "3600")),
        "RATELIMIT_ENABLED": _env_flag("RATELIMIT_ENABLED", True),
        "RATELIMIT_STORAGE_URI": os.environ.get("RATELIMIT_STORAGE_URI", "memory://"),
        "RATELIMIT_DEFAULT": "20 per 15 minutes",
        "RATELIMIT_STRATEGY": "fixed-window",
        "RATELIMIT_HEADERS_ENABLED": True,
        "SESSION_COOKIE_SECURE": _env_flag("SESSION_COOKIE_SECURE", True),
        "SESSION_COOKIE_SAMESITE": os.environ.get("SESSION_COOKIE_SAMESITE", "lax"),
        "BCRYPT_LOG_ROUNDS": int(os.environ.get("BCRYPT_LOG_ROUNDS", "10")),
        "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        # ── OpenAPI / Flask-Smorest configuration ─────────────────────────
        "API_TITLE": "Blog API",
        "API_VERSION": "v1",
        "OPENAPI_VERSION": "3.0.2",
        "OPENAPI_URL_PREFIX": "/",
        "OPENAPI_SWAGGER_UI_PATH": "/swagger-ui",
        "OPENAPI_SWAGGER_UI_URL": "https://cdn.jsdelivr.net/npm/swagger-ui-dist/",
    }


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _handle_http_exception(err: HTTPException):
        message = err.description or err.name
        return jsonify(error_payload(err.code, message)), err.code

    @app.errorhandler(InternalServerError)
    def _handle_internal_server_error(err: InternalServerError):
        if err.original_exception is None:
            # Raised deliberately via abort(500, ...); keep its message.
            return jsonify(error_payload(500, err.description or err.name)), 500
        app.logger.exception("Unhandled API exception: %s", err)
        return jsonify(error_payload(500, "Unexpected server error.")), 500

    @app.errorhandler(SQLAlchemyError)
    def _handle_database_error(err: SQLAlchemyError):
        db.session.rollback()
        app.logger.exception("Database error: %s", err)
        return jsonify(error_payload(500, "Unexpected server error.")), 500


def _register_security_headers(app: Flask) -> None:
    @app.after_request
    def _set_security_headers(response: Response):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
        response.headers.setdefault("Cross-Origin-Resource-Policy", "same-origin")
        origin = request.headers.get("Origin")
        if isinstance(origin, str) and origin.strip():
            existing = response.headers.get("Vary")
            if existing:
                if "Origin" not in {part.strip() for part in existing.split(",")}:
                    response.headers["Vary"] = f"{existing}, Origin"
            else:
                response.headers["Vary"] = "Origin"
        if request.path.startswith("/api/"):
            response.headers.setdefault(
                "Content-Security-Policy",
                "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
            )
        if request.is_secure:
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=15552000; includeSubDomains",
            )
        return response


def _register_cli(app: Flask, api: Api) -> None:
    @app.cli.command("init-db")
    def init_db():
        """Create the blog tables in the configured database."""
        with app.app_context():
            db.create_all()
            existing = set(inspect(db.engine).get_table_names())
        missing = sorted(_EXPECTED_TABLES - existing)
        if missing:
            raise click.ClickException(
                f"DB initialization failed (missing tables: {', '.join(missing)})."
            )
        click.echo("DB initialized.")

    @app.cli.command("gen-openapi")
    def gen_openapi():
        """Generate an OpenAPI3 YAML spec for the Flask-Smorest API."""
        with app.test_request_context():
            yaml_spec = api.spec.to_yaml()
            Path("openapi.yaml").write_text(yaml_spec)
            click.echo("Wrote openapi.yaml")


def create_app(
    config_overrides: dict | None = None,
    *,
    session_cache: SessionCache | None = None,
    media_relay: MediaRelay | None = None,
) -> Flask:
    """Build the application with explicitly constructed collaborators.

    `session_cache` and `media_relay` may be injected; otherwise they are built
    from configuration. The media relay stays unset when no storage
    credentials are configured, and uploads then answer 503.
    """
    app = Flask(__name__)
    app.config.update(_config_from_env())
    if config_overrides:
        app.config.update(config_overrides)
    app.logger.setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)
    bcrypt.init_app(app)

    try:
        app.extensions["token_issuer"] = TokenIssuer.from_config(app.config)
    except ValueError as e:
        raise RuntimeError(
            "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must be set "
            "with valid ACCESS_TOKEN_EXPIRY / REFRESH_TOKEN_EXPIRY values."
        ) from e
    app.extensions["session_cache"] = session_cache or SessionCache.from_url(
        app.config["REDIS_URL"], ttl_seconds=app.config["SESSION_CACHE_TTL_SECONDS"]
    )
    app.extensions["media_relay"] = media_relay or MediaRelay.from_config(app.config)

    api = Api(app)
    register_user_routes(api)
    register_blog_routes(api)
    register_comment_routes(api)

    CORS(
        app,
        resources={r"/api/*": {"origins": app.config["CORS_ORIGINS"]}},
        methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        supports_credentials=True,
    )

    # Fixed window applied to every route, keyed by client address.
    app.extensions["rate_limiter"] = Limiter(
        get_remote_address,
        app=app,
        default_limits=[app.config["RATELIMIT_DEFAULT"]],
        strategy=app.config["RATELIMIT_STRATEGY"],
        storage_uri=app.config["RATELIMIT_STORAGE_URI"],
        headers_enabled=app.config["RATELIMIT_HEADERS_ENABLED"],
    )

    _register_error_handlers(app)
    _register_security_headers(app)
    _register_cli(app, api)

    @app.route("/", methods=["GET"])
    def index():
        return jsonify("Hello World")

    return app


def create_test_app(
    config_overrides: dict | None = None,
    *,
    session_cache: SessionCache | None = None,
    media_relay: MediaRelay | None = None,
) -> Flask:
    config = {
        "TESTING": True,
        "ACCESS_TOKEN_SECRET": "test-access-secret",
        "REFRESH_TOKEN_SECRET": "test-refresh-secret",
        "ACCESS_TOKEN_EXPIRY": "15m",
        "REFRESH_TOKEN_EXPIRY": "1d",
        "RATELIMIT_ENABLED": False,
        "SESSION_COOKIE_SECURE": False,
    }
    if config_overrides:
        config.update(config_overrides)
    return create_app(config, session_cache=session_cache, media_relay=media_relay)
