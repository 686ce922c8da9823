# app.py
from __future__ import annotations

import logging
import os
import re
import secrets
import time
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, abort, g, jsonify, request
from flask_cors import CORS
from pymongo import MongoClient
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration

from aggregation import AggregationEngine, event_kg
from emissions import estimate_emissions
from errors import InvalidInput, ParseError, StorageError, TransitError
from events import event_from_payload
from factor_loader import apply_factors, load_factors_from_csv, load_factors_from_json, load_factors_from_url
from factors import DATASETS, EmissionFactorTable
from mongo_store import MongoEventStore, MongoFactorTable, MongoRegistry
from storage import ApiLogRecord, InMemoryEventStore, InMemoryRegistry, Registry

# ──────────────────────────────────────────────────────────────────────────────
# Load .env for local development (no effect in production)
# ──────────────────────────────────────────────────────────────────────────────
load_dotenv()

# ──────────────────────────────────────────────────────────────────────────────
# Config & logging
# ──────────────────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL)
log = logging.getLogger("transitfootprint")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "")
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
DEMO_API_KEY = os.getenv("DEMO_API_KEY", "")

MONGO_URI = os.getenv("MONGO_URI", "")
MONGO_DB_NAME = os.getenv("MONGO_DB", "transitfootprint")

ALLOW_CLEAR = str(os.getenv("ALLOW_CLEAR", "false")).lower() == "true"
DEFAULT_LIMITS = os.getenv("DEFAULT_LIMITS", "200 per minute")
LIMITER_STORAGE_URI = os.getenv("LIMITER_STORAGE_URI", "memory://")
DEFAULT_FACTOR_DATASET = "defra-2024"


def factor_dataset_name(name: str) -> str:
    """Known dataset name, or the default after logging the bad value."""
    if name in DATASETS:
        return name
    log.error("Unknown FACTOR_DATASET %r, seeding %s instead", name, DEFAULT_FACTOR_DATASET)
    return DEFAULT_FACTOR_DATASET


FACTOR_DATASET = factor_dataset_name(os.getenv("FACTOR_DATASET", DEFAULT_FACTOR_DATASET))

# ──────────────────────────────────────────────────────────────────────────────
# Sentry setup
# ──────────────────────────────────────────────────────────────────────────────
SENTRY_DSN = os.getenv("SENTRY_DSN", "")
if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[FlaskIntegration()],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1")),
        send_default_pii=False,
    )

USER_ID_RE = re.compile(r"[A-Za-z0-9_\-]+")


# ──────────────────────────────────────────────────────────────────────────────
# Backends
# ──────────────────────────────────────────────────────────────────────────────
def build_backends() -> Tuple[AggregationEngine, Registry]:
    """Mongo when MONGO_URI is set, otherwise process-local memory."""
    if MONGO_URI:
        mongo_client = MongoClient(MONGO_URI, serverSelectionTimeoutMS=5000)
        db = mongo_client[MONGO_DB_NAME]
        try:
            mongo_client.admin.command("ping")
        except Exception as e:
            log.error("Mongo ping failed at startup: %s", e)
        store = MongoEventStore(db)
        factors = MongoFactorTable(db)
        registry: Registry = MongoRegistry(db)
        log.info("Using MongoDB backend (%s)", MONGO_DB_NAME)
        return AggregationEngine(store, factors), registry

    log.info("MONGO_URI not set; using in-memory store")
    return AggregationEngine(InMemoryEventStore(), EmissionFactorTable()), InMemoryRegistry()


def seed_factors(engine: AggregationEngine, dataset: str = FACTOR_DATASET) -> int:
    loader = DATASETS.get(dataset)
    if loader is None:
        raise InvalidInput(f"Unknown factor dataset: {dataset}")
    if len(engine.factors) > 0:
        return 0
    count = apply_factors(engine.factors, loader())
    engine.invalidate()
    return count


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────
def _check_user_path(user_id: str) -> None:
    if not USER_ID_RE.fullmatch(user_id):
        abort(404, description="bad_path")


def _json_body():
    body = request.get_json(silent=True)
    if body is None:
        abort(400, description="invalid_json")
    return body


def create_app(
    engine: Optional[AggregationEngine] = None,
    registry: Optional[Registry] = None,
    config: Optional[dict] = None,
) -> Flask:
    if engine is None or registry is None:
        built_engine, built_registry = build_backends()
        engine = engine or built_engine
        registry = registry or built_registry
        try:
            seed_factors(engine)
        except StorageError as e:
            log.error("Could not seed emission factors: %s", e)
        if DEMO_API_KEY:
            registry.set_api_key("demo", DEMO_API_KEY, "demo")

    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_port=1, x_prefix=1)
    app.config.update(
        ADMIN_API_KEY=ADMIN_API_KEY,
        ALLOW_CLEAR=ALLOW_CLEAR,
        RATELIMIT_ENABLED=True,
    )
    app.config.update(config or {})
    app.extensions["footprint_engine"] = engine
    app.extensions["footprint_registry"] = registry

    cors_origins: List[str] = [FRONTEND_ORIGIN] if FRONTEND_ORIGIN else ["*"]
    CORS(app, resources={r"/*": {"origins": cors_origins}}, supports_credentials=False)

    # Optional rate limiter
    try:
        from flask_limiter import Limiter
        from flask_limiter.util import get_remote_address

        Limiter(
            key_func=get_remote_address,
            app=app,
            default_limits=[DEFAULT_LIMITS] if DEFAULT_LIMITS else [],
            storage_uri=LIMITER_STORAGE_URI,
        )
        log.info("Rate limiting enabled with %s via %s", DEFAULT_LIMITS, LIMITER_STORAGE_URI)
    except Exception as e:
        log.info("Rate limiting not enabled (%s). Continuing without limiter.", e)

    _register_hooks(app, registry)
    _register_routes(app, engine, registry)
    return app


# ──────────────────────────────────────────────────────────────────────────────
# Error mapping & request log
# ──────────────────────────────────────────────────────────────────────────────
def _register_hooks(app: Flask, registry: Registry) -> None:
    @app.errorhandler(TransitError)
    def handle_transit_error(e: TransitError):
        if isinstance(e, StorageError):
            log.error("Storage failure on %s %s: %s", request.method, request.path, e.reason)
        return jsonify({"error": e.reason}), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({"error": e.description}), e.code

    @app.before_request
    def start_timer():
        g.started = time.perf_counter()
        g.started_ts = int(time.time())

    @app.after_request
    def record_log(response):
        started = g.get("started")
        duration_ms = (time.perf_counter() - started) * 1000.0 if started else 0.0
        record = ApiLogRecord(
            ts=g.get("started_ts", int(time.time())),
            method=request.method,
            path=request.path,
            status=response.status_code,
            duration_ms=round(duration_ms, 3),
            client_ip=request.remote_addr or "unknown",
            user_id=(request.view_args or {}).get("user_id", ""),
        )
        try:
            registry.append_log(record)
        except StorageError as e:
            log.warning("Failed to record API log: %s", e)
        return response


# ──────────────────────────────────────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────────────────────────────────────
def _register_routes(app: Flask, engine: AggregationEngine, registry: Registry) -> None:
    def require_user(user_id: str) -> None:
        _check_user_path(user_id)
        if not registry.check_api_key(user_id, request.headers.get("X-API-Key", "")):
            abort(401, description="unauthorized")

    def require_admin() -> None:
        expected = app.config.get("ADMIN_API_KEY") or ""
        header = request.headers.get("Authorization", "")
        if not expected or not header.startswith("Bearer "):
            abort(401, description="unauthorized")
        if not secrets.compare_digest(header[len("Bearer "):], expected):
            abort(401, description="unauthorized")

    def require_clear_allowed() -> None:
        if not app.config.get("ALLOW_CLEAR"):
            abort(403, description="Clearing is disabled")

    # ── health / diagnostics ──────────────────────────────────────────────────
    @app.get("/")
    def root():
        return jsonify({
            "name": "Transit Footprint API",
            "version": "v1",
            "health": "/health",
            "db_ping": "/db-ping",
            "routes": "/_routes",
        }), 200

    @app.get("/health")
    def health_root():
        return jsonify({"ok": True, "service": "transitfootprint", "time": int(time.time())}), 200

    @app.get("/db-ping")
    def db_ping_root():
        if engine.store.ping():
            return jsonify({"ok": True}), 200
        return jsonify({"ok": False, "error": "Database unavailable"}), 503

    @app.get("/api/v1/health")
    def health_v1():
        return health_root()

    # ── users ─────────────────────────────────────────────────────────────────
    @app.post("/users/register")
    def register():
        body = _json_body()
        app_name = body.get("app_name") if isinstance(body, dict) else None
        if not isinstance(app_name, str) or not app_name:
            abort(400, description="missing_app_name")

        user_id = f"u_{secrets.token_hex(4)}"
        api_key = secrets.token_hex(16)
        registry.set_api_key(user_id, api_key, app_name)
        log.info("Registered user %s for app %s", user_id, app_name)
        return jsonify({"user_id": user_id, "api_key": api_key, "app_name": app_name}), 201

    @app.post("/users/<user_id>/transit")
    def add_transit(user_id: str):
        require_user(user_id)
        result = event_from_payload(user_id, _json_body())
        if not result.ok:
            return jsonify({"error": result.error}), 400

        event = result.unwrap()
        engine.add_event(event)
        return jsonify({"status": "ok", "kg_co2": event_kg(event, engine.factors)}), 201

    @app.get("/users/<user_id>/lifetime-footprint")
    def lifetime_footprint(user_id: str):
        require_user(user_id)
        s = engine.summarize(user_id)
        return jsonify({
            "user_id": user_id,
            "lifetime_kg_co2": s.lifetime_kg_co2,
            "last_7d_kg_co2": s.week_kg_co2,
            "last_30d_kg_co2": s.month_kg_co2,
        }), 200

    @app.get("/users/<user_id>/suggestions")
    def suggestions(user_id: str):
        require_user(user_id)
        return jsonify({"user_id": user_id, "suggestions": engine.suggestions(user_id)}), 200

    @app.get("/users/<user_id>/analytics")
    def analytics(user_id: str):
        require_user(user_id)
        return jsonify(engine.analytics(user_id)), 200

    # ── calculator ────────────────────────────────────────────────────────────
    @app.post("/api/v1/emissions/estimate")
    def estimate():
        data = _json_body()
        if not isinstance(data, dict):
            abort(400, description="invalid JSON payload")
        mode = data.get("mode")
        distance = data.get("distance_km")
        occupancy = data.get("occupancy", 1.0)
        if not isinstance(mode, str) or not mode:
            abort(400, description="mode required")
        for name, value in (("distance_km", distance), ("occupancy", occupancy)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                abort(400, description=f"{name} must be a number")

        est = estimate_emissions(
            float(distance),
            mode,
            fuel_type=str(data.get("fuel_type") or ""),
            vehicle_size=str(data.get("vehicle_size") or ""),
            occupancy=float(occupancy),
            table=engine.factors,
        )
        return jsonify(est), 200

    # ── admin: logs & clients ─────────────────────────────────────────────────
    @app.get("/admin/logs")
    def get_logs():
        require_admin()
        limit = request.args.get("limit", default=1000, type=int)
        return jsonify([r.to_dict() for r in registry.get_logs(limit)]), 200

    @app.delete("/admin/logs")
    def clear_logs():
        require_admin()
        registry.clear_logs()
        return jsonify({"status": "ok"}), 200

    @app.get("/admin/clients")
    def list_clients():
        require_admin()
        return jsonify(sorted(engine.get_clients())), 200

    @app.get("/admin/clients/<user_id>/data")
    def client_data(user_id: str):
        require_admin()
        _check_user_path(user_id)
        return jsonify([e.to_dict() for e in engine.get_events(user_id)]), 200

    @app.get("/admin/clear-db-events")
    def clear_db_events():
        require_admin()
        require_clear_allowed()
        engine.clear_events()
        log.warning("All transit events cleared by admin")
        return jsonify({"status": "ok"}), 200

    @app.get("/admin/clear-db")
    def clear_db():
        require_admin()
        require_clear_allowed()
        engine.clear_events()
        engine.factors.clear()
        engine.invalidate()
        registry.clear()
        log.warning("Database cleared by admin")
        return jsonify({"status": "ok"}), 200

    # ── admin: emission factors ───────────────────────────────────────────────
    @app.get("/admin/emission-factors")
    def list_factors():
        require_admin()
        mode = request.args.get("mode")
        rows = engine.factors.list_by_mode(mode) if mode else engine.factors.list_all()
        rows = sorted(rows, key=lambda f: f.key)
        return jsonify([f.to_dict() for f in rows]), 200

    @app.post("/admin/emission-factors")
    def load_factors():
        require_admin()
        text = request.get_data(as_text=True)
        if "csv" in (request.mimetype or ""):
            parsed = load_factors_from_csv(text)
        else:
            parsed = load_factors_from_json(text)
        count = apply_factors(engine.factors, parsed)
        engine.invalidate()
        return jsonify({"loaded": count}), 201

    @app.post("/admin/emission-factors/reload")
    def reload_factors():
        require_admin()
        body = request.get_json(silent=True) or {}
        url = body.get("url")
        if url:
            parsed = load_factors_from_url(url, body.get("format"))
        else:
            dataset = body.get("dataset", "defra-2024")
            loader = DATASETS.get(dataset)
            if loader is None:
                raise ParseError(f"Unknown factor dataset: {dataset}")
            parsed = loader()
        count = apply_factors(engine.factors, parsed)
        engine.invalidate()
        return jsonify({"loaded": count}), 200

    @app.delete("/admin/emission-factors")
    def clear_factors():
        require_admin()
        require_clear_allowed()
        engine.factors.clear()
        engine.invalidate()
        return jsonify({"status": "ok"}), 200

    # ── routes list ───────────────────────────────────────────────────────────
    @app.get("/_routes")
    def list_routes():
        rules = []
        for r in app.url_map.iter_rules():
            methods = ",".join(sorted(r.methods - {"HEAD", "OPTIONS"}))
            rules.append({"rule": str(r), "endpoint": r.endpoint, "methods": methods})
        rules.sort(key=lambda x: x["rule"])
        return jsonify(rules), 200


app = create_app()

# ──────────────────────────────────────────────────────────────────────────────
# Entrypoint
# ──────────────────────────────────────────────────────────────────────────────
if __name__ == "__main__":
    app.run(host=HOST, port=PORT)
