"""
tool-telemetry HTTP Service.

OTLP/HTTP JSON receivers (``/v1/traces``, ``/v1/metrics``, ``/v1/logs``) and
the read API behind the per-tool dashboard (``/api/v1/tool-profiles``).

Authentication happens in front of this service. The auth layer forwards
the caller's identity in ``X-Customer-Id`` (required), ``X-User-Id`` and
``X-Team-Id``.

Every request works in one scoped SQLAlchemy session. Ingestion commits once
per batch and rolls back on any failure, so a batch is stored whole or not
at all.
"""

import logging
import os
from datetime import timedelta
from typing import Optional

from flask import Flask, request, jsonify

from tool_telemetry.clock import utcnow
from tool_telemetry.db import get_engine, get_session, init_db, ping, remove_session
from tool_telemetry.db.store import TelemetryStore
from tool_telemetry.errors import MissingIdentityError, TelemetryError
from tool_telemetry.ingest import IngestionContext, TelemetryIngestor
from tool_telemetry.metering import DatabaseUsageMeter, NullUsageMeter
from tool_telemetry.rollup import (
    UsageRollupEngine,
    compute_timeline,
    profile_latency,
    summarize_metrics,
)
from .config import TelemetryConfig
from .health import health_bp, init_health

logger = logging.getLogger(__name__)

_config: Optional[TelemetryConfig] = None

DEFAULT_SPAN_PAGE = 50
METRIC_SUMMARY_ROWS = 500

_PROTOBUF_HINT = (
    "Only OTLP/HTTP JSON is accepted. Set OTEL_EXPORTER_OTLP_PROTOCOL=http/json "
    "on the exporter."
)


def get_config() -> TelemetryConfig:
    global _config
    if _config is None:
        _config = TelemetryConfig.from_env()
    return _config


def _configure_logging(config: TelemetryConfig):
    # Configure the tool_telemetry logger hierarchy rather than the root
    # logger; hypercorn installs its own root handlers.
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    tt_logger = logging.getLogger("tool_telemetry")
    tt_logger.setLevel(log_level)
    if not tt_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        tt_logger.addHandler(handler)
    tt_logger.propagate = False


# =========================================================================
# Flask app factory
# =========================================================================

def create_app(config: Optional[TelemetryConfig] = None) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config: Optional TelemetryConfig instance. If None, loads from environment.

    Returns:
        Configured Flask application
    """
    global _config
    if config is None:
        config = TelemetryConfig.from_env()
    _config = config

    _configure_logging(config)

    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.urandom(24)

    get_engine(config.resolved_database_url())
    init_db()

    app.register_blueprint(health_bp)
    init_health(ping)

    register_api_routes(app)

    @app.teardown_appcontext
    def _remove_session(exc):
        remove_session()

    return app


# =========================================================================
# Request helpers
# =========================================================================

def _ingestion_context() -> IngestionContext:
    customer_id = (request.headers.get("X-Customer-Id") or "").strip()
    if not customer_id:
        raise MissingIdentityError()
    return IngestionContext(
        customer_id=customer_id,
        user_id=(request.headers.get("X-User-Id") or "").strip() or None,
        team_id=(request.headers.get("X-Team-Id") or "").strip() or None,
    )


def _usage_meter(session):
    if get_config().metering_enabled:
        return DatabaseUsageMeter(session)
    return NullUsageMeter()


def _otlp_ingest(signal: str):
    """Shared body of the three OTLP receivers; *signal* is traces, metrics or logs."""
    # Collector pre-flight probes
    if request.method in ("HEAD", "OPTIONS"):
        return "", 200

    content_type = request.headers.get("Content-Type", "")
    if "protobuf" in content_type:
        return jsonify({
            "error": f"Unsupported Content-Type: {content_type}",
            "hint": _PROTOBUF_HINT,
        }), 415

    try:
        ctx = _ingestion_context()
    except TelemetryError as e:
        return jsonify(e.to_dict()), e.status_code

    payload = request.get_json(force=True, silent=True)
    if payload is None:
        return jsonify({"error": "Invalid JSON body"}), 400

    session = get_session()
    try:
        ingestor = TelemetryIngestor(TelemetryStore(session), _usage_meter(session))
        if signal == "traces":
            result = ingestor.ingest_traces(payload, ctx)
        elif signal == "metrics":
            result = ingestor.ingest_metrics(payload, ctx)
        else:
            result = ingestor.ingest_logs(payload, ctx)
        session.commit()
        return jsonify(result), 200

    except TelemetryError as e:
        session.rollback()
        logger.warning(f"Rejected OTLP {signal} batch from customer {ctx.customer_id}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    except Exception as e:
        session.rollback()
        logger.error(f"Error persisting OTLP {signal} batch for customer {ctx.customer_id}: {e}", exc_info=True)
        return jsonify({"error": "Failed to persist telemetry batch"}), 500


# =========================================================================
# Route registration
# =========================================================================

def register_api_routes(app: Flask):
    """Register all OTLP receiver and read API routes on the Flask app."""

    # -----------------------------------------------------------------
    # OTLP HTTP ingestion (JSON only)
    # -----------------------------------------------------------------
    @app.route('/v1/traces', methods=['POST', 'HEAD', 'OPTIONS'])
    def otlp_ingest_traces():
        """Accept OTLP trace payloads."""
        return _otlp_ingest("traces")

    @app.route('/v1/metrics', methods=['POST', 'HEAD', 'OPTIONS'])
    def otlp_ingest_metrics():
        """Accept OTLP metric payloads."""
        return _otlp_ingest("metrics")

    @app.route('/v1/logs', methods=['POST', 'HEAD', 'OPTIONS'])
    def otlp_ingest_logs():
        """Accept OTLP log payloads; records with span context also become spans."""
        return _otlp_ingest("logs")

    # -----------------------------------------------------------------
    # Tool profiles
    # -----------------------------------------------------------------
    @app.route('/api/v1/tool-profiles', methods=['GET'])
    def api_list_tool_profiles():
        try:
            ctx = _ingestion_context()
            store = TelemetryStore(get_session())
            profiles = [p.to_dict() for p in store.list_tool_profiles(ctx.customer_id)]
            return jsonify({"profiles": profiles, "count": len(profiles)})
        except TelemetryError as e:
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            logger.error(f"Error listing tool profiles: {e}")
            return jsonify({"error": str(e)}), 500

    @app.route('/api/v1/tool-profiles/<profile_id>', methods=['GET'])
    def api_get_tool_profile(profile_id):
        try:
            ctx = _ingestion_context()
            store = TelemetryStore(get_session())
            profile = store.get_tool_profile(ctx.customer_id, profile_id)
            durations = store.query_span_durations(ctx.customer_id, profile_id)
            return jsonify({"profile": profile.to_dict(), "latency": profile_latency(durations)})
        except TelemetryError as e:
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            logger.error(f"Error loading tool profile {profile_id}: {e}")
            return jsonify({"error": str(e)}), 500

    @app.route('/api/v1/tool-profiles/<profile_id>', methods=['DELETE'])
    def api_delete_tool_profile(profile_id):
        """Administrative purge of a profile and all of its telemetry."""
        session = get_session()
        try:
            ctx = _ingestion_context()
            TelemetryStore(session).delete_tool_profile(ctx.customer_id, profile_id)
            session.commit()
            return jsonify({"status": "deleted", "id": profile_id})
        except TelemetryError as e:
            session.rollback()
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            session.rollback()
            logger.error(f"Error deleting tool profile {profile_id}: {e}")
            return jsonify({"error": str(e)}), 500

    @app.route('/api/v1/tool-profiles/<profile_id>/spans', methods=['GET'])
    def api_list_profile_spans(profile_id):
        try:
            ctx = _ingestion_context()
            limit = max(request.args.get('limit', DEFAULT_SPAN_PAGE, type=int), 0)
            offset = max(request.args.get('offset', 0, type=int), 0)
            store = TelemetryStore(get_session())
            store.get_tool_profile(ctx.customer_id, profile_id)
            spans = store.query_spans(ctx.customer_id, profile_id, limit=limit, offset=offset)
            return jsonify({"spans": [s.to_dict() for s in spans], "limit": limit, "offset": offset})
        except TelemetryError as e:
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            logger.error(f"Error listing spans for {profile_id}: {e}")
            return jsonify({"error": str(e)}), 500

    @app.route('/api/v1/tool-profiles/<profile_id>/metrics', methods=['GET'])
    def api_list_profile_metrics(profile_id):
        try:
            ctx = _ingestion_context()
            store = TelemetryStore(get_session())
            store.get_tool_profile(ctx.customer_id, profile_id)
            points = store.query_metric_points(ctx.customer_id, profile_id, limit=METRIC_SUMMARY_ROWS)
            return jsonify({"metrics": summarize_metrics(points)})
        except TelemetryError as e:
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            logger.error(f"Error summarizing metrics for {profile_id}: {e}")
            return jsonify({"error": str(e)}), 500

    @app.route('/api/v1/tool-profiles/<profile_id>/llm-stats', methods=['GET'])
    def api_profile_llm_stats(profile_id):
        try:
            ctx = _ingestion_context()
            config = get_config()
            store = TelemetryStore(get_session())
            store.get_tool_profile(ctx.customer_id, profile_id)
            engine = UsageRollupEngine(store, days=config.usage_window_days, hours=config.hourly_window_hours)
            report = engine.compute(ctx.customer_id, profile_id)
            resp = jsonify(report.to_dict())
            resp.headers["X-Usage-Source"] = report.source
            return resp
        except TelemetryError as e:
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            logger.error(f"Error computing usage for {profile_id}: {e}")
            return jsonify({"error": str(e)}), 500

    @app.route('/api/v1/tool-profiles/<profile_id>/timeline', methods=['GET'])
    def api_profile_timeline(profile_id):
        try:
            ctx = _ingestion_context()
            hours = get_config().hourly_window_hours
            now = utcnow()
            store = TelemetryStore(get_session())
            store.get_tool_profile(ctx.customer_id, profile_id)
            spans = store.query_spans(ctx.customer_id, profile_id, since=now - timedelta(hours=hours))
            return jsonify({"buckets": compute_timeline(spans, now=now, hours=hours)})
        except TelemetryError as e:
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            logger.error(f"Error building timeline for {profile_id}: {e}")
            return jsonify({"error": str(e)}), 500


# =========================================================================
# Serving
# =========================================================================

def run_api(host: str = "0.0.0.0", port: int = 8080):
    """
    Run the tool-telemetry API server under hypercorn.

    Args:
        host: Host to bind to (default: 0.0.0.0)
        port: Port to bind to (default: 8080)
    """
    config = TelemetryConfig.from_env()
    config.host = host
    config.port = port

    app = create_app(config)

    db_url = config.resolved_database_url()
    display_url = db_url.split("@")[-1] if "@" in db_url else db_url

    print(f"\n{'='*60}")
    print(f"  tool-telemetry API Service (Hypercorn)")
    print(f"{'='*60}")
    print(f"  API: http://{host}:{port}/api/v1/tool-profiles")
    print(f"  Health: http://{host}:{port}/healthz")
    print(f"  Readiness: http://{host}:{port}/readyz")
    print(f"  OTLP Traces  (JSON): http://{host}:{port}/v1/traces")
    print(f"  OTLP Metrics (JSON): http://{host}:{port}/v1/metrics")
    print(f"  OTLP Logs    (JSON): http://{host}:{port}/v1/logs")
    print(f"  Database: {display_url}")
    print(f"  Metering: {'enabled' if config.metering_enabled else 'disabled'}")
    print(f"{'='*60}\n")

    import asyncio
    import signal
    from tool_telemetry.asgi import create_asgi_app
    from tool_telemetry.db import close_db
    from hypercorn.config import Config as HyperConfig
    from hypercorn.asyncio import serve

    asgi_app = create_asgi_app(app)

    hconfig = HyperConfig()
    hconfig.bind = [f"{host}:{port}"]

    async def _serve():
        shutdown_event = asyncio.Event()

        def _signal_handler():
            if shutdown_event.is_set():
                logger.warning("Received second signal, forcing exit")
                os._exit(1)
            logger.info("Received shutdown signal, shutting down gracefully... (press Ctrl+C again to force)")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        try:
            await serve(asgi_app, hconfig, shutdown_trigger=shutdown_event.wait)
        finally:
            close_db()

    asyncio.run(_serve())


if __name__ == '__main__':
    run_api()
