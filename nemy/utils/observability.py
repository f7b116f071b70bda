from __future__ import annotations

import hashlib
import json
import os
import time
import uuid
from datetime import datetime

from flask import g, has_request_context, request

# Route arguments and service bindings that identify the money being touched.
AUDIT_KEYS = ("order_id", "wallet_id", "driver_id", "settlement_id", "withdrawal_id", "event_id")

_SCRUBBED_HEADERS = frozenset(
    ("authorization", "cookie", "set-cookie", "x-paystack-signature", "stripe-signature")
)


def _hash_ip(ip: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}:{ip or ''}".encode("utf-8")).hexdigest()[:16]


def _sample_rate(name: str) -> float:
    try:
        rate = float((os.getenv(name) or "0").strip())
    except ValueError:
        return 0.0
    return max(0.0, min(rate, 1.0))


def get_request_id() -> str:
    if not has_request_context():
        return ""
    return getattr(g, "request_id", "")


def bind_audit_ids(**ids) -> None:
    """Attach ledger entity ids to the current request so failures can be traced to them."""
    if not has_request_context():
        return
    bound = getattr(g, "audit_ids", None)
    if bound is None:
        bound = {}
        g.audit_ids = bound
    for key, value in ids.items():
        if key in AUDIT_KEYS and value is not None:
            bound[key] = value


def audit_context() -> dict:
    if not has_request_context():
        return {}
    out = {}
    for key, value in (request.view_args or {}).items():
        if key in AUDIT_KEYS:
            out[key] = value
    out.update(getattr(g, "audit_ids", None) or {})
    return out


def format_audit_context() -> str:
    return " ".join(f"{k}={v}" for k, v in sorted(audit_context().items()))


def _before_send_scrub(event, hint):
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for key in list(headers.keys()):
            if key.lower() in _SCRUBBED_HEADERS:
                headers[key] = "[REDACTED]"
    tags = event.setdefault("tags", {})
    for key, value in audit_context().items():
        tags.setdefault(key, str(value))
    return event


def init_sentry(app) -> None:
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.celery import CeleryIntegration
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=dsn,
            environment=(os.getenv("SENTRY_ENVIRONMENT") or os.getenv("NEMY_ENV") or "dev"),
            release=(os.getenv("GIT_SHA") or "unknown"),
            integrations=[FlaskIntegration(), CeleryIntegration()],
            send_default_pii=False,
            traces_sample_rate=_sample_rate("SENTRY_TRACES_SAMPLE_RATE"),
            before_send=_before_send_scrub,
        )
        app.logger.info("sentry_enabled")
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)


def init_otel(app, *, enabled: bool) -> None:
    """Export Flask and SQLAlchemy spans over OTLP when an endpoint is configured."""
    if not enabled:
        return
    endpoint = (os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or "").strip()
    if not endpoint:
        app.logger.info("otel_disabled_no_endpoint")
        return
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.flask import FlaskInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        from nemy.extensions import db

        service = (os.getenv("OTEL_SERVICE_NAME") or "nemy-backend").strip()
        provider = TracerProvider(resource=Resource.create({"service.name": service}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        FlaskInstrumentor().instrument_app(app)
        SQLAlchemyInstrumentor().instrument(engine=db.engine)
        app.logger.info("otel_enabled service=%s", service)
    except Exception as e:
        app.logger.warning("otel_init_failed err=%s", e)


def install_request_observers(app) -> None:
    @app.before_request
    def _open_request_trace():
        g.request_id = (request.headers.get("X-Request-Id") or "").strip()[:64] or uuid.uuid4().hex
        g.request_started_at = time.perf_counter()
        g.audit_ids = {}

    @app.after_request
    def _close_request_trace(response):
        rid = getattr(g, "request_id", "") or uuid.uuid4().hex
        response.headers["X-Request-Id"] = rid
        started = getattr(g, "request_started_at", None)
        line = {
            "ts": datetime.utcnow().isoformat(),
            "request_id": rid,
            "method": request.method,
            "path": request.path,
            "status": int(response.status_code),
            "latency_ms": round((time.perf_counter() - started) * 1000.0, 2) if started is not None else None,
            "user_id": getattr(g, "auth_user_id", None),
            "role": getattr(g, "auth_role", None),
            "ip_hash": _hash_ip(request.headers.get("X-Forwarded-For", request.remote_addr or ""), app.config.get("SECRET_KEY", "nemy")),
        }
        line.update(audit_context())
        app.logger.info(json.dumps(line, default=str))
        return response
