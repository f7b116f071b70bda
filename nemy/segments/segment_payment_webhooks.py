from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from nemy.services.payment_event_service import apply_event, normalize_paystack, normalize_stripe
from nemy.utils import paystack_client, stripe_signature
from nemy.utils.observability import get_request_id

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _reject(error: str, message: str, status: int):
    return jsonify({"ok": False, "error": error, "message": message, "status": status, "trace_id": get_request_id()}), status


def _handle(provider: str, payload: dict, normalize):
    if not isinstance(payload, dict) or not payload:
        return _reject("INVALID_PAYLOAD", "JSON object body required", 400)
    event = normalize(payload)

    if current_app.config.get("PAYMENTS_WEBHOOK_QUEUE"):
        from nemy.tasks.settlement_tasks import process_payment_event

        process_payment_event.delay(provider=provider, event=event, trace_id=get_request_id())
        current_app.logger.info(
            "payment_event_queued provider=%s event_id=%s type=%s",
            provider,
            event["id"],
            event["type"],
        )
        return jsonify({"ok": True, "queued": True, "event_id": event["id"], "trace_id": get_request_id()}), 200

    try:
        result = apply_event(event, provider=provider)
    except Exception:
        # Already rolled back and logged; a 5xx makes the processor redeliver.
        return _reject("WEBHOOK_HANDLER_FAILED", "event could not be applied", 500)
    return jsonify(result), 200


@webhooks_bp.post("/paystack")
def paystack_webhook():
    raw = request.get_data() or b""
    if current_app.config.get("PAYMENTS_WEBHOOK_VERIFY"):
        secret = current_app.config.get("PAYSTACK_WEBHOOK_SECRET") or current_app.config.get("PAYSTACK_SECRET_KEY") or None
        if not paystack_client.verify_signature(raw, request.headers.get("X-Paystack-Signature"), secret=secret):
            current_app.logger.warning("payment_webhook_bad_signature provider=paystack request_id=%s", get_request_id())
            return _reject("INVALID_SIGNATURE", "signature verification failed", 401)
    return _handle("paystack", request.get_json(silent=True), normalize_paystack)


@webhooks_bp.post("/stripe")
def stripe_webhook():
    raw = request.get_data() or b""
    if current_app.config.get("PAYMENTS_WEBHOOK_VERIFY"):
        secret = current_app.config.get("STRIPE_WEBHOOK_SECRET") or None
        if not stripe_signature.verify_signature(raw, request.headers.get("Stripe-Signature"), secret=secret):
            current_app.logger.warning("payment_webhook_bad_signature provider=stripe request_id=%s", get_request_id())
            return _reject("INVALID_SIGNATURE", "signature verification failed", 401)
    return _handle("stripe", request.get_json(silent=True), normalize_stripe)
