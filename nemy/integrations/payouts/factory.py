from __future__ import annotations

import os

from nemy.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from nemy.integrations.payouts.base import PayoutsProvider
from nemy.integrations.payouts.mock_provider import MockPayoutsProvider
from nemy.integrations.payouts.paystack_provider import PaystackPayoutsProvider


def build_payouts_provider(config) -> PayoutsProvider:
    provider = (config.get("PAYOUTS_PROVIDER") or "mock").strip().lower()

    if provider == "disabled":
        raise IntegrationDisabledError("payouts")

    if provider == "mock":
        return MockPayoutsProvider()

    if provider != "paystack":
        raise IntegrationMisconfiguredError("payouts", f"provider={provider}")

    secret_key = (config.get("PAYSTACK_SECRET_KEY") or os.getenv("PAYSTACK_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("payouts", "missing PAYSTACK_SECRET_KEY")

    return PaystackPayoutsProvider(secret_key=secret_key)


def payouts_health(config) -> dict:
    provider = (config.get("PAYOUTS_PROVIDER") or "mock").strip().lower()
    missing = []
    if provider == "paystack" and not (config.get("PAYSTACK_SECRET_KEY") or os.getenv("PAYSTACK_SECRET_KEY") or "").strip():
        missing.append("PAYSTACK_SECRET_KEY")
    if provider == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
