from __future__ import annotations

from nemy.integrations.payouts.base import PayoutsProvider, PayoutTransferResult


class MockPayoutsProvider(PayoutsProvider):
    """Settles every transfer immediately, except destinations tagged ``fail``."""

    name = "mock"

    def __init__(self):
        self.transfers: list[dict] = []

    def transfer(self, *, destination: str, amount_minor: int, reference: str, reason: str = "") -> PayoutTransferResult:
        self.transfers.append(
            {
                "destination": destination,
                "amount_minor": int(amount_minor),
                "reference": reference,
                "reason": reason,
            }
        )
        if (destination or "").strip().lower().startswith("fail"):
            return PayoutTransferResult(
                status="failed",
                reference=reference,
                provider=self.name,
                message="mock forced failure",
            )
        return PayoutTransferResult(
            status="success",
            reference=reference,
            provider=self.name,
            provider_ref=f"mock_{reference}",
            raw={"destination": destination, "amount_minor": int(amount_minor)},
        )
