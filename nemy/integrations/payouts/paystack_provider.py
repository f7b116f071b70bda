from __future__ import annotations

import requests

from nemy.integrations.payouts.base import PayoutsProvider, PayoutTransferResult


class PaystackPayoutsProvider(PayoutsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, *, timeout: int = 25):
        self.secret_key = secret_key
        self.timeout = timeout

    def transfer(self, *, destination: str, amount_minor: int, reference: str, reason: str = "") -> PayoutTransferResult:
        payload = {
            "source": "balance",
            "amount": int(amount_minor),
            "recipient": destination,
            "reference": reference,
            "reason": reason or "Driver payout",
        }
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        r = requests.post("https://api.paystack.co/transfer", headers=headers, json=payload, timeout=self.timeout)
        j = r.json() if r.content else {}
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") is not True:
            msg = (j.get("message") or f"HTTP {r.status_code}").strip()
            if 400 <= r.status_code < 500:
                return PayoutTransferResult(
                    status="failed",
                    reference=reference,
                    provider=self.name,
                    message=msg,
                    raw=j if isinstance(j, dict) else {"payload": j},
                )
            raise RuntimeError(f"PAYSTACK_TRANSFER_FAILED:{msg}")
        data = j.get("data") or {}
        status = (data.get("status") or "pending").strip().lower()
        if status not in ("success", "failed"):
            status = "pending"
        return PayoutTransferResult(
            status=status,
            reference=(data.get("reference") or reference).strip(),
            provider=self.name,
            provider_ref=str(data.get("transfer_code") or ""),
            raw=j if isinstance(j, dict) else {"payload": j},
        )
