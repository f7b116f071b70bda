from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PayoutTransferResult:
    status: str  # success | pending | failed
    reference: str
    provider: str
    provider_ref: str = ""
    message: str = ""
    raw: dict | None = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"


class PayoutsProvider:
    name = "unknown"

    def transfer(self, *, destination: str, amount_minor: int, reference: str, reason: str = "") -> PayoutTransferResult:
        raise NotImplementedError
