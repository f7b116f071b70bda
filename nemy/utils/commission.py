from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR

SNAPSHOT_VERSION = 1

DELIVERY_SPLIT_RULE_FLAT = "DELIVERY_SPLIT_BUSINESS_BPS_DRIVER_FLAT_V1"
DELIVERY_SPLIT_RULE_BPS = "DELIVERY_SPLIT_BUSINESS_BPS_DRIVER_BPS_V1"

BUSINESS_BPS_DEFAULT = 7000
DRIVER_FLAT_MINOR_DEFAULT = 2500
DRIVER_BPS_DEFAULT = 1500

DRIVER_MODE_FLAT = "flat"
DRIVER_MODE_BPS = "bps"


def _clamp_minor(value: int | float | Decimal | None) -> int:
    try:
        parsed = int(value or 0)
    except (TypeError, ValueError):
        parsed = 0
    return parsed if parsed > 0 else 0


def _clamp_bps(bps: int | None) -> int:
    try:
        parsed = int(bps or 0)
    except (TypeError, ValueError):
        parsed = 0
    return max(0, min(10000, parsed))


def _bps_minor_floor(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(_clamp_bps(bps))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_FLOOR)))


def compute_delivery_split_minor(
    total_minor: int,
    *,
    business_bps: int = BUSINESS_BPS_DEFAULT,
    driver_mode: str = DRIVER_MODE_FLAT,
    driver_flat_minor: int = DRIVER_FLAT_MINOR_DEFAULT,
    driver_bps: int = DRIVER_BPS_DEFAULT,
) -> dict:
    """Split an order total into business, driver and platform shares.

    Business gets floor(total * business_bps / 10000). The driver gets a flat
    fee (or a bps share in ``bps`` mode), capped at what the business share
    leaves. The platform keeps the remainder, so the three always add up to
    ``total_minor``.
    """
    total = _clamp_minor(total_minor)
    mode = (driver_mode or DRIVER_MODE_FLAT).strip().lower()
    if mode not in (DRIVER_MODE_FLAT, DRIVER_MODE_BPS):
        mode = DRIVER_MODE_FLAT

    business_minor = _bps_minor_floor(total, business_bps)
    if business_minor > total:
        business_minor = total
    remaining = total - business_minor

    if mode == DRIVER_MODE_BPS:
        driver_minor = _bps_minor_floor(total, driver_bps)
        rule = DELIVERY_SPLIT_RULE_BPS
    else:
        driver_minor = _clamp_minor(driver_flat_minor)
        rule = DELIVERY_SPLIT_RULE_FLAT
    if driver_minor > remaining:
        driver_minor = remaining

    platform_minor = remaining - driver_minor

    return {
        "snapshot_version": SNAPSHOT_VERSION,
        "rule": rule,
        "inputs": {
            "total_minor": int(total),
            "business_bps": _clamp_bps(business_bps),
            "driver_mode": mode,
            "driver_flat_minor": _clamp_minor(driver_flat_minor),
            "driver_bps": _clamp_bps(driver_bps),
        },
        "business_minor": int(business_minor),
        "driver_minor": int(driver_minor),
        "platform_minor": int(platform_minor),
    }


def split_from_config(total_minor: int, config) -> dict:
    return compute_delivery_split_minor(
        total_minor,
        business_bps=int(config.get("COMMISSION_BUSINESS_BPS", BUSINESS_BPS_DEFAULT)),
        driver_mode=str(config.get("COMMISSION_DRIVER_MODE", DRIVER_MODE_FLAT)),
        driver_flat_minor=int(config.get("COMMISSION_DRIVER_FLAT_MINOR", DRIVER_FLAT_MINOR_DEFAULT)),
        driver_bps=int(config.get("COMMISSION_DRIVER_BPS", DRIVER_BPS_DEFAULT)),
    )
