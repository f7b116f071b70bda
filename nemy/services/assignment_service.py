from __future__ import annotations

import math
from dataclasses import asdict, dataclass

from flask import current_app

from nemy.errors import InvalidTransitionError, NoDriverAvailableError, NotFoundError
from nemy.extensions import db
from nemy.models import Business, DriverProfile, Order, User
from nemy.services import driver_service
from nemy.services.driver_service import MAX_STRIKES

EARTH_RADIUS_KM = 6371.0

DISTANCE_WEIGHT = 0.5
RATING_WEIGHT = 0.3
EXPERIENCE_WEIGHT = 0.2


@dataclass
class DriverCandidate:
    driver_id: int
    distance_km: float
    rating: float
    completed_orders: int
    score: float

    def to_dict(self) -> dict:
        return asdict(self)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dp = math.radians(lat2 - lat1)
    dl = math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def score_driver(distance_km: float, rating: float, completed_orders: int) -> float:
    distance_score = max(0.0, 100.0 - distance_km * 10.0)
    rating_score = max(0.0, min(5.0, float(rating or 0.0))) * 20.0
    experience_score = float(min(max(0, int(completed_orders or 0)), 50))
    return (
        DISTANCE_WEIGHT * distance_score
        + RATING_WEIGHT * rating_score
        + EXPERIENCE_WEIGHT * experience_score
    )


def _is_eligible(profile) -> bool:
    if not bool(getattr(profile, "is_available", False)):
        return False
    if bool(getattr(profile, "is_blocked", False)):
        return False
    if int(getattr(profile, "strikes", 0) or 0) >= MAX_STRIKES:
        return False
    return getattr(profile, "latitude", None) is not None and getattr(profile, "longitude", None) is not None


def available_drivers() -> list[DriverProfile]:
    return (
        DriverProfile.query.join(User, User.id == DriverProfile.user_id)
        .filter(
            DriverProfile.is_available.is_(True),
            DriverProfile.is_blocked.is_(False),
            DriverProfile.strikes < MAX_STRIKES,
            DriverProfile.latitude.isnot(None),
            DriverProfile.longitude.isnot(None),
            User.is_active.is_(True),
        )
        .all()
    )


def rank(business_lat: float, business_lng: float, drivers=None, *, cash: bool = False) -> list[DriverCandidate]:
    """Score the driver snapshot against a pickup point, best first.

    Ties on score go to the closer driver, then the lower driver id. For a
    cash order, drivers who may not collect cash are left out.
    """
    pool = available_drivers() if drivers is None else [d for d in drivers if _is_eligible(d)]
    if cash and pool:
        restricted = driver_service.cash_restricted_ids([d.user_id for d in pool])
        pool = [d for d in pool if int(d.user_id) not in restricted]
    candidates = []
    for d in pool:
        km = haversine_km(float(business_lat), float(business_lng), float(d.latitude), float(d.longitude))
        completed = int(getattr(d, "completed_deliveries", 0) or 0)
        rating = float(getattr(d, "rating", 0.0) or 0.0)
        candidates.append(
            DriverCandidate(
                driver_id=int(d.user_id),
                distance_km=round(km, 4),
                rating=rating,
                completed_orders=completed,
                score=round(score_driver(km, rating, completed), 6),
            )
        )
    candidates.sort(key=lambda c: (-c.score, c.distance_km, c.driver_id))
    return candidates


def assign_best_driver(order_id: int, *, max_attempts: int | None = None, actor=None) -> dict:
    """Assign the highest-ranked driver that can still take the order.

    A candidate that went unavailable between scoring and the write is
    skipped; once attempts run out the order stays ``ready``.
    """
    from nemy.services import order_lifecycle_service

    attempts_allowed = int(max_attempts or current_app.config.get("ASSIGNMENT_MAX_ATTEMPTS", 3))
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError("order not found", order_id=order_id)
    business = db.session.get(Business, int(order.business_id))
    if business is None or business.latitude is None or business.longitude is None:
        raise NoDriverAvailableError("business has no pickup coordinates", order_id=int(order.id))

    candidates = rank(business.latitude, business.longitude, cash=order.payment_method == "cash")
    tried = []
    for cand in candidates[:attempts_allowed]:
        tried.append(cand.driver_id)
        try:
            assigned = order_lifecycle_service.assign_driver(
                int(order.id),
                cand.driver_id,
                actor=actor or order_lifecycle_service.SYSTEM_ACTOR,
            )
        except InvalidTransitionError as e:
            fresh = db.session.get(Order, int(order_id))
            if fresh is None or fresh.status != "ready" or fresh.driver_id is not None:
                raise
            current_app.logger.info(
                "assignment_candidate_skipped order_id=%s driver_id=%s reason=%s",
                int(order_id),
                cand.driver_id,
                e.message,
            )
            continue
        current_app.logger.info(
            "assignment_succeeded order_id=%s driver_id=%s score=%s distance_km=%s attempts=%s",
            int(order_id),
            cand.driver_id,
            cand.score,
            cand.distance_km,
            len(tried),
        )
        return {"ok": True, "order": assigned.to_dict(), "candidate": cand.to_dict(), "attempts": len(tried)}

    raise NoDriverAvailableError(
        "no driver available",
        order_id=int(order_id),
        candidates=len(candidates),
        attempts=len(tried),
    )
