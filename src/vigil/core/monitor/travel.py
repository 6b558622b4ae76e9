"""Impossible-travel check between two chronologically ordered logins."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from vigil.core.audit.models import Location
from vigil.core.constants import TRAVEL_CROSS_COUNTRY_MINUTES, TRAVEL_MAX_SPEED_KMH

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class TravelPolicy:
    max_speed_kmh: float = TRAVEL_MAX_SPEED_KMH
    cross_country_window: timedelta = timedelta(minutes=TRAVEL_CROSS_COUNTRY_MINUTES)


@dataclass(frozen=True)
class LoginSighting:
    location: Location
    at: datetime


def distance_km(a: Location, b: Location) -> float:
    """Great-circle distance (haversine); both locations need coordinates."""
    assert a.latitude is not None and a.longitude is not None
    assert b.latitude is not None and b.longitude is not None
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    h = (
        math.sin((lat2 - lat1) / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def is_impossible(
    previous: LoginSighting, current: LoginSighting, policy: TravelPolicy
) -> tuple[bool, dict[str, object]]:
    """
    Return ``(impossible, details)``.

    With coordinates on both sides the implied speed is compared with
    ``max_speed_kmh``; otherwise a country change inside
    ``cross_country_window`` counts as impossible.
    """
    elapsed = current.at - previous.at
    if elapsed < timedelta(0):
        return False, {}
    details: dict[str, object] = {
        "from_country": previous.location.country,
        "to_country": current.location.country,
        "elapsed_minutes": round(elapsed.total_seconds() / 60, 1),
    }
    if previous.location.has_coordinates and current.location.has_coordinates:
        km = distance_km(previous.location, current.location)
        hours = elapsed.total_seconds() / 3600
        speed = math.inf if hours == 0 else km / hours
        details["distance_km"] = round(km, 1)
        details["speed_kmh"] = None if math.isinf(speed) else round(speed, 1)
        # Logins within 1 km of each other never count as travel
        return km > 1.0 and speed > policy.max_speed_kmh, details
    changed = previous.location.country.upper() != current.location.country.upper()
    return changed and elapsed <= policy.cross_country_window, details
