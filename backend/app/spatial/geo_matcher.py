"""
geo_matcher.py — Distance, bearing and proximity maths for helper matching.

Provides:
    - Haversine distance between two locations (km / metres)
    - Initial bearing and 8-point compass direction (display only)
    - Bounding-box pre-filter for the nearby-helper store query
    - Inclusive radius check
    - Travel-time heuristic and human-readable formatting

All distances are in **kilometers** unless the name says otherwise.
Coordinates are in **decimal degrees**. Every function is pure.

Haversine
=========
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

with R = 6,371 km. Accurate to ~0.5 %, which is well inside the error of
a phone GPS fix.

Bounding box
============
One degree of latitude is ~111 km everywhere; one degree of longitude is
~111 · cos(φ) km. The box around a circle of radius r is therefore

    Δlat = r / 111
    Δlon = r / (111 · cos φ)

It always contains the circle, so it may over-select but never drops a
helper that the precise check would keep. Near the ±180° meridian the
longitude range wraps (min_lon > max_lon); once the box reaches a pole it
spans every longitude.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from backend.app.alerts.models import Location


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0
KM_PER_DEGREE_LAT: float = 111.0
DEFAULT_SPEED_KMH: float = 30.0  # average city traffic

_COMPASS_POINTS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")


# ---------------------------------------------------------------------------
# Distance and bearing
# ---------------------------------------------------------------------------

def distance_km(a: Location, b: Location) -> float:
    """
    Great-circle distance between two locations using the Haversine formula.

    >>> delhi = Location(28.6139, 77.2090)
    >>> gurgaon = Location(28.4595, 77.0266)
    >>> round(distance_km(delhi, gurgaon), 1)
    24.7
    """
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2.0) ** 2
    )
    # Rounding can push h a hair above 1 for antipodal points
    h = min(1.0, max(0.0, h))
    c = 2.0 * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))
    return EARTH_RADIUS_KM * c


def distance_meters(a: Location, b: Location) -> float:
    return distance_km(a, b) * 1000.0


def bearing_degrees(a: Location, b: Location) -> float:
    """Initial bearing from ``a`` to ``b``, normalised to [0, 360)."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lon = math.radians(b.longitude - a.longitude)

    y = math.sin(d_lon) * math.cos(lat2)
    x = (
        math.cos(lat1) * math.sin(lat2)
        - math.sin(lat1) * math.cos(lat2) * math.cos(d_lon)
    )
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def compass_direction(bearing: float) -> str:
    """
    8-point compass label for a bearing.

    >>> compass_direction(0.0), compass_direction(95.0), compass_direction(350.0)
    ('N', 'E', 'N')
    """
    index = int(((bearing % 360.0) + 22.5) // 45.0) % 8
    return _COMPASS_POINTS[index]


# ---------------------------------------------------------------------------
# Bounding-box pre-filter
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BoundingBox:
    """
    Lat/lon rectangle in degrees (inclusive edges).

    ``min_lon > max_lon`` means the box crosses the antimeridian and covers
    [min_lon, 180] plus [-180, max_lon].
    """
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    @property
    def crosses_antimeridian(self) -> bool:
        return self.min_lon > self.max_lon

    def contains(self, point: Location) -> bool:
        if not self.min_lat <= point.latitude <= self.max_lat:
            return False
        if self.crosses_antimeridian:
            return point.longitude >= self.min_lon or point.longitude <= self.max_lon
        return self.min_lon <= point.longitude <= self.max_lon


def bounding_box(center: Location, radius_km: float) -> BoundingBox:
    """
    Rectangle that fully contains the circle (center, radius_km).

    Used as the coarse store query; the precise Haversine check runs on
    whatever the store returns.
    """
    if radius_km < 0:
        raise ValueError(f"Radius must be non-negative, got {radius_km}")

    delta_lat = radius_km / KM_PER_DEGREE_LAT

    cos_lat = math.cos(math.radians(center.latitude))
    if cos_lat > 1e-10:
        delta_lon = radius_km / (KM_PER_DEGREE_LAT * cos_lat)
    else:
        delta_lon = 180.0  # at the poles every longitude is "near"

    min_lat = center.latitude - delta_lat
    max_lat = center.latitude + delta_lat
    reaches_pole = min_lat <= -90.0 or max_lat >= 90.0

    if delta_lon >= 180.0 or reaches_pole:
        min_lon, max_lon = -180.0, 180.0
    else:
        min_lon = center.longitude - delta_lon
        max_lon = center.longitude + delta_lon
        if min_lon < -180.0:
            min_lon += 360.0
        if max_lon > 180.0:
            max_lon -= 360.0

    return BoundingBox(
        min_lat=max(min_lat, -90.0),
        max_lat=min(max_lat, 90.0),
        min_lon=min_lon,
        max_lon=max_lon,
    )


# ---------------------------------------------------------------------------
# Radius check
# ---------------------------------------------------------------------------

def is_within_radius(center: Location, point: Location, radius_km: float) -> bool:
    """
    True when ``point`` lies inside or exactly on the circle.

    >>> delhi = Location(28.6139, 77.2090)
    >>> gurgaon = Location(28.4595, 77.0266)
    >>> is_within_radius(delhi, gurgaon, 30.0), is_within_radius(delhi, gurgaon, 20.0)
    (True, False)
    """
    return distance_km(center, point) <= radius_km


# ---------------------------------------------------------------------------
# ETA heuristic
# ---------------------------------------------------------------------------

def estimate_eta_minutes(distance_m: float, speed_kmh: float = DEFAULT_SPEED_KMH) -> int:
    """
    Rough travel time at a constant speed, never less than one minute.

    This is a straight-line approximation for display, not a routing
    estimate: it ignores roads, traffic and the mode of transport.
    """
    if speed_kmh <= 0:
        raise ValueError(f"Speed must be positive, got {speed_kmh}")
    minutes = (distance_m / 1000.0) / speed_kmh * 60.0
    return max(1, int(minutes))


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_distance(km: float) -> str:
    """
    Format a distance for display.

    >>> format_distance(0.45)
    '450 m'
    >>> format_distance(3.7266)
    '3.7 km'
    """
    if km < 1.0:
        return f"{int(round(km * 1000))} m"
    return f"{km:.1f} km"


def format_eta(minutes: int) -> str:
    """
    >>> format_eta(1), format_eta(12), format_eta(65)
    ('1 min', '12 mins', '1 hr 5 min')
    """
    if minutes < 60:
        return "1 min" if minutes == 1 else f"{minutes} mins"
    hours, rest = divmod(minutes, 60)
    if rest == 0:
        return f"{hours} hr"
    return f"{hours} hr {rest} min"
