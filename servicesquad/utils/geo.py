"""Geographic helpers for live tracking: distances, geofencing, route
polylines and the constant-speed ETA.

Everything here is pure and synchronous. Coordinates are plain
``(latitude, longitude)`` pairs in degrees, distances are in meters.
"""

import math
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

EARTH_RADIUS_M = 6_371_000  # matches the 6371e3 used by the mobile clients
DEFAULT_ARRIVAL_RADIUS_M = 50.0
DEFAULT_AVERAGE_SPEED_KMH = 30.0
POLYLINE_PRECISION = 1e5

Point = Tuple[float, float]


def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance_between(a: Point, b: Point) -> float:
    return haversine_distance_m(a[0], a[1], b[0], b[1])


def is_within_geofence(current: Point, target: Point, radius: float = DEFAULT_ARRIVAL_RADIUS_M) -> bool:
    """True when ``current`` lies inside (or exactly on) the circle of ``radius`` meters around ``target``."""
    return distance_between(current, target) <= radius


def decode_polyline(encoded: str) -> List[Point]:
    """Decode a Google encoded polyline into ``(lat, lng)`` points.

    Each value is a zig-zag encoded signed delta split into 5-bit chunks,
    offset by 63 so it stays printable. Point order is preserved.
    """
    points: List[Point] = []
    index = 0
    length = len(encoded)
    lat = 0
    lng = 0

    while index < length:
        deltas = []
        for _ in range(2):
            shift = 0
            result = 0
            while True:
                if index >= length:
                    raise ValueError("Truncated polyline")
                b = ord(encoded[index]) - 63
                index += 1
                result |= (b & 0x1F) << shift
                shift += 5
                if b < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)

        lat += deltas[0]
        lng += deltas[1]
        points.append((lat / POLYLINE_PRECISION, lng / POLYLINE_PRECISION))

    return points


def _encode_value(value: int) -> str:
    value = ~(value << 1) if value < 0 else value << 1
    chunks = []
    while value >= 0x20:
        chunks.append(chr((0x20 | (value & 0x1F)) + 63))
        value >>= 5
    chunks.append(chr(value + 63))
    return "".join(chunks)


def encode_polyline(points: Iterable[Point]) -> str:
    """Inverse of :func:`decode_polyline`, rounding half away from zero like the Maps APIs."""
    output = []
    prev_lat = 0
    prev_lng = 0
    for lat, lng in points:
        ilat = _round_coordinate(lat)
        ilng = _round_coordinate(lng)
        output.append(_encode_value(ilat - prev_lat))
        output.append(_encode_value(ilng - prev_lng))
        prev_lat, prev_lng = ilat, ilng
    return "".join(output)


def _round_coordinate(value: float) -> int:
    scaled = value * POLYLINE_PRECISION
    return int(math.floor(abs(scaled) + 0.5)) * (1 if scaled >= 0 else -1)


def straight_line_duration_s(distance_m: float, average_speed_kmh: float = DEFAULT_AVERAGE_SPEED_KMH) -> float:
    return (distance_m / 1000) / average_speed_kmh * 3600


def calculate_eta(
    distance_m: float,
    average_speed_kmh: float = DEFAULT_AVERAGE_SPEED_KMH,
    now: Optional[datetime] = None,
) -> datetime:
    """now + (distance / 1000 / speed) hours. Constant speed, no traffic."""
    start = now if now is not None else datetime.now()
    return start + timedelta(seconds=straight_line_duration_s(distance_m, average_speed_kmh))


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.1f}km"


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{round(seconds)}s"
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes}min"
    hours = minutes // 60
    return f"{hours}h {minutes % 60}min"
