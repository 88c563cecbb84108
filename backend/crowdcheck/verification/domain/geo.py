"""Geographic helpers: distances, nearest stops and segment inference."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from crowdcheck.verification.domain.models import Coordinates, IncidentSegment, Stop

EARTH_RADIUS_METERS = 6_371_000.0
# metres per degree, used for the planar point-to-segment approximation
METERS_PER_DEGREE = 111_320.0
KM_PER_DEGREE_LATITUDE = 111.0

CONFIDENCE_LEVELS = ("HIGH", "MEDIUM", "LOW")


@dataclass(frozen=True, slots=True)
class StopDistance:
    stop: Stop
    distance: float


@dataclass(frozen=True, slots=True)
class BoundingBox:
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    def contains(self, point: Coordinates) -> bool:
        return (
            self.min_latitude <= point.latitude <= self.max_latitude
            and self.min_longitude <= point.longitude <= self.max_longitude
        )


def distance(a: Coordinates, b: Coordinates) -> float:
    """Haversine distance in meters."""

    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def nearest_stops(point: Coordinates, candidates: Iterable[Stop], max_distance: float) -> list[StopDistance]:
    matches = [StopDistance(stop=stop, distance=distance(point, stop.coordinates)) for stop in candidates]
    matches = [match for match in matches if match.distance <= max_distance]
    matches.sort(key=lambda match: match.distance)
    return matches


def distance_to_segment(point: Coordinates, a: Coordinates, b: Coordinates) -> float:
    dx = b.longitude - a.longitude
    dy = b.latitude - a.latitude
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        px, py = a.longitude, a.latitude
    else:
        t = ((point.longitude - a.longitude) * dx + (point.latitude - a.latitude) * dy) / length_sq
        t = max(0.0, min(1.0, t))
        px = a.longitude + t * dx
        py = a.latitude + t * dy
    return math.hypot(point.longitude - px, point.latitude - py) * METERS_PER_DEGREE


def is_between(point: Coordinates, a: Coordinates, b: Coordinates, tolerance: float) -> bool:
    return distance_to_segment(point, a, b) <= tolerance


def _degrade(confidence: str) -> str:
    index = CONFIDENCE_LEVELS.index(confidence)
    return CONFIDENCE_LEVELS[min(index + 1, len(CONFIDENCE_LEVELS) - 1)]


def determine_segment(
    point: Coordinates,
    stops: Sequence[Stop],
    *,
    max_distance: float = 1000.0,
    tolerance: float = 200.0,
) -> IncidentSegment | None:
    """Infer the stop pair bounding ``point``; ``None`` when fewer than two stops are near."""

    nearby = nearest_stops(point, stops, max_distance)
    if len(nearby) < 2:
        return None
    first, second = nearby[0], nearby[1]
    average = (first.distance + second.distance) / 2
    if average < 200:
        confidence = "HIGH"
    elif average < 500:
        confidence = "MEDIUM"
    else:
        confidence = "LOW"
    if not is_between(point, first.stop.coordinates, second.stop.coordinates, tolerance):
        confidence = _degrade(confidence)
    return IncidentSegment(
        start_stop_id=first.stop.id,
        end_stop_id=second.stop.id,
        start_stop_name=first.stop.name,
        end_stop_name=second.stop.name,
        confidence=confidence,
        distance_from_start=round(first.distance, 1),
        distance_from_end=round(second.distance, 1),
    )


def bounding_box(center: Coordinates, radius_km: float) -> BoundingBox:
    lat_delta = radius_km / KM_PER_DEGREE_LATITUDE
    cos_lat = math.cos(math.radians(center.latitude))
    lon_delta = radius_km / (KM_PER_DEGREE_LATITUDE * max(cos_lat, 1e-6))
    return BoundingBox(
        min_latitude=center.latitude - lat_delta,
        max_latitude=center.latitude + lat_delta,
        min_longitude=center.longitude - lon_delta,
        max_longitude=center.longitude + lon_delta,
    )
