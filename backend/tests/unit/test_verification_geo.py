from __future__ import annotations

import pytest

from crowdcheck.verification.domain.geo import (
    bounding_box,
    determine_segment,
    distance,
    is_between,
    nearest_stops,
)
from crowdcheck.verification.domain.models import Coordinates, Stop

STOP_A = Stop(id="a", name="Plac Grunwaldzki", coordinates=Coordinates(52.0, 21.0))
STOP_B = Stop(id="b", name="Rondo ONZ", coordinates=Coordinates(52.0, 21.004))
STOP_FAR = Stop(id="far", name="Depot", coordinates=Coordinates(52.1, 21.2))


def test_distance_one_degree_latitude() -> None:
    meters = distance(Coordinates(0.0, 0.0), Coordinates(1.0, 0.0))
    assert meters == pytest.approx(111_195, rel=1e-3)


def test_distance_is_zero_for_same_point() -> None:
    point = Coordinates(50.06, 19.94)
    assert distance(point, point) == 0


def test_nearest_stops_filters_and_sorts() -> None:
    point = Coordinates(52.0, 21.0035)
    matches = nearest_stops(point, [STOP_A, STOP_FAR, STOP_B], max_distance=1000)
    assert [match.stop.id for match in matches] == ["b", "a"]
    assert matches[0].distance < matches[1].distance


def test_is_between_uses_perpendicular_distance() -> None:
    on_line = Coordinates(52.0, 21.002)
    off_line = Coordinates(52.003, 21.002)
    assert is_between(on_line, STOP_A.coordinates, STOP_B.coordinates, tolerance=200)
    assert not is_between(off_line, STOP_A.coordinates, STOP_B.coordinates, tolerance=200)


def test_determine_segment_high_confidence_between_close_stops() -> None:
    segment = determine_segment(Coordinates(52.0, 21.002), [STOP_A, STOP_B, STOP_FAR])
    assert segment is not None
    assert {segment.start_stop_id, segment.end_stop_id} == {"a", "b"}
    assert segment.confidence == "HIGH"


def test_determine_segment_degrades_when_off_segment() -> None:
    segment = determine_segment(Coordinates(52.003, 21.002), [STOP_A, STOP_B])
    assert segment is not None
    # average distance ~360 m gives MEDIUM, being ~330 m off the line drops it a level
    assert segment.confidence == "LOW"


def test_determine_segment_requires_two_stops() -> None:
    assert determine_segment(Coordinates(52.0, 21.0), [STOP_A, STOP_FAR]) is None


def test_bounding_box_corrects_for_longitude_compression() -> None:
    box = bounding_box(Coordinates(60.0, 10.0), radius_km=0.5)
    lat_span = box.max_latitude - box.min_latitude
    lon_span = box.max_longitude - box.min_longitude
    assert lon_span == pytest.approx(lat_span * 2, rel=1e-6)
    assert box.contains(Coordinates(60.002, 10.004))
    assert not box.contains(Coordinates(60.01, 10.0))
