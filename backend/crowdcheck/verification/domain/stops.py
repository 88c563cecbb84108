"""Stop lookup used for segment inference."""

from __future__ import annotations

from typing import Iterable, Protocol, Sequence

from crowdcheck.verification.domain.geo import nearest_stops
from crowdcheck.verification.domain.models import Coordinates, Stop


class StopDirectory(Protocol):
    async def stops_near(self, point: Coordinates, max_distance: float) -> Sequence[Stop]:
        ...


class InMemoryStopDirectory(StopDirectory):
    def __init__(self, stops: Iterable[Stop] = ()) -> None:
        self.stops: list[Stop] = list(stops)

    async def stops_near(self, point: Coordinates, max_distance: float) -> Sequence[Stop]:
        return [match.stop for match in nearest_stops(point, self.stops, max_distance)]
