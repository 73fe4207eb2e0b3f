"""Fleet data types and the persistence interface used by the updater."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence


class VehicleNotFoundError(LookupError):
    """No vehicle matches the requested id or tracker id."""


class LocationNotFoundError(LookupError):
    """The vehicle has no stored locations yet."""


class RouteNotFoundError(LookupError):
    """No route matches the requested id."""


class StorageError(RuntimeError):
    """The backing store failed while serving a request."""


@dataclass
class Vehicle:
    id: int | None
    name: str
    tracker_id: str
    enabled: bool = True
    created: datetime | None = None
    updated: datetime | None = None


@dataclass(frozen=True)
class RoutePoint:
    latitude: float
    longitude: float


@dataclass
class Route:
    id: int | None
    name: str
    enabled: bool = True
    active: bool = True
    points: list[RoutePoint] = field(default_factory=list)
    created: datetime | None = None
    updated: datetime | None = None


@dataclass(frozen=True)
class Location:
    tracker_id: str
    latitude: float
    longitude: float
    heading: float
    speed: float  # mph
    time: datetime
    route_id: int | None = None
    id: int | None = None
    created: datetime | None = None

    def as_row_tuple(self) -> tuple:
        return (
            self.tracker_id,
            self.latitude,
            self.longitude,
            self.heading,
            self.speed,
            self.time,
            self.route_id,
        )


class ModelService(Protocol):
    """Storage operations the update cycle depends on.

    Lookups that find nothing raise the matching ``*NotFoundError``; any other
    failure is raised as-is (``StorageError`` for the PostgreSQL backend).
    Implementations must be safe to call from several threads at once.
    """

    def vehicle_with_tracker_id(self, tracker_id: str) -> Vehicle:
        ...

    def latest_location(self, vehicle_id: int) -> Location:
        """The location stored last for the vehicle, whatever its feed time."""
        ...

    def locations_since(self, vehicle_id: int, since: datetime) -> Sequence[Location]:
        ...

    def routes(self) -> Sequence[Route]:
        ...

    def route(self, route_id: int) -> Route:
        ...

    def create_location(self, location: Location) -> None:
        ...

    def delete_locations_before(self, before: datetime) -> int:
        ...
