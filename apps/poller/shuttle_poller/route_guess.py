"""Guess which route a vehicle is driving from its recent locations."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Sequence

try:
    from models import Location, ModelService, Route, Vehicle
except ImportError:  # pragma: no cover - support package import during testing
    from .models import Location, ModelService, Route, Vehicle  # type: ignore

LOGGER = logging.getLogger(__name__)

HISTORY_WINDOW = timedelta(minutes=15)
MIN_SAMPLES = 5
# Distances are planar, in degrees of latitude/longitude.
PROXIMITY_THRESHOLD = 0.003
FAR_SAMPLE_PENALTY = 50.0
# More than ~5% of samples far from a route averages out above this.
MAX_AVERAGE_DISTANCE = 5.0


def nearest_point_distance(latitude: float, longitude: float, route: Route) -> float:
    nearest = math.inf
    for point in route.points:
        distance = math.hypot(latitude - point.latitude, longitude - point.longitude)
        if distance < nearest:
            nearest = distance
    return nearest


def score_route(route: Route, samples: Sequence[Location]) -> float:
    """Average penalised nearest-point distance of ``samples`` to ``route``."""
    if not route.enabled or not route.active or not samples:
        return math.inf

    total = 0.0
    for sample in samples:
        distance = nearest_point_distance(sample.latitude, sample.longitude, route)
        if distance > PROXIMITY_THRESHOLD:
            distance += FAR_SAMPLE_PENALTY
        total += distance
    return total / len(samples)


def pick_route(routes: Sequence[Route], samples: Sequence[Location]) -> tuple[Route | None, float]:
    """Return the closest route and its score, or ``None`` when no route is close enough.

    Routes are compared in id order and only a strictly smaller score wins, so
    ties go to the lowest route id.
    """
    best: Route | None = None
    best_score = math.inf
    for route in sorted(routes, key=lambda candidate: candidate.id or 0):
        score = score_route(route, samples)
        if score < best_score:
            best = route
            best_score = score

    if best is None or best_score > MAX_AVERAGE_DISTANCE:
        return None, best_score
    return best, best_score


def guess_route_for_vehicle(
    model_service: ModelService,
    vehicle: Vehicle,
    now: datetime | None = None,
) -> Route | None:
    """Return the route ``vehicle`` appears to be on, or ``None``.

    ``None`` covers both "not enough recent data" and "not near any enabled,
    active route". Storage errors propagate to the caller.
    """
    routes = model_service.routes()
    now = now or datetime.now(timezone.utc)
    samples = model_service.locations_since(vehicle.id, now - HISTORY_WINDOW)
    if len(samples) < MIN_SAMPLES:
        LOGGER.debug("%s has too few recent updates (%d) to guess route.", vehicle.name, len(samples))
        return None

    best, score = pick_route(routes, samples)
    if best is None:
        LOGGER.debug("%s not on route; distance from nearest: %s", vehicle.name, score)
        return None

    route = model_service.route(best.id)
    LOGGER.debug("%s on %s route.", vehicle.name, route.name)
    return route
