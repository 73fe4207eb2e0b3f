import math
import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shuttle_poller.models import Location, Route, RoutePoint, StorageError, Vehicle
from shuttle_poller.route_guess import (
    HISTORY_WINDOW,
    guess_route_for_vehicle,
    nearest_point_distance,
    score_route,
)

NOW = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)
VEHICLE = Vehicle(id=1, name="Shuttle 1", tracker_id="10")


def _line(lat: float, lon_start: float, count: int = 20, step: float = 0.001) -> list[RoutePoint]:
    return [RoutePoint(latitude=lat, longitude=lon_start + i * step) for i in range(count)]


def _samples(coords: list[tuple[float, float]]) -> list[Location]:
    return [
        Location(
            tracker_id="10",
            latitude=lat,
            longitude=lon,
            heading=0.0,
            speed=10.0,
            time=NOW - timedelta(seconds=30 * (i + 1)),
        )
        for i, (lat, lon) in enumerate(coords)
    ]


class StubModelService:
    def __init__(self, routes, samples, fail_routes=False):
        self._routes = {route.id: route for route in routes}
        self._samples = samples
        self._fail_routes = fail_routes
        self.since_calls = []

    def routes(self):
        if self._fail_routes:
            raise StorageError("connection lost")
        return list(self._routes.values())

    def route(self, route_id):
        return self._routes[route_id]

    def locations_since(self, vehicle_id, since):
        self.since_calls.append((vehicle_id, since))
        return [s for s in self._samples if s.time > since]


ROUTE_A = Route(id=1, name="West", points=_line(42.730, -73.690))
ROUTE_B = Route(id=2, name="East", points=_line(42.700, -73.650))
NEAR_A = [(42.730, -73.690 + i * 0.002) for i in range(6)]


class DistanceTest(unittest.TestCase):
    def test_nearest_point_distance_is_planar(self):
        route = Route(id=9, name="Square", points=[RoutePoint(0.0, 0.0), RoutePoint(3.0, 4.0)])
        self.assertAlmostEqual(nearest_point_distance(3.0, 0.0, route), 3.0)
        self.assertEqual(nearest_point_distance(0.0, 0.0, Route(id=9, name="Empty")), math.inf)

    def test_disabled_or_inactive_routes_score_infinite(self):
        samples = _samples(NEAR_A)
        disabled = Route(id=1, name="West", enabled=False, points=ROUTE_A.points)
        inactive = Route(id=1, name="West", active=False, points=ROUTE_A.points)
        self.assertEqual(score_route(disabled, samples), math.inf)
        self.assertEqual(score_route(inactive, samples), math.inf)

    def test_far_samples_are_penalised(self):
        samples = _samples([(42.730, -73.690), (42.740, -73.690)])
        score = score_route(ROUTE_A, samples)
        self.assertAlmostEqual(score, (0.0 + 0.01 + 50.0) / 2)


class GuessRouteTest(unittest.TestCase):
    def test_too_few_samples_abstains(self):
        ms = StubModelService([ROUTE_A, ROUTE_B], _samples(NEAR_A[:4]))
        self.assertIsNone(guess_route_for_vehicle(ms, VEHICLE, now=NOW))

    def test_history_window_is_fifteen_minutes(self):
        ms = StubModelService([ROUTE_A], _samples(NEAR_A))
        guess_route_for_vehicle(ms, VEHICLE, now=NOW)
        self.assertEqual(ms.since_calls, [(1, NOW - HISTORY_WINDOW)])

    def test_samples_near_route_a_pick_route_a(self):
        ms = StubModelService([ROUTE_A, ROUTE_B], _samples(NEAR_A))
        route = guess_route_for_vehicle(ms, VEHICLE, now=NOW)
        self.assertIsNotNone(route)
        self.assertEqual(route.id, ROUTE_A.id)

    def test_samples_far_from_every_route_pick_nothing(self):
        far = [(40.0, -75.0 + i * 0.001) for i in range(6)]
        ms = StubModelService([ROUTE_A, ROUTE_B], _samples(far))
        self.assertIsNone(guess_route_for_vehicle(ms, VEHICLE, now=NOW))

    def test_one_stray_sample_in_twenty_is_tolerated(self):
        coords = [(42.730, -73.690 + i * 0.001) for i in range(19)] + [(42.740, -73.690)]
        ms = StubModelService([ROUTE_A, ROUTE_B], _samples(coords))
        self.assertEqual(guess_route_for_vehicle(ms, VEHICLE, now=NOW).id, ROUTE_A.id)

    def test_one_stray_sample_in_five_is_not(self):
        coords = NEAR_A[:4] + [(42.740, -73.690)]
        ms = StubModelService([ROUTE_A, ROUTE_B], _samples(coords))
        self.assertIsNone(guess_route_for_vehicle(ms, VEHICLE, now=NOW))

    def test_disabled_route_is_never_returned(self):
        disabled_a = Route(id=1, name="West", enabled=False, points=ROUTE_A.points)
        ms = StubModelService([disabled_a, ROUTE_B], _samples(NEAR_A))
        self.assertIsNone(guess_route_for_vehicle(ms, VEHICLE, now=NOW))

    def test_inactive_route_is_never_returned(self):
        inactive_a = Route(id=1, name="West", active=False, points=ROUTE_A.points)
        ms = StubModelService([inactive_a, ROUTE_B], _samples(NEAR_A))
        self.assertIsNone(guess_route_for_vehicle(ms, VEHICLE, now=NOW))

    def test_no_routes_means_no_guess(self):
        ms = StubModelService([], _samples(NEAR_A))
        self.assertIsNone(guess_route_for_vehicle(ms, VEHICLE, now=NOW))

    def test_ties_go_to_lowest_route_id(self):
        twin_high = Route(id=7, name="Twin high", points=ROUTE_A.points)
        twin_low = Route(id=3, name="Twin low", points=ROUTE_A.points)
        ms = StubModelService([twin_high, twin_low], _samples(NEAR_A))
        self.assertEqual(guess_route_for_vehicle(ms, VEHICLE, now=NOW).id, 3)

    def test_storage_failure_propagates(self):
        ms = StubModelService([ROUTE_A], _samples(NEAR_A), fail_routes=True)
        with self.assertRaises(StorageError):
            guess_route_for_vehicle(ms, VEHICLE, now=NOW)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
