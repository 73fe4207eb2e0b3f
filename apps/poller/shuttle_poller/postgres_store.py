"""PostgreSQL implementation of the fleet model service."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

import psycopg2
from psycopg2.extras import Json
from psycopg2.pool import ThreadedConnectionPool

try:
    from models import (
        Location,
        LocationNotFoundError,
        Route,
        RouteNotFoundError,
        RoutePoint,
        StorageError,
        Vehicle,
        VehicleNotFoundError,
    )
except ImportError:  # pragma: no cover - support package import during testing
    from .models import (  # type: ignore
        Location,
        LocationNotFoundError,
        Route,
        RouteNotFoundError,
        RoutePoint,
        StorageError,
        Vehicle,
        VehicleNotFoundError,
    )

LOGGER = logging.getLogger(__name__)

VEHICLES_TABLE = "vehicles"
ROUTES_TABLE = "routes"
LOCATIONS_TABLE = "locations"

_LOCATION_COLUMNS = "l.id, l.tracker_id, l.latitude, l.longitude, l.heading, l.speed, l.time, l.route_id, l.created"


def _location_from_row(row: tuple) -> Location:
    return Location(
        id=row[0],
        tracker_id=row[1],
        latitude=row[2],
        longitude=row[3],
        heading=row[4],
        speed=row[5],
        time=row[6],
        route_id=row[7],
        created=row[8],
    )


def _route_from_row(row: tuple) -> Route:
    points = [RoutePoint(latitude=float(p[0]), longitude=float(p[1])) for p in (row[5] or [])]
    return Route(
        id=row[0],
        name=row[1],
        enabled=row[2],
        active=row[3],
        created=row[4],
        points=points,
        updated=row[6],
    )


def _vehicle_from_row(row: tuple) -> Vehicle:
    return Vehicle(
        id=row[0],
        name=row[1],
        created=row[2],
        updated=row[3],
        enabled=row[4],
        tracker_id=row[5],
    )


class PostgresModelService:
    """Model service backed by a thread-safe psycopg2 connection pool.

    Every call runs in its own transaction on a pooled connection, so the
    updater's worker threads never share a cursor. ``getconn`` raises instead of
    blocking once the pool is exhausted, so checkouts are gated by a semaphore
    sized to the pool and extra callers wait for a connection to come back.
    """

    def __init__(self, pool, max_connections: int | None = None) -> None:
        self._pool = pool
        limit = max_connections if max_connections is not None else getattr(pool, "maxconn", None)
        self._slots = threading.BoundedSemaphore(limit) if limit else None

    @classmethod
    def connect(cls, database_url: str, max_connections: int = 10) -> "PostgresModelService":
        pool = ThreadedConnectionPool(1, max_connections, database_url)
        return cls(pool, max_connections=max_connections)

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def _cursor(self) -> Iterator:
        if self._slots is not None:
            self._slots.acquire()
        try:
            try:
                conn = self._pool.getconn()
            except psycopg2.Error as exc:
                raise StorageError(str(exc)) from exc
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except psycopg2.Error as exc:
                conn.rollback()
                raise StorageError(str(exc)) from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                self._pool.putconn(conn)
        finally:
            if self._slots is not None:
                self._slots.release()

    def ensure_schema(self) -> None:
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {VEHICLES_TABLE} (
                id SERIAL PRIMARY KEY,
                name TEXT,
                created TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated TIMESTAMPTZ NOT NULL DEFAULT now(),
                enabled BOOLEAN NOT NULL,
                tracker_id VARCHAR(10) UNIQUE
            );
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {ROUTES_TABLE} (
                id SERIAL PRIMARY KEY,
                name TEXT,
                created TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated TIMESTAMPTZ NOT NULL DEFAULT now(),
                enabled BOOLEAN NOT NULL DEFAULT true,
                active BOOLEAN NOT NULL DEFAULT true,
                points JSONB NOT NULL DEFAULT '[]'::jsonb
            );
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {LOCATIONS_TABLE} (
                id SERIAL PRIMARY KEY,
                tracker_id VARCHAR(10) NOT NULL,
                latitude DOUBLE PRECISION NOT NULL,
                longitude DOUBLE PRECISION NOT NULL,
                heading DOUBLE PRECISION NOT NULL,
                speed DOUBLE PRECISION NOT NULL,
                time TIMESTAMPTZ NOT NULL,
                route_id INTEGER REFERENCES {ROUTES_TABLE} (id) ON DELETE SET NULL,
                created TIMESTAMPTZ NOT NULL DEFAULT now()
            );
            """,
            f"""
            CREATE INDEX IF NOT EXISTS idx_{LOCATIONS_TABLE}_tracker_time
                ON {LOCATIONS_TABLE} (tracker_id, time DESC);
            """,
        ]
        with self._cursor() as cur:
            for statement in statements:
                cur.execute(statement)

    # Vehicles

    def create_vehicle(self, vehicle: Vehicle) -> Vehicle:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {VEHICLES_TABLE} (name, enabled, tracker_id)
                VALUES (%s, %s, %s)
                RETURNING id, created, updated
                """,
                (vehicle.name, vehicle.enabled, vehicle.tracker_id),
            )
            vehicle.id, vehicle.created, vehicle.updated = cur.fetchone()
        return vehicle

    def vehicle(self, vehicle_id: int) -> Vehicle:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT id, name, created, updated, enabled, tracker_id FROM {VEHICLES_TABLE} WHERE id = %s",
                (vehicle_id,),
            )
            row = cur.fetchone()
        if row is None:
            raise VehicleNotFoundError(f"vehicle {vehicle_id} not found")
        return _vehicle_from_row(row)

    def vehicle_with_tracker_id(self, tracker_id: str) -> Vehicle:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT id, name, created, updated, enabled, tracker_id FROM {VEHICLES_TABLE} WHERE tracker_id = %s",
                (tracker_id,),
            )
            row = cur.fetchone()
        if row is None:
            raise VehicleNotFoundError(f"no vehicle with tracker id {tracker_id!r}")
        return _vehicle_from_row(row)

    def vehicles(self) -> list[Vehicle]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT id, name, created, updated, enabled, tracker_id FROM {VEHICLES_TABLE} ORDER BY id"
            )
            rows = cur.fetchall()
        return [_vehicle_from_row(row) for row in rows]

    def enabled_vehicles(self) -> list[Vehicle]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT id, name, created, updated, enabled, tracker_id FROM {VEHICLES_TABLE} "
                "WHERE enabled = true ORDER BY id"
            )
            rows = cur.fetchall()
        return [_vehicle_from_row(row) for row in rows]

    def modify_vehicle(self, vehicle: Vehicle) -> Vehicle:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE {VEHICLES_TABLE}
                SET name = %s, enabled = %s, tracker_id = %s, updated = now()
                WHERE id = %s
                RETURNING updated
                """,
                (vehicle.name, vehicle.enabled, vehicle.tracker_id, vehicle.id),
            )
            row = cur.fetchone()
        if row is None:
            raise VehicleNotFoundError(f"vehicle {vehicle.id} not found")
        vehicle.updated = row[0]
        return vehicle

    def delete_vehicle(self, vehicle_id: int) -> None:
        with self._cursor() as cur:
            cur.execute(f"DELETE FROM {VEHICLES_TABLE} WHERE id = %s", (vehicle_id,))
            deleted = cur.rowcount
        if deleted == 0:
            raise VehicleNotFoundError(f"vehicle {vehicle_id} not found")

    # Routes

    def create_route(self, route: Route) -> Route:
        points = [[p.latitude, p.longitude] for p in route.points]
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {ROUTES_TABLE} (name, enabled, active, points)
                VALUES (%s, %s, %s, %s)
                RETURNING id, created, updated
                """,
                (route.name, route.enabled, route.active, Json(points)),
            )
            route.id, route.created, route.updated = cur.fetchone()
        return route

    def routes(self) -> list[Route]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT id, name, enabled, active, created, points, updated FROM {ROUTES_TABLE} ORDER BY id"
            )
            rows = cur.fetchall()
        return [_route_from_row(row) for row in rows]

    def route(self, route_id: int) -> Route:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT id, name, enabled, active, created, points, updated FROM {ROUTES_TABLE} WHERE id = %s",
                (route_id,),
            )
            row = cur.fetchone()
        if row is None:
            raise RouteNotFoundError(f"route {route_id} not found")
        return _route_from_row(row)

    # Locations

    def create_location(self, location: Location) -> None:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {LOCATIONS_TABLE} (
                    tracker_id, latitude, longitude, heading, speed, time, route_id
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                location.as_row_tuple(),
            )

    def latest_location(self, vehicle_id: int) -> Location:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {_LOCATION_COLUMNS}
                FROM {LOCATIONS_TABLE} l
                JOIN {VEHICLES_TABLE} v ON v.tracker_id = l.tracker_id
                WHERE v.id = %s
                ORDER BY l.created DESC, l.id DESC
                LIMIT 1
                """,
                (vehicle_id,),
            )
            row = cur.fetchone()
        if row is None:
            raise LocationNotFoundError(f"no locations for vehicle {vehicle_id}")
        return _location_from_row(row)

    def locations_since(self, vehicle_id: int, since: datetime) -> list[Location]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {_LOCATION_COLUMNS}
                FROM {LOCATIONS_TABLE} l
                JOIN {VEHICLES_TABLE} v ON v.tracker_id = l.tracker_id
                WHERE v.id = %s AND l.time > %s
                ORDER BY l.time DESC
                """,
                (vehicle_id, since),
            )
            rows = cur.fetchall()
        return [_location_from_row(row) for row in rows]

    def delete_locations_before(self, before: datetime) -> int:
        with self._cursor() as cur:
            cur.execute(f"DELETE FROM {LOCATIONS_TABLE} WHERE time < %s", (before,))
            deleted = cur.rowcount
        return deleted
