#!/usr/bin/env python3
"""Register vehicles and import route polylines for the updater."""
from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

try:
    from models import Route, RoutePoint, Vehicle, VehicleNotFoundError
    from postgres_store import PostgresModelService
except ImportError:  # pragma: no cover - support package import during testing
    from .models import Route, RoutePoint, Vehicle, VehicleNotFoundError  # type: ignore
    from .postgres_store import PostgresModelService  # type: ignore

LOGGER = logging.getLogger(__name__)


def load_route_points(path: Path) -> list[RoutePoint]:
    """Read the first LineString in a GeoJSON file as route points.

    GeoJSON stores ``[longitude, latitude]`` pairs.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if data.get("type") == "FeatureCollection":
        geometries = [feature.get("geometry") or {} for feature in data.get("features", [])]
    elif data.get("type") == "Feature":
        geometries = [data.get("geometry") or {}]
    else:
        geometries = [data]

    for geom in geometries:
        if geom.get("type") == "LineString":
            return [RoutePoint(latitude=float(c[1]), longitude=float(c[0])) for c in geom.get("coordinates", [])]
        if geom.get("type") == "MultiLineString":
            return [
                RoutePoint(latitude=float(c[1]), longitude=float(c[0]))
                for line in geom.get("coordinates", [])
                for c in line
            ]
    raise ValueError(f"No LineString geometry found in {path}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage shuttle vehicles and routes.")
    parser.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string (defaults to DATABASE_URL env var).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_vehicle = subparsers.add_parser("add-vehicle", help="Register a vehicle.")
    add_vehicle.add_argument("--name", required=True)
    add_vehicle.add_argument("--tracker-id", required=True, help="Vehicle ID reported by the iTRAK feed.")
    add_vehicle.add_argument("--disabled", action="store_true")

    list_vehicles = subparsers.add_parser("list-vehicles", help="List registered vehicles.")
    list_vehicles.add_argument("--enabled-only", action="store_true")

    delete_vehicle = subparsers.add_parser("delete-vehicle", help="Remove a vehicle by id.")
    delete_vehicle.add_argument("vehicle_id", type=int)

    import_route = subparsers.add_parser("import-route", help="Create a route from a GeoJSON LineString.")
    import_route.add_argument("path", type=Path)
    import_route.add_argument("--name", required=True)
    import_route.add_argument("--inactive", action="store_true")
    import_route.add_argument("--disabled", action="store_true")

    subparsers.add_parser("list-routes", help="List routes.")
    return parser.parse_args(argv)


def run_command(args: argparse.Namespace, store: PostgresModelService) -> int:
    if args.command == "add-vehicle":
        vehicle = store.create_vehicle(
            Vehicle(id=None, name=args.name, tracker_id=args.tracker_id, enabled=not args.disabled)
        )
        LOGGER.info("Created vehicle %s (id=%s, tracker=%s)", vehicle.name, vehicle.id, vehicle.tracker_id)
    elif args.command == "list-vehicles":
        vehicles = store.enabled_vehicles() if args.enabled_only else store.vehicles()
        for vehicle in vehicles:
            print(f"{vehicle.id}\t{vehicle.tracker_id}\t{vehicle.name}\t{'enabled' if vehicle.enabled else 'disabled'}")
    elif args.command == "delete-vehicle":
        try:
            store.delete_vehicle(args.vehicle_id)
        except VehicleNotFoundError:
            LOGGER.error("Vehicle %d does not exist.", args.vehicle_id)
            return 1
        LOGGER.info("Deleted vehicle %d", args.vehicle_id)
    elif args.command == "import-route":
        points = load_route_points(args.path)
        route = store.create_route(
            Route(
                id=None,
                name=args.name,
                enabled=not args.disabled,
                active=not args.inactive,
                points=points,
            )
        )
        LOGGER.info("Created route %s (id=%s, points=%d)", route.name, route.id, len(points))
    elif args.command == "list-routes":
        for route in store.routes():
            flags = ",".join(
                flag for flag, on in (("enabled", route.enabled), ("active", route.active)) if on
            )
            print(f"{route.id}\t{route.name}\t{len(route.points)} points\t{flags or '-'}")
    return 0


def main() -> None:
    load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env")
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not args.database_url:
        raise SystemExit("Database URL not provided. Use --database-url or set DATABASE_URL env var.")

    store = PostgresModelService.connect(args.database_url, max_connections=1)
    try:
        store.ensure_schema()
        raise SystemExit(run_command(args, store))
    finally:
        store.close()


if __name__ == "__main__":
    main()
