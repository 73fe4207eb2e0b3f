#!/usr/bin/env python3
"""Poll the iTRAK data feed and store vehicle locations in PostgreSQL.

Each cycle fetches the feed, processes every vehicle's records on a thread
pool, waits for all of them, then removes locations older than one month.
"""
from __future__ import annotations

import argparse
import calendar
import logging
import os
import re
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable

from dotenv import load_dotenv

try:
    import itrak_records
    import poll_feed
    import route_guess
    from models import Location, LocationNotFoundError, ModelService, VehicleNotFoundError
    from postgres_store import PostgresModelService
except ImportError:  # pragma: no cover - support package import during testing
    from . import itrak_records, poll_feed, route_guess  # type: ignore
    from .models import Location, LocationNotFoundError, ModelService, VehicleNotFoundError  # type: ignore
    from .postgres_store import PostgresModelService  # type: ignore

LOGGER = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL = "10s"
MAX_WORKERS_CAP = 32

_DURATION_UNITS = {  # nanoseconds per unit
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|ms|s|m|h)")


@dataclass(frozen=True)
class UpdaterConfig:
    data_feed: str = poll_feed.DEFAULT_DATA_FEED
    update_interval: str = DEFAULT_UPDATE_INTERVAL


def parse_duration(value: str) -> timedelta:
    """Parse durations such as ``10s``, ``1m30s``, ``250ms`` or ``1.5h``."""
    text = value.strip()
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"Invalid duration: {value!r}")

    total_ns = 0.0
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        total_ns += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if 0 < total_ns < 1_000:
        raise ValueError(f"Duration {value!r} is below microsecond resolution")
    return sign * timedelta(microseconds=total_ns / 1_000)


def one_month_before(moment: datetime) -> datetime:
    """Same day and time one calendar month earlier, clamped to the month's length.

    Mar 31 maps to the last day of February; it does not overflow into
    early March.
    """
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_tick(origin: float, last_tick: int, now: float, interval: float) -> tuple[int, float]:
    """Return the index of the next tick to run and how long to wait for it.

    Ticks fall on ``origin + n * interval``. When a cycle overruns, one missed
    tick runs straight away and the rest are dropped.
    """
    if interval <= 0:
        raise ValueError("Update interval must be positive.")
    due = origin + (last_tick + 1) * interval
    if due <= now:
        return int((now - origin) // interval), 0.0
    return last_tick + 1, due - now


def group_by_tracker(records: Iterable[itrak_records.FeedRecord]) -> dict[str, list[itrak_records.FeedRecord]]:
    grouped: dict[str, list[itrak_records.FeedRecord]] = {}
    for record in records:
        grouped.setdefault(record.tracker_id, []).append(record)
    return grouped


class Updater:
    """Periodically pulls the iTRAK feed into the model service."""

    def __init__(
        self,
        config: UpdaterConfig,
        model_service: ModelService,
        cache: poll_feed.LastResponseCache | None = None,
        fetch: Callable[[str], poll_feed.DataFeedResponse] = poll_feed.fetch_feed,
        max_workers: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.update_interval = parse_duration(config.update_interval)
        if self.update_interval <= timedelta(0):
            raise ValueError(f"Update interval must be positive: {config.update_interval!r}")
        if max_workers is not None and max_workers <= 0:
            raise ValueError("max_workers must be greater than zero.")
        self.model_service = model_service
        self.cache = cache if cache is not None else poll_feed.LastResponseCache()
        self.max_workers = max_workers
        self._fetch = fetch
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def last_response(self) -> poll_feed.DataFeedResponse | None:
        """Most recent successful feed response, for diagnostics."""
        return self.cache.get()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Update now, then once per interval until ``stop_event`` is set."""
        stop_event = stop_event or threading.Event()
        interval = self.update_interval.total_seconds()
        LOGGER.debug("Updater started.")

        origin = time.monotonic()
        tick = 0
        self._update_safely()
        while not stop_event.is_set():
            tick, wait = next_tick(origin, tick, time.monotonic(), interval)
            if wait > 0 and stop_event.wait(wait):
                break
            self._update_safely()
        LOGGER.debug("Updater stopped.")

    def _update_safely(self) -> None:
        try:
            self.update()
        except Exception:
            LOGGER.exception("Unexpected error during update cycle")

    def update(self) -> bool:
        """Run one cycle. Returns False when the feed could not be used."""
        try:
            response = self._fetch(self.config.data_feed)
        except poll_feed.FeedTransportError as exc:
            LOGGER.error("Could not get data feed: %s", exc)
            return False

        if not response.ok:
            LOGGER.error("data feed status code %d", response.status_code)
            return False

        self.cache.set(response)

        records = []
        for raw in itrak_records.split_records(response.text()):
            try:
                records.append(itrak_records.parse_record(raw))
            except itrak_records.RecordParseError as exc:
                LOGGER.error("Unable to parse vehicle record: %s", exc)

        self.process_records(records)
        LOGGER.debug("Updated vehicles.")

        self.prune_locations()
        return True

    def process_records(self, records: list[itrak_records.FeedRecord]) -> None:
        """Handle each vehicle's records in parallel and wait for all of them.

        Records for the same vehicle stay on one worker, in feed order.
        """
        grouped = group_by_tracker(records)
        if not grouped:
            return
        workers = self.max_workers or min(MAX_WORKERS_CAP, len(grouped))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vehicle") as executor:
            futures = {
                executor.submit(self.handle_vehicle_records, vehicle_records): tracker_id
                for tracker_id, vehicle_records in grouped.items()
            }
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception:
                    LOGGER.exception("Unhandled error while updating tracker %s", futures[future])

    def handle_vehicle_records(self, records: list[itrak_records.FeedRecord]) -> list[Location]:
        stored: list[Location] = []
        for record in records:
            try:
                location = self.handle_vehicle_data(record)
            except Exception:
                LOGGER.exception("Unhandled error while processing record for %s", record.tracker_id)
                continue
            if location is not None:
                stored.append(location)
        return stored

    def handle_vehicle_data(self, record: itrak_records.FeedRecord) -> Location | None:
        """Store ``record`` as a new location; returns None when it is skipped."""
        ms = self.model_service
        try:
            vehicle = ms.vehicle_with_tracker_id(record.tracker_id)
        except VehicleNotFoundError:
            LOGGER.warning(
                'Unknown vehicle ID "%s" returned by iTrak. Make sure all vehicles have been added.',
                record.tracker_id,
            )
            return None
        except Exception:
            LOGGER.exception("Unable to fetch vehicle %s.", record.tracker_id)
            return None

        try:
            new_time = record.timestamp()
        except itrak_records.RecordParseError as exc:
            LOGGER.error("unable to parse iTRAK time and date: %s", exc)
            return None

        try:
            last_update = ms.latest_location(vehicle.id)
        except LocationNotFoundError:
            last_update = None
        except Exception:
            LOGGER.exception("unable to retrieve last update for %s", vehicle.name)
            return None
        # Only an identical timestamp counts as a repeat; older readings are still stored.
        if last_update is not None and last_update.time == new_time:
            return None
        LOGGER.debug("Updating %s.", vehicle.name)

        try:
            route = route_guess.guess_route_for_vehicle(ms, vehicle, now=self._clock())
        except Exception:
            LOGGER.exception("Unable to guess route for %s.", vehicle.name)
            return None

        try:
            latitude = float(record.latitude)
            longitude = float(record.longitude)
            heading = float(record.heading)
            speed_kmh = float(record.speed)
        except ValueError as exc:
            LOGGER.error("unable to parse numeric field for %s: %s", vehicle.name, exc)
            return None

        location = Location(
            tracker_id=record.tracker_id,
            latitude=latitude,
            longitude=longitude,
            heading=heading,
            speed=itrak_records.kph_to_mph(speed_kmh),
            time=new_time,
            route_id=route.id if route is not None else None,
        )
        try:
            ms.create_location(location)
        except Exception:
            LOGGER.exception("could not create location for %s", vehicle.name)
            return None
        return location

    def prune_locations(self) -> int:
        """Delete locations older than one month; failures are only logged."""
        cutoff = one_month_before(self._clock())
        try:
            deleted = self.model_service.delete_locations_before(cutoff)
        except Exception as exc:
            LOGGER.error("unable to remove old locations: %s", exc)
            return 0
        if deleted > 0:
            LOGGER.debug("Removed %d old updates.", deleted)
        return deleted


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll the iTRAK data feed and store vehicle locations in PostgreSQL."
    )
    parser.add_argument(
        "--data-feed",
        default=os.getenv("UPDATER_DATA_FEED", poll_feed.DEFAULT_DATA_FEED),
        help="Feed URL (defaults to UPDATER_DATA_FEED env var).",
    )
    parser.add_argument(
        "--update-interval",
        default=os.getenv("UPDATER_UPDATE_INTERVAL", DEFAULT_UPDATE_INTERVAL),
        help="Time between updates, e.g. 10s or 1m30s (defaults to UPDATER_UPDATE_INTERVAL env var or 10s).",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string (defaults to DATABASE_URL env var).",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        help="Worker threads per update (defaults to UPDATER_MAX_WORKERS env var or one per vehicle, up to 32).",
    )
    parser.add_argument(
        "--pool-size",
        type=int,
        help="Maximum pooled database connections (defaults to DATABASE_POOL_SIZE env var or 10).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single update and exit.",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    return parser.parse_args()


def _int_setting(cli_value: int | None, env_name: str, default: int | None) -> int | None:
    if cli_value is not None:
        value = cli_value
    else:
        raw = os.getenv(env_name)
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError as exc:
            raise SystemExit(f"Invalid {env_name} value: {raw!r}. Provide an integer.") from exc
    if value <= 0:
        raise SystemExit(f"{env_name} must be greater than zero.")
    return value


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
    max_workers = _int_setting(args.max_workers, "UPDATER_MAX_WORKERS", None)
    pool_size = _int_setting(args.pool_size, "DATABASE_POOL_SIZE", 10)

    config = UpdaterConfig(data_feed=args.data_feed, update_interval=args.update_interval)
    try:
        interval = parse_duration(config.update_interval)
    except ValueError as exc:
        raise SystemExit(f"Invalid update interval: {exc}") from exc
    if interval <= timedelta(0):
        raise SystemExit("Update interval must be greater than zero.")

    model_service = PostgresModelService.connect(args.database_url, max_connections=pool_size)
    try:
        model_service.ensure_schema()
        updater = Updater(config, model_service, max_workers=max_workers)

        stop_event = threading.Event()

        def _handle_shutdown(signum, frame):
            LOGGER.info("Received signal %s; shutting down updater.", signum)
            stop_event.set()

        signal.signal(signal.SIGTERM, _handle_shutdown)
        signal.signal(signal.SIGINT, _handle_shutdown)

        if args.once:
            ok = updater.update()
            sys.exit(0 if ok else 1)

        LOGGER.info("Entering update loop (feed=%s, interval=%s)", config.data_feed, updater.update_interval)
        updater.run(stop_event)
    finally:
        model_service.close()


if __name__ == "__main__":
    main()
