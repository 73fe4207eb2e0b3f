#!/usr/bin/env python3
"""Fetch the iTRAK data feed and keep the latest raw response around for diagnostics."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import requests
from requests.structures import CaseInsensitiveDict
from dotenv import load_dotenv

try:
    import itrak_records
except ImportError:  # pragma: no cover - support package import during testing
    from . import itrak_records  # type: ignore

LOGGER = logging.getLogger(__name__)

DEFAULT_DATA_FEED = "https://shuttles.rpi.edu/datafeed"
FEED_TIMEOUT_SECONDS = 5.0


class FeedTransportError(RuntimeError):
    """The feed could not be reached or its body could not be read."""


@dataclass(frozen=True)
class DataFeedResponse:
    body: bytes
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code == requests.codes.ok

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def as_dict(self) -> dict[str, object]:
        return {
            "body": self.text(),
            "status_code": self.status_code,
            "headers": dict(self.headers),
        }


class LastResponseCache:
    """Single-slot holder for the most recent feed response."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._response: DataFeedResponse | None = None

    def set(self, response: DataFeedResponse) -> None:
        with self._lock:
            self._response = response

    def get(self) -> DataFeedResponse | None:
        with self._lock:
            return self._response


def fetch_feed(url: str) -> DataFeedResponse:
    """GET the feed with a fixed timeout.

    Non-200 responses are returned as-is; only transport problems raise.
    """
    LOGGER.debug("Requesting %s", url)
    try:
        response = requests.get(url, timeout=FEED_TIMEOUT_SECONDS)
        body = response.content
    except requests.RequestException as exc:
        raise FeedTransportError(f"Could not get data feed {url}: {exc}") from exc
    return DataFeedResponse(
        body=body,
        status_code=response.status_code,
        headers=CaseInsensitiveDict(response.headers),
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fetch the iTRAK data feed once and report what it contains."
    )
    parser.add_argument(
        "--data-feed",
        default=os.getenv("UPDATER_DATA_FEED", DEFAULT_DATA_FEED),
        help=f"Feed URL (defaults to UPDATER_DATA_FEED env var or {DEFAULT_DATA_FEED}).",
    )
    parser.add_argument(
        "--output",
        help="Write the raw response body to this path.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the response (body, status, headers) as JSON on stdout.",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    return parser.parse_args()


def summarize_response(response: DataFeedResponse) -> tuple[int, int]:
    """Return (parsed, failed) record counts for a feed response."""
    parsed = failed = 0
    for record in itrak_records.split_records(response.text()):
        try:
            itrak_records.parse_record(record).timestamp()
        except itrak_records.RecordParseError as exc:
            failed += 1
            LOGGER.warning("Unparseable record: %s", exc)
        else:
            parsed += 1
    return parsed, failed


def main() -> None:
    load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env")
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        response = fetch_feed(args.data_feed)
    except FeedTransportError as exc:
        LOGGER.error("%s", exc)
        sys.exit(1)

    if args.output:
        Path(args.output).write_bytes(response.body)
        LOGGER.debug("Wrote raw feed body to %s", args.output)

    if args.json:
        print(json.dumps(response.as_dict(), indent=2))

    if not response.ok:
        LOGGER.error("data feed status code %d", response.status_code)
        sys.exit(1)

    parsed, failed = summarize_response(response)
    LOGGER.info(
        "Fetched %s (status=%d, bytes=%d, records=%d, unparseable=%d)",
        args.data_feed,
        response.status_code,
        len(response.body),
        parsed,
        failed,
    )


if __name__ == "__main__":
    main()
