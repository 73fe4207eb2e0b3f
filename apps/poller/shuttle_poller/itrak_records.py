"""Split and parse the plain-text iTRAK vehicle feed.

A feed body is a run of records, each terminated by ``eof``::

    Vehicle ID:10 lat:42.7302 lon:-73.6766 dir:90.0 spd:32.2 lck:1 time:93005 date:01022006 trig:0 eof

Fields always appear in the same order and each one is a ``label:value``
token. The hour part of ``time`` loses its leading zero before 10:00, so the
timestamp is re-padded before parsing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

LOGGER = logging.getLogger(__name__)

RECORD_DELIMITER = "eof"
RECORD_PREFIX = "Vehicle ID:"

TIME_LABEL = "time:"
TIME_FIELD_WIDTH = 11  # "time:HHMMSS"
DATE_FIELD_WIDTH = 8  # MMDDYYYY
TIMESTAMP_FORMAT = "date:%m%d%Y time:%H%M%S"

KMH_TO_MPH = 0.621371192

_ID_CHARS = frozenset("0123456789.")
_SIGNED_CHARS = frozenset("0123456789.-")
_DIGITS = frozenset("0123456789")

# (label, attribute, allowed characters) in feed order, after the vehicle id.
_FIELD_GRAMMAR: tuple[tuple[str, str, frozenset[str]], ...] = (
    ("lat", "latitude", _SIGNED_CHARS),
    ("lon", "longitude", _SIGNED_CHARS),
    ("dir", "heading", _SIGNED_CHARS),
    ("spd", "speed", _SIGNED_CHARS),
    ("lck", "lock", _SIGNED_CHARS),
    ("time", "time", _DIGITS),
    ("date", "date", _DIGITS),
    ("trig", "status", _DIGITS),
)


class RecordParseError(ValueError):
    """A feed record or one of its fields does not follow the iTRAK grammar."""


@dataclass(frozen=True)
class FeedRecord:
    """Raw field values of one vehicle record, labels stripped."""

    tracker_id: str
    latitude: str
    longitude: str
    heading: str
    speed: str
    lock: str
    time: str
    date: str
    status: str

    def timestamp(self) -> datetime:
        return parse_itrak_timestamp(self.time, self.date)


def split_records(payload: str, delimiter: str = RECORD_DELIMITER) -> list[str]:
    """Return the records of a feed body; the text after the last delimiter is dropped."""
    records = payload.split(delimiter)[:-1]
    # TODO: a feed carrying exactly one vehicle also lands here; count the
    # records that parse instead of the raw split once a one-shuttle feed is seen.
    if len(records) <= 1:
        LOGGER.warning("Found no vehicles delineated by '%s'.", delimiter)
    return records


def _check_value(label: str, value: str, allowed: frozenset[str]) -> str:
    if not value or not set(value) <= allowed:
        raise RecordParseError(f"Invalid {label} value {value!r}")
    return value


def parse_record(text: str) -> FeedRecord:
    """Tokenize one record into a ``FeedRecord``.

    Text before ``Vehicle ID:`` and tokens after ``trig`` are ignored; anything
    else out of place raises ``RecordParseError``.
    """
    start = text.find(RECORD_PREFIX)
    if start < 0:
        raise RecordParseError(f"Record does not contain {RECORD_PREFIX!r}: {text.strip()!r}")

    tokens = text[start + len(RECORD_PREFIX):].split()
    if len(tokens) < len(_FIELD_GRAMMAR) + 1:
        raise RecordParseError(f"Record is missing fields: {text.strip()!r}")

    values = {"tracker_id": _check_value("Vehicle ID", tokens[0], _ID_CHARS)}
    for token, (label, attribute, allowed) in zip(tokens[1:], _FIELD_GRAMMAR):
        name, sep, value = token.partition(":")
        if not sep or name != label:
            raise RecordParseError(f"Expected {label!r} field, found {token!r}")
        values[attribute] = _check_value(label, value, allowed)

    return FeedRecord(**values)


def parse_itrak_timestamp(time_value: str, date_value: str) -> datetime:
    """Combine the feed's ``time`` and ``date`` values into a UTC datetime."""
    if len(date_value) != DATE_FIELD_WIDTH or not date_value.isdigit():
        raise RecordParseError(f"Invalid iTRAK date {date_value!r}")
    if not 0 < len(time_value) <= TIME_FIELD_WIDTH - len(TIME_LABEL) or not time_value.isdigit():
        raise RecordParseError(f"Invalid iTRAK time {time_value!r}")

    time_field = TIME_LABEL + time_value
    if len(time_field) < TIME_FIELD_WIDTH:
        padding = "0" * (TIME_FIELD_WIDTH - len(time_field))
        time_field = time_field[: len(TIME_LABEL)] + padding + time_field[len(TIME_LABEL):]

    combined = f"date:{date_value} {time_field}"
    try:
        parsed = datetime.strptime(combined, TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise RecordParseError(f"Invalid iTRAK time and date {combined!r}") from exc
    return parsed.replace(tzinfo=timezone.utc)


def kph_to_mph(kmh: float) -> float:
    return kmh * KMH_TO_MPH
