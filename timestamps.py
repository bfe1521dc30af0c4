"""Resolve the timestamp encodings found in stored records into one instant.

Records written by this service carry ISO-8601 strings. Records imported from
older clients may carry native datetimes or serialized timestamps of the form
``{"_seconds": ..., "_nanoseconds": ...}``; some carry nothing at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Iterator, Mapping, Union

from errors import MalformedTimestampError

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class NativeInstant:
    value: Union[datetime, date]


@dataclass(frozen=True)
class EpochSeconds:
    seconds: Any
    nanoseconds: Any = 0


@dataclass(frozen=True)
class IsoString:
    text: str


@dataclass(frozen=True)
class Missing:
    pass


@dataclass(frozen=True)
class Unrecognized:
    raw: Any


StoredTimestamp = Union[NativeInstant, EpochSeconds, IsoString, Missing, Unrecognized]


def classify(raw: Any) -> StoredTimestamp:
    if raw is None:
        return Missing()
    if isinstance(raw, (datetime, date)):
        return NativeInstant(raw)
    if isinstance(raw, str):
        return IsoString(raw)
    if isinstance(raw, Mapping):
        if "_seconds" in raw:
            return EpochSeconds(raw["_seconds"], raw.get("_nanoseconds", 0))
        if "seconds" in raw:
            return EpochSeconds(raw["seconds"], raw.get("nanoseconds", 0))
    return Unrecognized(raw)


def parse_iso(text: str) -> datetime:
    """Parse an ISO-8601 string; naive results are taken as UTC."""
    clean = text.strip()
    if not clean:
        raise MalformedTimestampError("Empty timestamp string")
    try:
        parsed = datetime.fromisoformat(clean)
    except ValueError as exc:
        raise MalformedTimestampError(f"Unparseable timestamp: {text!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_instant(stamp: StoredTimestamp) -> datetime:
    if isinstance(stamp, NativeInstant):
        value = stamp.value
        if not isinstance(value, datetime):
            value = datetime.combine(value, time.min)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(stamp, EpochSeconds):
        try:
            seconds = int(stamp.seconds)
            nanos = int(stamp.nanoseconds or 0)
        except (TypeError, ValueError, OverflowError) as exc:
            raise MalformedTimestampError(
                f"Invalid epoch timestamp: {stamp.seconds!r}"
            ) from exc
        try:
            return _EPOCH + timedelta(seconds=seconds, microseconds=nanos // 1000)
        except OverflowError as exc:
            raise MalformedTimestampError(
                f"Epoch timestamp out of range: {seconds}"
            ) from exc
    if isinstance(stamp, IsoString):
        return parse_iso(stamp.text)
    if isinstance(stamp, Missing):
        raise MalformedTimestampError("Timestamp is missing")
    raise MalformedTimestampError(f"Unrecognized timestamp shape: {stamp.raw!r}")


class TimestampNormalizer:
    def normalize(self, raw: Any) -> datetime:
        return to_instant(classify(raw))

    def iter_valid(
        self, records: Iterable[Mapping[str, Any]], field: str = "createdAt"
    ) -> Iterator[tuple[Mapping[str, Any], datetime]]:
        """Yield ``(record, instant)`` pairs, skipping unreadable timestamps."""
        for record in records:
            try:
                instant = self.normalize(record.get(field))
            except MalformedTimestampError as exc:
                logger.warning(
                    f"skipping record with malformed {field}: "
                    f"id={record.get('id')} reason={exc}"
                )
                continue
            yield record, instant
