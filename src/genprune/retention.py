from __future__ import annotations

import logging
import re
from collections.abc import MutableMapping
from datetime import datetime, timedelta
from typing import Optional, Protocol, TypeVar

log = logging.getLogger(__name__)

DUR_RE = re.compile(r"(?P<num>\d+)\s*(?P<unit>[A-Za-z]+)")

_UNIT_SECONDS = {
    "nsec": 1e-9,
    "ns": 1e-9,
    "usec": 1e-6,
    "us": 1e-6,
    "msec": 1e-3,
    "ms": 1e-3,
    "seconds": 1,
    "second": 1,
    "sec": 1,
    "s": 1,
    "minutes": 60,
    "minute": 60,
    "min": 60,
    "m": 60,
    "hours": 3600,
    "hour": 3600,
    "hr": 3600,
    "h": 3600,
    "days": 86400,
    "day": 86400,
    "d": 86400,
    "weeks": 7 * 86400,
    "week": 7 * 86400,
    "w": 7 * 86400,
    "months": 2_630_016,
    "month": 2_630_016,
    "M": 2_630_016,
    "years": 31_557_600,
    "year": 31_557_600,
    "y": 31_557_600,
}


class Dated(Protocol):
    @property
    def last_modified(self) -> Optional[datetime]: ...


T = TypeVar("T", bound=Dated)


def apply_retention(
    tagged: MutableMapping[T, bool],
    keep: int,
    keep_since: timedelta,
    now: datetime,
) -> None:
    """Flip tags from remove to retain for young entries and the newest ``keep``.

    ``tagged`` must iterate oldest first; the count pass walks it backwards.
    A tag is never moved from retain to remove.
    """
    if keep < 0:
        raise ValueError(f"keep must be >= 0, got {keep}")

    for entry in tagged:
        age = _age(entry, now)
        if age is None:
            tagged[entry] = False
        elif age <= keep_since:
            tagged[entry] = False

    if keep:
        for entry in list(tagged)[-keep:]:
            tagged[entry] = False


def _age(entry: Dated, now: datetime) -> Optional[timedelta]:
    if entry.last_modified is None:
        log.warning("Unknown modification time for %s, keeping it", entry)
        return None
    age = now - entry.last_modified
    if age < timedelta(0):
        log.warning(
            "Modification time of %s is in the future (now=%s), keeping it",
            entry,
            now.isoformat(),
        )
        return None
    return age


def parse_duration(text: str) -> timedelta:
    value = text.strip()
    if not value:
        raise ValueError("duration must be a non-empty string")
    if value.isdigit():
        return timedelta(seconds=int(value))

    total = 0.0
    pos = 0
    for match in DUR_RE.finditer(value):
        if value[pos:match.start()].strip():
            break
        unit = match.group("unit")
        factor = _UNIT_SECONDS.get(unit)
        if factor is None:
            factor = _UNIT_SECONDS.get(unit.lower())
        if factor is None:
            raise ValueError(f"unknown time unit {unit!r} in {text!r}")
        total += int(match.group("num")) * factor
        pos = match.end()
    if pos == 0 or value[pos:].strip():
        raise ValueError(f"invalid duration: {text!r}")
    return timedelta(seconds=total)


def format_duration(delta: timedelta) -> str:
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return "0s"
    parts: list[str] = []
    for label, size in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        count, seconds = divmod(seconds, size)
        if count:
            parts.append(f"{count}{label}")
    return " ".join(parts)
