from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from genprune.models import Generation, GenerationsTagged, ScanError

log = logging.getLogger(__name__)

GENERATION_RE = re.compile(r"^(.*)-(\d+)-link$")
MAX_GENERATION = 2**64 - 1


@dataclass(frozen=True)
class GenerationInfo:
    number: int
    date: str
    target: str
    current: bool


def scan_generations(profile: Path) -> GenerationsTagged:
    name = profile.name
    if not name:
        raise ScanError(f"Profile path has no name: {profile}")
    parent = profile.parent

    try:
        entries = sorted(os.scandir(parent), key=lambda e: e.name)
    except OSError as exc:
        raise ScanError(f"Reading generations of {profile}: {exc}") from exc

    generations: list[Generation] = []
    for entry in entries:
        match = GENERATION_RE.match(entry.name)
        if match is None or match.group(1) != name:
            continue
        number = _parse_number(match.group(2), entry.path)
        if number is None:
            continue
        path = Path(entry.path)
        generations.append(
            Generation(number=number, last_modified=symlink_time(path), path=path)
        )

    generations.sort()
    result: GenerationsTagged = {generation: True for generation in generations}
    log.debug("Found %d generation(s) for %s", len(result), profile)
    return result


def symlink_time(path: Path) -> Optional[datetime]:
    try:
        st = path.lstat()
    except OSError as exc:
        log.warning("Could not read metadata of %s: %s", path, exc)
        return None
    timestamp = st.st_mtime if st.st_mtime is not None else getattr(st, "st_birthtime", None)
    if timestamp is None:
        log.warning("No modification or creation time for %s", path)
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def describe_generations(profile: Path) -> list[GenerationInfo]:
    current = _read_link(profile)
    current_name = current.name if current is not None else None
    infos: list[GenerationInfo] = []
    for generation in reversed(list(scan_generations(profile))):
        target = _read_link(generation.path)
        date = generation.last_modified.isoformat() if generation.last_modified else "Unknown"
        infos.append(
            GenerationInfo(
                number=generation.number,
                date=date,
                target=str(target) if target is not None else "Unknown",
                current=current_name == generation.path.name,
            )
        )
    return infos


def _parse_number(digits: str, where: str) -> Optional[int]:
    try:
        number = int(digits)
    except ValueError:
        log.warning("Failed to parse generation number %r of %s", digits, where)
        return None
    if number > MAX_GENERATION:
        log.warning("Generation number of %s is out of range, skipping", where)
        return None
    return number


def _read_link(path: Path) -> Optional[Path]:
    try:
        return Path(os.readlink(path))
    except OSError:
        return None
