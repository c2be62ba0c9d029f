from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from genprune.generations import symlink_time
from genprune.models import GcRoot, GcRootsTagged, ScanError
from genprune.retention import apply_retention

log = logging.getLogger(__name__)

DEFAULT_GCROOT_PATTERNS = (
    r".*/\.direnv/.*",
    r".*result.*",
)


@dataclass(frozen=True)
class GcRootPatterns:
    patterns: tuple[re.Pattern[str], ...]

    @classmethod
    def default(cls) -> GcRootPatterns:
        return cls.from_strings(DEFAULT_GCROOT_PATTERNS)

    @classmethod
    def from_strings(cls, sources: Iterable[str]) -> GcRootPatterns:
        compiled: list[re.Pattern[str]] = []
        for source in sources:
            try:
                compiled.append(re.compile(source))
            except re.error as exc:
                raise ValueError(f"invalid gcroot pattern {source!r}: {exc}") from exc
        return cls(patterns=tuple(compiled))

    def matches(self, path: Path) -> bool:
        text = str(path)
        return any(pattern.search(text) for pattern in self.patterns)


def discover_gcroots(roots_dir: Path, patterns: GcRootPatterns) -> list[GcRoot]:
    try:
        entries = sorted(os.scandir(roots_dir), key=lambda e: e.name)
    except OSError as exc:
        raise ScanError(f"Reading auto gcroots dir {roots_dir}: {exc}") from exc

    roots: list[GcRoot] = []
    for entry in entries:
        src = Path(entry.path)
        try:
            dst = Path(os.readlink(src))
        except OSError as exc:
            log.warning("Failed to read gcroot symlink %s: %s", src, exc)
            continue
        if not dst.is_absolute():
            dst = roots_dir / dst

        if not patterns.matches(dst):
            log.debug("%s doesn't match any gcroot pattern, skipping", dst)
            continue

        accessible = _writable_and_exists(dst)
        if not accessible:
            log.debug("%s doesn't exist or is not writable, skipping", dst)
        roots.append(
            GcRoot(
                destination=dst,
                writable_and_exists=accessible,
                last_modified=symlink_time(dst) if accessible else None,
                source=src,
            )
        )
    return roots


def tag_gcroots(
    roots: Iterable[GcRoot],
    keep_since: timedelta,
    now: datetime,
) -> GcRootsTagged:
    tagged: GcRootsTagged = {}
    for root in roots:
        if root.writable_and_exists:
            tagged[root] = True
    # No generation numbers here, so only the age rule applies.
    apply_retention(tagged, keep=0, keep_since=keep_since, now=now)
    return tagged


def _writable_and_exists(path: Path) -> bool:
    mode = os.F_OK | os.W_OK
    if os.access in os.supports_follow_symlinks:
        return os.access(path, mode, follow_symlinks=False)
    return os.path.lexists(path) and os.access(path, mode)
