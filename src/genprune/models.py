from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

# True means "scheduled for removal".
ToBeRemoved = bool


class CleanError(RuntimeError):
    pass


class ScanError(CleanError):
    pass


class CommandError(CleanError):
    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class PlanRejected(Exception):
    pass


@dataclass(frozen=True, order=True)
class Generation:
    number: int
    last_modified: Optional[datetime] = field(compare=False)
    path: Path


@dataclass(frozen=True)
class GcRoot:
    destination: Path
    writable_and_exists: bool = field(compare=False)
    last_modified: Optional[datetime] = field(default=None, compare=False)
    source: Optional[Path] = field(default=None, compare=False)


GenerationsTagged = Dict[Generation, ToBeRemoved]
ProfilesTagged = Dict[Path, GenerationsTagged]
GcRootsTagged = Dict[GcRoot, ToBeRemoved]


@dataclass(frozen=True)
class Scope:
    kind: str  # "all", "user" or "profile"
    profile: Optional[Path] = None

    @classmethod
    def all(cls) -> Scope:
        return cls(kind="all")

    @classmethod
    def user(cls) -> Scope:
        return cls(kind="user")

    @classmethod
    def for_profile(cls, path: Path) -> Scope:
        return cls(kind="profile", profile=path)


@dataclass(frozen=True)
class CleanOptions:
    keep: int = 1
    keep_since: timedelta = timedelta(0)
    dry: bool = False
    ask: bool = False
    no_gc: bool = False
    no_gcroots: bool = False
    optimise: bool = False
    max_size: Optional[str] = None


@dataclass(frozen=True)
class Plan:
    profiles: Mapping[Path, Mapping[Generation, ToBeRemoved]]
    gcroots: Mapping[GcRoot, ToBeRemoved]
    patterns: Tuple[re.Pattern[str], ...]
    keep: int
    keep_since: timedelta
    generated_at: str


@dataclass
class ExecutionReport:
    removed: list[Path] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)
    collected: bool = False
    optimised: bool = False


@dataclass(frozen=True)
class ElevationStrategy:
    kind: str  # "auto", "prefer" or "force"
    program: Optional[str] = None

    @classmethod
    def auto(cls) -> ElevationStrategy:
        return cls(kind="auto")

    @classmethod
    def prefer(cls, path: str) -> ElevationStrategy:
        return cls(kind="prefer", program=path)

    @classmethod
    def force(cls, name: str) -> ElevationStrategy:
        return cls(kind="force", program=name)
