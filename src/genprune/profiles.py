from __future__ import annotations

import logging
import os
import pwd
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from genprune.context import XDG_PROFILES_SUFFIX, Context
from genprune.generations import GENERATION_RE
from genprune.models import CleanError, Scope

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserAccount:
    uid: int
    name: str
    home: Path


class UserSource(Protocol):
    def lookup(self, uid: int) -> Optional[UserAccount]: ...


class PasswdUserSource:
    """Looks users up in the system account database."""

    def lookup(self, uid: int) -> Optional[UserAccount]:
        try:
            entry = pwd.getpwuid(uid)
        except KeyError:
            return None
        return UserAccount(uid=entry.pw_uid, name=entry.pw_name, home=Path(entry.pw_dir))


class StaticUserSource:
    def __init__(self, accounts: Iterable[UserAccount]) -> None:
        self._accounts = {account.uid: account for account in accounts}

    def lookup(self, uid: int) -> Optional[UserAccount]:
        return self._accounts.get(uid)


def locate_profiles(
    scope: Scope,
    ctx: Context,
    users: UserSource | None = None,
    elevate: Callable[[], None] | None = None,
) -> list[Path]:
    if scope.kind == "profile":
        if scope.profile is None:
            raise CleanError("Profile scope requires a profile path")
        return [scope.profile]
    if scope.kind == "user":
        return _user_profiles(ctx)
    if scope.kind == "all":
        if not ctx.is_root:
            if elevate is None:
                raise CleanError("Cleaning all profiles requires root privileges")
            elevate()
        return _all_profiles(ctx, users or PasswdUserSource())
    raise CleanError(f"Unknown scope: {scope.kind}")


def profiles_in_dir(directory: Path) -> list[Path]:
    result: list[Path] = []
    try:
        entries = sorted(os.scandir(directory), key=lambda e: e.name)
    except OSError as exc:
        log.warning("Failed to read profiles directory %s: %s", directory, exc)
        return result

    for entry in entries:
        try:
            if not entry.is_symlink():
                continue
            target = Path(os.readlink(entry.path))
        except OSError as exc:
            log.warning("Failed to read %s: %s", entry.path, exc)
            continue
        if not target.name:
            log.warning("Failed to get filename for %s", target)
            continue
        if GENERATION_RE.match(target.name):
            result.append(Path(entry.path))
    log.debug("Profiles in %s: %s", directory, [p.name for p in result])
    return result


def existing_dirs(paths: Iterable[Path]) -> Iterator[Path]:
    for path in paths:
        if path.is_dir():
            yield path
        else:
            log.warning("Profiles directory not found, skipping: %s", path)


def _user_profiles(ctx: Context) -> list[Path]:
    if ctx.is_root:
        raise PermissionError("genprune clean user: don't run me as root!")
    if not ctx.user:
        raise CleanError(f"User not found for uid {ctx.euid}")
    if ctx.home is None:
        raise CleanError("HOME is not set, cannot locate user profiles")

    candidates = [ctx.home / XDG_PROFILES_SUFFIX, ctx.per_user_dir / ctx.user]
    profiles: list[Path] = []
    for directory in existing_dirs(candidates):
        profiles.extend(profiles_in_dir(directory))
    if not profiles:
        log.warning("No active profile directories found for the current user. Nothing to clean.")
    return profiles


def _all_profiles(ctx: Context, users: UserSource) -> list[Path]:
    profiles: list[Path] = []
    for directory in existing_dirs([ctx.profiles_dir, ctx.per_user_dir]):
        if directory == ctx.per_user_dir:
            try:
                children = sorted(directory.iterdir())
            except OSError as exc:
                log.warning("Failed to read %s: %s", directory, exc)
                continue
            for child in children:
                if child.is_dir():
                    profiles.extend(profiles_in_dir(child))
        else:
            profiles.extend(profiles_in_dir(directory))

    uids = [0, *ctx.uid_range]
    log.debug("Scanning XDG profiles for users 0, %d-%d", uids[1], uids[-1])
    for uid in uids:
        account = users.lookup(uid)
        if account is None:
            continue
        xdg_dir = account.home / XDG_PROFILES_SUFFIX
        if not xdg_dir.is_dir():
            log.debug("No XDG profiles for %s at %s", account.name, xdg_dir)
            continue
        log.debug("Adding XDG profiles for %s", account.name)
        profiles.extend(profiles_in_dir(xdg_dir))
    return list(dict.fromkeys(profiles))
