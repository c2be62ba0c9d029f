"""Process-wide facts computed once at startup and passed to every component."""

from __future__ import annotations

import enum
import functools
import logging
import os
import pwd
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from genprune.models import ElevationStrategy

log = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("/nix/var/nix")
XDG_PROFILES_SUFFIX = Path(".local/state/nix/profiles")
# Most unix systems start regular users at 1000, macOS at 501.
UID_MIN_LINUX = 1000
UID_MIN_DARWIN = 501
UID_SPAN = 100


class NixVariant(enum.Enum):
    NIX = "nix"
    LIX = "lix"
    DETERMINATE = "determinate"


@dataclass(frozen=True)
class Context:
    euid: int
    user: Optional[str]
    home: Optional[Path]
    darwin: bool
    now: datetime
    variant: NixVariant = NixVariant.NIX
    nix_version: Optional[str] = None
    state_dir: Path = DEFAULT_STATE_DIR
    elevation: ElevationStrategy = field(default_factory=ElevationStrategy.auto)
    environ: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_root(self) -> bool:
        return self.euid == 0

    @property
    def profiles_dir(self) -> Path:
        return self.state_dir / "profiles"

    @property
    def per_user_dir(self) -> Path:
        return self.state_dir / "profiles" / "per-user"

    @property
    def gcroots_auto_dir(self) -> Path:
        return self.state_dir / "gcroots" / "auto"

    @property
    def uid_range(self) -> range:
        uid_min = UID_MIN_DARWIN if self.darwin else UID_MIN_LINUX
        return range(uid_min, uid_min + UID_SPAN)


def detect_nix_variant(
    ctx: Context,
    run: Callable[[list[str]], Optional[str]] | None = None,
) -> tuple[NixVariant, Optional[str]]:
    if run is None:
        run = functools.partial(_run_version_command, ctx)
    output = run(["nix", "--version"])
    if not output:
        log.debug("Could not query nix --version, assuming plain Nix")
        return NixVariant.NIX, None
    first_line = output.strip().splitlines()[0]
    version = first_line.rsplit(" ", 1)[-1] if " " in first_line else None
    if "Lix" in first_line:
        return NixVariant.LIX, version
    if "Determinate" in first_line:
        return NixVariant.DETERMINATE, version
    return NixVariant.NIX, version


def load_context(environ: Mapping[str, str] | None = None) -> Context:
    env = dict(os.environ if environ is None else environ)
    euid = os.geteuid()
    user = env.get("USER") or _user_name(euid)
    home = Path(env["HOME"]) if env.get("HOME") else None

    elevation = ElevationStrategy.auto()
    if env.get("GENPRUNE_ELEVATION_PROGRAM"):
        elevation = ElevationStrategy.prefer(env["GENPRUNE_ELEVATION_PROGRAM"])

    ctx = Context(
        euid=euid,
        user=user,
        home=home,
        darwin=sys.platform == "darwin",
        now=datetime.now(timezone.utc),
        state_dir=Path(env.get("GENPRUNE_STATE_DIR") or DEFAULT_STATE_DIR),
        elevation=elevation,
        environ=env,
    )
    if env.get("GENPRUNE_NO_CHECKS"):
        return ctx

    variant, version = detect_nix_variant(ctx)
    log.debug("Detected %s %s", variant.value, version or "(unknown version)")
    return replace(ctx, variant=variant, nix_version=version)


def _user_name(uid: int) -> Optional[str]:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return None


def _run_version_command(ctx: Context, cmd: list[str]) -> Optional[str]:
    from genprune.commands import Command

    return Command(cmd[0], tuple(cmd[1:])).run_capture(ctx)
