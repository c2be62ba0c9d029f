from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, NoReturn, Optional

from genprune.context import Context, NixVariant
from genprune.models import CleanError, CommandError, ElevationStrategy

log = logging.getLogger(__name__)

ELEVATION_PROGRAMS = ("doas", "sudo", "run0", "pkexec")

# nixos-rebuild preserves these across privilege changes, so we do too.
PRESERVE_ENV = (
    "LOCALE_ARCHIVE",
    "PATH",
    "NIX_SSHOPTS",
    "NIX_CONFIG",
    "NIX_PATH",
    "NIX_REMOTE",
    "NIX_SSL_CERT_FILE",
    "NIX_USER_CONF_FILES",
)

Which = Callable[[str], Optional[str]]


def resolve_elevation_program(strategy: ElevationStrategy, which: Which) -> str:
    if strategy.kind == "force":
        if not strategy.program:
            raise CleanError("Forced elevation program has no name")
        found = which(strategy.program)
        if found is None:
            raise CleanError(f"Elevation program not found: {strategy.program}")
        return found
    if strategy.kind == "prefer" and strategy.program:
        preferred = Path(strategy.program)
        if preferred.is_file() and os.access(preferred, os.X_OK):
            return str(preferred)
        found = which(strategy.program)
        if found is not None:
            return found
        log.warning("Preferred elevation program %s not usable, falling back", strategy.program)
    elif strategy.kind not in ("auto", "prefer"):
        raise CleanError(f"Unknown elevation strategy: {strategy.kind}")

    for name in ELEVATION_PROGRAMS:
        found = which(name)
        if found is not None:
            return found
    raise CleanError(
        "No elevation program found, install one of: " + ", ".join(ELEVATION_PROGRAMS)
    )


def elevation_argv(
    program: str,
    env_set: Mapping[str, str],
    env_preserve: Iterable[str],
    environ: Mapping[str, str],
) -> list[str]:
    argv = [program]
    preserve = sorted(set(env_preserve))
    if Path(program).name == "sudo":
        argv.append("--set-home")
        if preserve and environ.get("GENPRUNE_SUDO_PRESERVE_ENV") != "0":
            argv.append(f"--preserve-env={','.join(preserve)}")
        if environ.get("GENPRUNE_SUDO_ASKPASS"):
            argv.append("-A")
    if env_set:
        argv.append("env")
        argv.extend(f"{key}={value}" for key, value in sorted(env_set.items()))
    return argv


@dataclass(frozen=True)
class Command:
    program: str
    args: tuple[str, ...] = ()
    dry: bool = False
    message: Optional[str] = None
    elevate: bool = False
    show_output: bool = False
    env_set: Mapping[str, str] = field(default_factory=dict)
    env_preserve: tuple[str, ...] = ()

    def with_required_env(self, environ: Mapping[str, str]) -> Command:
        env_set = dict(self.env_set)
        if environ.get("USER"):
            env_set["USER"] = environ["USER"]
        # Only propagate HOME for non-elevated commands.
        if not self.elevate and environ.get("HOME"):
            env_set["HOME"] = environ["HOME"]
        for key, value in environ.items():
            if key.startswith("GENPRUNE_"):
                env_set[key] = value
        preserve = tuple(key for key in PRESERVE_ENV if key in environ)
        log.debug(
            "Configured envs: %s",
            ", ".join([f"{k}={v}" for k, v in sorted(env_set.items())]
                      + [f"{k}=<preserved>" for k in preserve]),
        )
        return replace(self, env_set=env_set, env_preserve=preserve)

    def argv(self, ctx: Context, which: Which | None = None) -> list[str]:
        argv = [self.program, *self.args]
        if self.elevate:
            program = resolve_elevation_program(ctx.elevation, which or shutil.which)
            argv = elevation_argv(program, self.env_set, self.env_preserve, ctx.environ) + argv
        return argv

    def run(self, ctx: Context) -> None:
        argv = self.argv(ctx)
        if self.message:
            log.info(self.message)
        log.debug("Running %s", shlex.join(argv))
        if self.dry:
            return

        failure = self.message or "Command failed"
        try:
            cp = subprocess.run(
                argv,
                env=self._child_env(ctx.environ),
                text=True,
                stdout=None if self.show_output else subprocess.DEVNULL,
                stderr=subprocess.STDOUT if self.show_output else subprocess.PIPE,
                check=False,
            )
        except OSError as exc:
            raise CommandError(f"{failure}: {exc}") from exc
        if cp.returncode != 0:
            stderr = (cp.stderr or "").strip()
            detail = f"{failure} (exit status {cp.returncode})"
            if stderr:
                detail += f"\nstderr:\n{stderr}"
            raise CommandError(detail, returncode=cp.returncode, stderr=stderr)

    def run_capture(self, ctx: Context) -> Optional[str]:
        argv = self.argv(ctx)
        if self.message:
            log.info(self.message)
        log.debug("Capturing output of %s", shlex.join(argv))
        if self.dry:
            return None

        try:
            cp = subprocess.run(
                argv,
                env=self._child_env(ctx.environ),
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            log.debug("Failed to run %s: %s", argv[0], exc)
            return None
        if cp.returncode != 0:
            log.debug("%s exited with status %d", argv[0], cp.returncode)
            return None
        return cp.stdout

    def _child_env(self, environ: Mapping[str, str]) -> dict[str, str]:
        env = dict(environ)
        if environ.get("GENPRUNE_SUDO_ASKPASS"):
            env["SUDO_ASKPASS"] = environ["GENPRUNE_SUDO_ASKPASS"]
        if self.elevate:
            return env
        env.update(self.env_set)
        return env


def self_elevate(
    ctx: Context,
    argv: Sequence[str],
    which: Which | None = None,
    execvpe: Callable[[str, list[str], dict[str, str]], object] = os.execvpe,
) -> NoReturn:
    program = resolve_elevation_program(ctx.elevation, which or shutil.which)
    command = Command(sys.executable, elevate=True).with_required_env(ctx.environ)
    full = elevation_argv(program, command.env_set, command.env_preserve, ctx.environ)
    full += [sys.executable, "-m", "genprune", *argv]
    log.info("Re-running with elevated privileges via %s", Path(program).name)
    log.debug("Elevating: %s", shlex.join(full))
    execvpe(full[0], full, command._child_env(ctx.environ))
    raise CleanError(f"Failed to re-execute through {program}")


class StoreCollector:
    def __init__(self, ctx: Context, dry: bool = False) -> None:
        self.ctx = ctx
        self.dry = dry

    def collect_garbage(self, max_size: Optional[str] = None) -> None:
        args = ["store", "gc"]
        if self.ctx.variant is not NixVariant.DETERMINATE:
            args = ["--extra-experimental-features", "nix-command", *args]
        if max_size is not None:
            args += ["--max", max_size]
        self._command("nix", args, "Performing garbage collection on the nix store").run(self.ctx)

    def optimise(self) -> None:
        self._command("nix-store", ["--optimise"], "Optimising the nix store").run(self.ctx)

    def _command(self, program: str, args: list[str], message: str) -> Command:
        return Command(
            program,
            tuple(args),
            dry=self.dry,
            message=message,
            show_output=True,
        ).with_required_env(self.ctx.environ)

