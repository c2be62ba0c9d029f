from __future__ import annotations

import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

from genprune import commands
from genprune.commands import (
    Command,
    StoreCollector,
    elevation_argv,
    resolve_elevation_program,
    self_elevate,
)
from genprune.context import Context, NixVariant
from genprune.models import CleanError, CommandError, ElevationStrategy

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _which(*available: str):
    table = {name: f"/run/wrappers/bin/{name}" for name in available}
    return table.get


def _ctx(**overrides) -> Context:
    values = dict(
        euid=1000,
        user="alice",
        home=Path("/home/alice"),
        darwin=False,
        now=NOW,
        environ={"USER": "alice", "HOME": "/home/alice", "PATH": "/bin"},
    )
    values.update(overrides)
    return Context(**values)


class _Recorder:
    def __init__(self, returncode: int = 0, stderr: str = "") -> None:
        self.calls: list[list[str]] = []
        self.returncode = returncode
        self.stderr = stderr

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        return subprocess.CompletedProcess(argv, self.returncode, None, self.stderr)


def test_auto_elevation_picks_first_available() -> None:
    assert resolve_elevation_program(ElevationStrategy.auto(), _which("sudo", "run0")) == (
        "/run/wrappers/bin/sudo"
    )
    assert resolve_elevation_program(ElevationStrategy.auto(), _which("doas", "sudo")) == (
        "/run/wrappers/bin/doas"
    )


def test_auto_elevation_without_programs_fails() -> None:
    with pytest.raises(CleanError, match="No elevation program"):
        resolve_elevation_program(ElevationStrategy.auto(), _which())


def test_forced_elevation_must_exist() -> None:
    assert resolve_elevation_program(ElevationStrategy.force("run0"), _which("sudo", "run0")) == (
        "/run/wrappers/bin/run0"
    )
    with pytest.raises(CleanError, match="not found"):
        resolve_elevation_program(ElevationStrategy.force("doas"), _which("sudo"))


def test_preferred_elevation_falls_back(caplog: pytest.LogCaptureFixture) -> None:
    strategy = ElevationStrategy.prefer("/nonexistent/doas-wrapper")

    assert resolve_elevation_program(strategy, _which("sudo")) == "/run/wrappers/bin/sudo"
    assert "not usable" in caplog.text


def test_preferred_elevation_accepts_executable(tmp_path: Path) -> None:
    program = tmp_path / "my-sudo"
    program.write_text("#!/bin/sh\n", encoding="utf-8")
    program.chmod(0o755)

    assert resolve_elevation_program(ElevationStrategy.prefer(str(program)), _which()) == str(
        program
    )


def test_sudo_argv_preserves_environment() -> None:
    argv = elevation_argv("/usr/bin/sudo", {"USER": "alice"}, ["PATH", "NIX_PATH"], {})

    assert argv == ["/usr/bin/sudo", "--set-home", "--preserve-env=NIX_PATH,PATH", "env", "USER=alice"]


def test_sudo_argv_honours_knobs() -> None:
    environ = {"GENPRUNE_SUDO_PRESERVE_ENV": "0", "GENPRUNE_SUDO_ASKPASS": "/bin/askpass"}

    argv = elevation_argv("sudo", {}, ["PATH"], environ)

    assert argv == ["sudo", "--set-home", "-A"]


def test_doas_argv_only_sets_env() -> None:
    assert elevation_argv("/bin/doas", {"B": "2", "A": "1"}, ["PATH"], {}) == [
        "/bin/doas",
        "env",
        "A=1",
        "B=2",
    ]


def test_required_env_skips_home_when_elevated() -> None:
    environ = {"USER": "alice", "HOME": "/home/alice", "GENPRUNE_LOG": "debug", "NIX_PATH": "x"}

    plain = Command("nix").with_required_env(environ)
    elevated = Command("nix", elevate=True).with_required_env(environ)

    assert plain.env_set == {"USER": "alice", "HOME": "/home/alice", "GENPRUNE_LOG": "debug"}
    assert "HOME" not in elevated.env_set
    assert elevated.env_preserve == ("NIX_PATH",)


def test_elevated_argv_is_prefixed() -> None:
    command = Command("nix-store", ("--optimise",), elevate=True, env_set={"USER": "alice"})

    assert command.argv(_ctx(), which=_which("doas")) == [
        "/run/wrappers/bin/doas",
        "env",
        "USER=alice",
        "nix-store",
        "--optimise",
    ]


def test_failed_command_raises_with_stderr(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(returncode=2, stderr="boom\n")
    monkeypatch.setattr(commands.subprocess, "run", recorder)

    with pytest.raises(CommandError) as excinfo:
        Command("nix", ("store", "gc"), message="Collecting").run(_ctx())

    assert excinfo.value.returncode == 2
    assert excinfo.value.stderr == "boom"
    assert "exit status 2" in str(excinfo.value)


def test_dry_command_does_not_spawn(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder()
    monkeypatch.setattr(commands.subprocess, "run", recorder)

    Command("nix", ("store", "gc"), dry=True).run(_ctx())

    assert recorder.calls == []


@pytest.mark.parametrize(
    ("variant", "prefix"),
    [
        (NixVariant.NIX, ["nix", "--extra-experimental-features", "nix-command"]),
        (NixVariant.LIX, ["nix", "--extra-experimental-features", "nix-command"]),
        (NixVariant.DETERMINATE, ["nix"]),
    ],
)
def test_store_collector_arguments(
    monkeypatch: pytest.MonkeyPatch, variant: NixVariant, prefix: list[str]
) -> None:
    recorder = _Recorder()
    monkeypatch.setattr(commands.subprocess, "run", recorder)
    collector = StoreCollector(_ctx(variant=variant))

    collector.collect_garbage("5G")
    collector.optimise()

    assert recorder.calls == [
        [*prefix, "store", "gc", "--max", "5G"],
        ["nix-store", "--optimise"],
    ]


def test_self_elevate_reexecutes_module() -> None:
    seen: list[list[str]] = []

    def _execvpe(file, args, env):
        seen.append(args)

    with pytest.raises(CleanError, match="Failed to re-execute"):
        self_elevate(_ctx(), ["clean", "all", "--dry"], which=_which("doas"), execvpe=_execvpe)

    assert seen == [
        [
            "/run/wrappers/bin/doas",
            "env",
            "USER=alice",
            sys.executable,
            "-m",
            "genprune",
            "clean",
            "all",
            "--dry",
        ]
    ]


def test_run_capture_returns_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[dict[str, str]] = []

    def _run(argv, **kwargs):
        seen.append(kwargs["env"])
        return subprocess.CompletedProcess(argv, 0, "nix (Nix) 2.24.9\n", "")

    monkeypatch.setattr(commands.subprocess, "run", _run)

    assert Command("nix", ("--version",)).run_capture(_ctx()) == "nix (Nix) 2.24.9\n"
    assert seen[0]["PATH"] == "/bin"


def test_run_capture_failures_return_none(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(commands.subprocess, "run", _Recorder(returncode=1, stderr="nope"))
    assert Command("nix", ("--version",)).run_capture(_ctx()) is None

    def _missing(argv, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", argv[0])

    monkeypatch.setattr(commands.subprocess, "run", _missing)
    assert Command("nix", ("--version",)).run_capture(_ctx()) is None


def test_run_capture_dry_does_not_spawn(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder()
    monkeypatch.setattr(commands.subprocess, "run", recorder)

    assert Command("nix", ("--version",), dry=True).run_capture(_ctx()) is None
    assert recorder.calls == []


def test_child_env_comes_from_context(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[dict[str, str]] = []

    def _run(argv, **kwargs):
        seen.append(kwargs["env"])
        return subprocess.CompletedProcess(argv, 0, None, "")

    monkeypatch.setattr(commands.subprocess, "run", _run)
    monkeypatch.setenv("GENPRUNE_LEAKED", "1")
    ctx = _ctx(environ={"PATH": "/bin", "HOME": "/home/alice", "GENPRUNE_SUDO_ASKPASS": "/bin/ask"})

    Command("nix", ("store", "gc")).with_required_env(ctx.environ).run(ctx)

    assert "GENPRUNE_LEAKED" not in seen[0]
    assert seen[0]["SUDO_ASKPASS"] == "/bin/ask"
    assert seen[0]["HOME"] == "/home/alice"
