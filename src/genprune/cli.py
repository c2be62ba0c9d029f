from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path

from genprune import __version__
from genprune.commands import StoreCollector, self_elevate
from genprune.context import Context, load_context
from genprune.gcroots import GcRootPatterns
from genprune.generations import describe_generations
from genprune.log import setup_logging
from genprune.models import CleanError, CleanOptions, ElevationStrategy, PlanRejected, Scope
from genprune.retention import parse_duration

log = logging.getLogger(__name__)


def main(argv: Iterable[str] | None = None) -> int:
    raw_args = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()
    args = parser.parse_args(raw_args)

    setup_logging(args.verbose - args.quiet, os.environ)
    log.debug("Arguments: %s", args)

    if args.command == "list":
        return _list_generations(args)

    try:
        keep_since = parse_duration(args.keep_since)
    except ValueError as exc:
        raise SystemExit(f"Invalid --keep-since: {exc}") from exc
    if args.keep < 0:
        raise SystemExit("--keep must not be negative")

    options = CleanOptions(
        keep=args.keep,
        keep_since=keep_since,
        dry=args.dry,
        ask=args.ask,
        no_gc=args.no_gc,
        no_gcroots=args.no_gcroots,
        optimise=args.optimise,
        max_size=args.max,
    )
    ctx = load_context()
    if args.elevate_with:
        ctx = _with_elevation(ctx, ElevationStrategy.force(args.elevate_with))

    if args.mode == "all":
        scope = Scope.all()
    elif args.mode == "user":
        scope = Scope.user()
    else:
        scope = Scope.for_profile(Path(args.profile).expanduser().absolute())

    return run(scope, options, ctx, raw_args, args)


def run(
    scope: Scope,
    options: CleanOptions,
    ctx: Context,
    raw_args: list[str],
    args: argparse.Namespace,
) -> int:
    from genprune.clean import run_clean

    try:
        patterns = (
            GcRootPatterns.from_strings(args.gcroot_pattern)
            if args.gcroot_pattern
            else GcRootPatterns.default()
        )
    except ValueError as exc:
        raise SystemExit(f"error: {exc}") from exc

    try:
        report = run_clean(
            scope,
            options,
            ctx,
            StoreCollector(ctx, dry=options.dry),
            patterns=patterns,
            elevate=lambda: self_elevate(ctx, raw_args),
            as_json=args.json,
        )
    except PlanRejected as exc:
        raise SystemExit(str(exc)) from exc
    except (CleanError, PermissionError) as exc:
        raise SystemExit(f"error: {exc}") from exc

    if args.json:
        return 0
    if options.dry:
        print("Dry-run complete. No paths were removed.")
    elif report.failed:
        print(f"Removed {len(report.removed)} path(s), {len(report.failed)} failed (see warnings)")
    else:
        print(f"Removed {len(report.removed)} path(s)")
    return 0


def _list_generations(args: argparse.Namespace) -> int:
    if args.profile:
        profile = Path(args.profile).expanduser().absolute()
    else:
        profile = load_context().profiles_dir / "system"
    try:
        infos = describe_generations(profile)
    except CleanError as exc:
        raise SystemExit(f"error: {exc}") from exc
    if not infos:
        print(f"No generations found for {profile}")
        return 0
    print(f"{'Generation':<12}{'Date':<34}Target")
    for info in infos:
        number = f"{info.number} (current)" if info.current else str(info.number)
        print(f"{number:<12}{info.date:<34}{info.target}")
    return 0


def _with_elevation(ctx: Context, strategy: ElevationStrategy) -> Context:
    return replace(ctx, elevation=strategy)


def _add_clean_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-k",
        "--keep",
        type=int,
        default=1,
        help="At least keep this number of generations",
    )
    parser.add_argument(
        "-K",
        "--keep-since",
        default="0h",
        help="At least keep gcroots and generations in this time range since now (e.g. 3d, 1w 2d)",
    )
    parser.add_argument(
        "-n", "--dry", action="store_true", help="Only print actions, without performing them"
    )
    parser.add_argument("-a", "--ask", action="store_true", help="Ask for confirmation")
    parser.add_argument(
        "--no-gc", "--nogc", dest="no_gc", action="store_true", help="Don't run nix store gc"
    )
    parser.add_argument(
        "--no-gcroots",
        "--nogcroots",
        dest="no_gcroots",
        action="store_true",
        help="Don't clean gcroots",
    )
    parser.add_argument(
        "--optimise", action="store_true", help="Run nix-store --optimise after gc"
    )
    parser.add_argument("--max", default=None, help="Pass --max to nix store gc")
    parser.add_argument(
        "--gcroot-pattern",
        action="append",
        default=[],
        help="Regex for auto gcroots to consider (repeatable, replaces the defaults)",
    )
    parser.add_argument(
        "--elevate-with",
        default=None,
        help="Elevation program to use when root is needed (e.g. sudo, doas)",
    )
    parser.add_argument(
        "--json", action="store_true", help="Print the plan as JSON instead of text"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="genprune",
        description=(
            "Review and remove old Nix profile generations and auto gcroots, "
            "then collect garbage."
        ),
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Increase logging verbosity"
    )
    parser.add_argument(
        "-q", "--quiet", action="count", default=0, help="Only log warnings and errors"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", required=True)

    clean = commands.add_parser("clean", help="Enhanced nix cleanup")
    modes = clean.add_subparsers(dest="mode", required=True)
    _add_clean_args(modes.add_parser("all", help="Clean all profiles"))
    _add_clean_args(modes.add_parser("user", help="Clean the current user's profiles"))
    profile = modes.add_parser("profile", help="Clean a specific profile")
    _add_clean_args(profile)
    profile.add_argument("profile", help="Which profile to clean")

    listing = commands.add_parser("list", help="List generations of a profile")
    listing.add_argument(
        "profile",
        nargs="?",
        default=None,
        help="Profile to list (default: the system profile)",
    )
    return parser


if __name__ == "__main__":
    raise SystemExit(main())
