from __future__ import annotations

import json
import logging
from typing import Callable, Optional, TextIO

from genprune.context import Context
from genprune.executor import Collector, execute_plan
from genprune.gcroots import GcRootPatterns, discover_gcroots, tag_gcroots
from genprune.generations import scan_generations
from genprune.models import (
    CleanOptions,
    ExecutionReport,
    GcRootsTagged,
    Plan,
    ProfilesTagged,
    ScanError,
    Scope,
)
from genprune.planner import build_plan, confirm_plan, plan_to_dict, render_plan
from genprune.profiles import UserSource, locate_profiles
from genprune.retention import apply_retention

log = logging.getLogger(__name__)


def collect_plan(
    scope: Scope,
    options: CleanOptions,
    ctx: Context,
    *,
    patterns: GcRootPatterns | None = None,
    users: UserSource | None = None,
    elevate: Callable[[], None] | None = None,
) -> Plan:
    patterns = patterns or GcRootPatterns.default()
    profiles = locate_profiles(scope, ctx, users=users, elevate=elevate)

    profiles_tagged: ProfilesTagged = {}
    for profile in profiles:
        try:
            generations = scan_generations(profile)
        except ScanError:
            if scope.kind == "profile":
                raise
            log.warning("Could not list generations of %s, skipping", profile, exc_info=True)
            generations = {}
        apply_retention(generations, options.keep, options.keep_since, ctx.now)
        profiles_tagged[profile] = generations

    gcroots_tagged: GcRootsTagged = {}
    if scope.kind != "profile" and not options.no_gcroots:
        roots = discover_gcroots(ctx.gcroots_auto_dir, patterns)
        gcroots_tagged = tag_gcroots(roots, options.keep_since, ctx.now)

    return build_plan(profiles_tagged, gcroots_tagged, patterns, options, ctx.now)


def run_clean(
    scope: Scope,
    options: CleanOptions,
    ctx: Context,
    collector: Collector,
    *,
    patterns: GcRootPatterns | None = None,
    users: UserSource | None = None,
    elevate: Callable[[], None] | None = None,
    input_fn: Callable[[str], str] = input,
    output: Optional[TextIO] = None,
    as_json: bool = False,
) -> ExecutionReport:
    plan = collect_plan(
        scope, options, ctx, patterns=patterns, users=users, elevate=elevate
    )

    if as_json:
        print(json.dumps(plan_to_dict(plan), indent=2, sort_keys=True), file=output)
    else:
        print(render_plan(plan), file=output)

    confirm_plan(options.ask, input_fn)
    return execute_plan(plan, options, collector)

