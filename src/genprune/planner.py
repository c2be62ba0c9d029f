from __future__ import annotations

from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable

from genprune.gcroots import GcRootPatterns
from genprune.models import (
    CleanOptions,
    GcRoot,
    GcRootsTagged,
    Plan,
    PlanRejected,
    ProfilesTagged,
)
from genprune.retention import format_duration


def build_plan(
    profiles: ProfilesTagged,
    gcroots: GcRootsTagged,
    patterns: GcRootPatterns,
    options: CleanOptions,
    now: datetime,
) -> Plan:
    # The plan holds read-only copies of the tag maps.
    return Plan(
        profiles=MappingProxyType(
            {profile: MappingProxyType(dict(tagged)) for profile, tagged in profiles.items()}
        ),
        gcroots=MappingProxyType(dict(gcroots)),
        patterns=patterns.patterns,
        keep=options.keep,
        keep_since=options.keep_since,
        generated_at=now.isoformat(),
    )


def removal_set(plan: Plan) -> list[Path]:
    paths = [root.destination for root, remove in _sorted_gcroots(plan) if remove]
    for profile in sorted(plan.profiles):
        for generation, remove in reversed(plan.profiles[profile].items()):
            if remove:
                paths.append(generation.path)
    return paths


def render_plan(plan: Plan) -> str:
    lines = [
        "",
        "Welcome to genprune clean",
        f"Keeping {plan.keep} generation(s)",
        f"Keeping paths newer than {format_duration(plan.keep_since)}",
        "",
        "legend:",
        "RE: path regular expression to be matched",
        "OK: path to be kept",
        "DEL: path to be removed",
        "",
    ]
    if plan.gcroots:
        lines.append("gcroots (matching the following regex patterns)")
        for pattern in plan.patterns:
            lines.append(f"- RE  {pattern.pattern}")
        for root, remove in _sorted_gcroots(plan):
            lines.append(f"- {_disposition(remove)} {root.destination}")
        lines.append("")
    for profile in sorted(plan.profiles):
        lines.append(str(profile))
        for generation, remove in reversed(plan.profiles[profile].items()):
            lines.append(f"- {_disposition(remove)} {generation.path}")
        lines.append("")
    return "\n".join(lines)


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    return {
        "generated_at": plan.generated_at,
        "keep": plan.keep,
        "keep_since_seconds": int(plan.keep_since.total_seconds()),
        "gcroot_patterns": [pattern.pattern for pattern in plan.patterns],
        "gcroots": [
            {
                "path": str(root.destination),
                "source": str(root.source) if root.source else None,
                "last_modified": _iso(root.last_modified),
                "remove": remove,
            }
            for root, remove in _sorted_gcroots(plan)
        ],
        "profiles": {
            str(profile): [
                {
                    "number": generation.number,
                    "path": str(generation.path),
                    "last_modified": _iso(generation.last_modified),
                    "remove": remove,
                }
                for generation, remove in reversed(plan.profiles[profile].items())
            ]
            for profile in sorted(plan.profiles)
        },
        "summary": {
            "profiles": len(plan.profiles),
            "to_remove": len(removal_set(plan)),
        },
    }


def ask_yes_no(question: str, input_fn: Callable[[str], str] = input) -> bool:
    try:
        raw = input_fn(f"{question} [y/N]: ").strip().lower()
    except EOFError:
        return False
    return raw in {"y", "yes"}


def confirm_plan(ask: bool, input_fn: Callable[[str], str] = input) -> None:
    if not ask:
        return
    if not ask_yes_no("Confirm the cleanup plan?", input_fn):
        raise PlanRejected("User rejected the cleanup plan")


def _sorted_gcroots(plan: Plan) -> list[tuple[GcRoot, bool]]:
    return sorted(plan.gcroots.items(), key=lambda item: str(item[0].destination))


def _disposition(remove: bool) -> str:
    return "DEL" if remove else "OK "


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
