from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Protocol

from genprune.models import CleanOptions, ExecutionReport, Plan
from genprune.planner import removal_set

log = logging.getLogger(__name__)


class Collector(Protocol):
    def collect_garbage(self, max_size: Optional[str] = None) -> None: ...

    def optimise(self) -> None: ...


def execute_plan(plan: Plan, options: CleanOptions, collector: Collector) -> ExecutionReport:
    report = ExecutionReport()

    if options.dry:
        log.debug("Dry run, not removing %d path(s)", len(removal_set(plan)))
    else:
        for path in removal_set(plan):
            error = remove_path_nofail(path)
            if error is None:
                report.removed.append(path)
            else:
                report.failed.append((path, error))
        if report.failed:
            log.warning("%d path(s) could not be removed", len(report.failed))

    # Collector failures are fatal, unlike the removals above.
    if not options.no_gc:
        collector.collect_garbage(options.max_size)
        report.collected = True
    if options.optimise:
        collector.optimise()
        report.optimised = True
    return report


def remove_path_nofail(path: Path) -> Optional[str]:
    log.info("Removing %s", path)
    try:
        os.unlink(path)
    except OSError as exc:
        log.warning("Failed to remove %s: %s", path, exc)
        return str(exc)
    return None
