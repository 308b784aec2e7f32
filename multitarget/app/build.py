"""`multitarget build`: fan consumers out over a thread pool, all through the unit gates."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Sequence

from multitarget.framework.config import BuildConfig, UnitConfig
from multitarget.framework.run_index import RunIndexRecorder
from multitarget.framework.units import build_units, file_store
from unitkit import (
    BuildContext,
    Clock,
    CompositeGateRecorder,
    DefaultGateRecorder,
    GateOutcome,
    GateRecorder,
    UnitSpec,
    stat_stamp,
    stat_stamps,
)
from unitkit.stamps import touch


@dataclass
class BuildReport:
    build_id: str
    outcomes: dict[str, GateOutcome] = field(default_factory=dict)
    aggregates: list[str] = field(default_factory=list)

    @property
    def ran(self) -> list[str]:
        return sorted(name for name, outcome in self.outcomes.items() if outcome.ran)


def resolve_requests(
    cfg: BuildConfig,
    *,
    unit_name: str | None,
    targets: Sequence[str] | None,
) -> list[tuple[UnitConfig, str]]:
    """Map the requested targets onto (unit, target) pairs; no targets means all of them."""

    selected = cfg.select(unit_name)
    if not targets:
        return [(unit_cfg, target) for unit_cfg in selected for target in unit_cfg.targets]

    requests: list[tuple[UnitConfig, str]] = []
    for raw in targets:
        target = raw.strip()
        owners = [unit_cfg for unit_cfg in selected if target in unit_cfg.targets]
        if not owners:
            scope = f"unit {unit_name}" if unit_name else "any unit"
            raise ValueError(f"Target {target} is not declared by {scope}")
        if len(owners) > 1:
            raise ValueError(
                f"Target {target} is declared by several units: {', '.join(u.name for u in owners)}"
            )
        requests.append((owners[0], target))
    return requests


def update_aggregate(unit: UnitSpec, aggregate: str, *, logger: logging.Logger) -> bool:
    """Touch `aggregate` when it is missing or older than any target or input."""

    current = stat_stamp(aggregate, base_dir=unit.base_dir)
    upstream = stat_stamps((*unit.targets, *unit.inputs), base_dir=unit.base_dir)
    newest = max((stamp.mtime_ns for stamp in upstream if stamp.mtime_ns is not None), default=None)
    if current.exists and (newest is None or current.mtime_ns >= newest):  # type: ignore[operator]
        return False
    touch(unit.target_path(aggregate))
    logger.info("Updated aggregate %s for unit %s", aggregate, unit.name)
    return True


def run_build(
    cfg: BuildConfig,
    *,
    logger: logging.Logger,
    unit_name: str | None = None,
    targets: Sequence[str] | None = None,
    jobs: int | None = None,
    build_id: str | None = None,
    clock: Clock | None = None,
    recorder: GateRecorder | None = None,
) -> BuildReport:
    requests = resolve_requests(cfg, unit_name=unit_name, targets=targets)
    units = build_units(cfg, logger=logger)
    worker_count = int(jobs or cfg.jobs)
    if worker_count < 1:
        raise ValueError("jobs must be >= 1")

    ctx = BuildContext(
        store_factory=lambda unit: file_store(cfg, unit),
        clock=clock,
        logger=logger,
        recorder=recorder
        or CompositeGateRecorder(DefaultGateRecorder(), RunIndexRecorder(cfg.run_index_path)),
        build_id=build_id,
    )
    report = BuildReport(build_id=ctx.build_id)
    logger.info(
        "Build %s: %d request(s) across %d unit(s), jobs=%d",
        ctx.build_id,
        len(requests),
        len({unit_cfg.name for unit_cfg, _ in requests}),
        worker_count,
    )

    first_error: Exception | None = None
    with ThreadPoolExecutor(max_workers=worker_count) as executor:
        futures = [
            (unit_cfg, executor.submit(ctx.ensure_target, units[unit_cfg.name], target))
            for unit_cfg, target in requests
        ]
        for unit_cfg, future in futures:
            try:
                report.outcomes[unit_cfg.name] = future.result()
            except Exception as exc:
                if first_error is None:
                    first_error = exc

    if first_error is not None:
        raise first_error

    if not targets:
        for unit_cfg in {unit_cfg.name: unit_cfg for unit_cfg, _ in requests}.values():
            if unit_cfg.aggregate and update_aggregate(
                units[unit_cfg.name], unit_cfg.aggregate, logger=logger
            ):
                report.aggregates.append(unit_cfg.aggregate)

    logger.info(
        "Build %s finished (ran: %s)", ctx.build_id, ", ".join(report.ran) or "<none>"
    )
    return report
