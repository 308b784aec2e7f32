"""Staleness decisions for a multi-output unit.

Staleness is judged against the run marker, never by comparing each target with each
input. Missing targets feed in through the force trigger (`scan_missing`).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from unitkit.errors import MissingInputError
from unitkit.sentinels import Sentinel, SentinelStore
from unitkit.stamps import Clock, Stamp

StalenessReason = Literal["never_run", "input_newer", "forced", "fresh"]

# ns, us, ms, then the 1s and 2s mtime granularity of coarse filesystems (FAT).
_FORCE_OFFSETS_NS = (1, 1_000, 1_000_000, 1_000_000_000, 2_000_000_000)


@dataclass(frozen=True)
class Verdict:
    stale: bool
    reason: StalenessReason
    trigger: str | None = None
    run_marker_ns: int | None = None

    def describe(self) -> str:
        if self.reason == "never_run":
            return "no run marker"
        if self.reason == "input_newer":
            return f"input newer than run marker: {self.trigger}"
        if self.reason == "forced":
            return "force trigger newer than run marker"
        return "up to date"


@dataclass(frozen=True)
class UnitState:
    """Single snapshot of the two sentinels plus the targets found missing."""

    last_success_ns: int | None
    force_ns: int | None
    missing: tuple[str, ...] = ()

    @property
    def outputs_complete(self) -> bool:
        return not self.missing


def evaluate(
    targets: Sequence[Stamp],
    inputs: Sequence[Stamp],
    run_marker: Sentinel | None,
    force_trigger: Sentinel | None,
    *,
    unit_name: str = "unit",
) -> Verdict:
    missing_inputs = [stamp.id for stamp in inputs if not stamp.exists]
    if missing_inputs:
        raise MissingInputError(unit_name, missing_inputs)

    if run_marker is None:
        return Verdict(stale=True, reason="never_run")

    marker_ns = run_marker.timestamp_ns
    for stamp in inputs:
        if stamp.mtime_ns is not None and stamp.mtime_ns > marker_ns:
            return Verdict(stale=True, reason="input_newer", trigger=stamp.id, run_marker_ns=marker_ns)

    if force_trigger is not None and force_trigger.timestamp_ns > marker_ns:
        return Verdict(stale=True, reason="forced", trigger=force_trigger.kind, run_marker_ns=marker_ns)

    return Verdict(stale=False, reason="fresh", run_marker_ns=marker_ns)


def is_stale(
    targets: Sequence[Stamp],
    inputs: Sequence[Stamp],
    run_marker: Sentinel | None,
    force_trigger: Sentinel | None,
) -> bool:
    return evaluate(targets, inputs, run_marker, force_trigger).stale


def scan_missing(targets: Sequence[Stamp], store: SentinelStore, clock: Clock) -> bool:
    """Refresh the force trigger when any declared target is missing.

    The trigger is rewritten even when it already exists, and always lands strictly
    after the current run marker so that it forces the next evaluation. The stored value
    is read back, and the offset grows until the store's timestamp resolution keeps it
    ahead of the marker.
    """

    if all(stamp.exists for stamp in targets):
        return False
    now_ns = clock.now_ns()
    run_marker = store.read("run")
    if run_marker is None:
        store.write("force", now_ns)
        return True

    marker_ns = run_marker.timestamp_ns
    for step_ns in _FORCE_OFFSETS_NS:
        store.write("force", max(now_ns, marker_ns + step_ns))
        stored = store.read("force")
        if stored is not None and stored.timestamp_ns > marker_ns:
            break
    return True


def load_state(targets: Sequence[Stamp], store: SentinelStore) -> UnitState:
    run_marker = store.read("run")
    force_trigger = store.read("force")
    return UnitState(
        last_success_ns=run_marker.timestamp_ns if run_marker else None,
        force_ns=force_trigger.timestamp_ns if force_trigger else None,
        missing=tuple(stamp.id for stamp in targets if not stamp.exists),
    )
