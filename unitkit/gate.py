"""Execution gate: the single entry point every consumer of a unit goes through.

Within one build generation the gate evaluates the unit once and runs the work function
at most once. Concurrent callers elect a leader. The leader holds the store lock while it
scans for missing targets, evaluates staleness and (when stale) runs the work and writes
the run marker. Followers block until the leader settles, then share its outcome or
re-raise its exception.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from unitkit.errors import UnknownTargetError
from unitkit.oracle import UnitState, Verdict, evaluate, load_state, scan_missing
from unitkit.sentinels import SentinelStore
from unitkit.stamps import Clock, stat_stamps
from unitkit.unit import UnitSpec


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class GateContext(Protocol):
    logger: logging.Logger
    clock: Clock
    build_id: str
    generation: int


@dataclass(frozen=True)
class GateOutcome:
    unit_name: str
    build_id: str
    generation: int
    ran: bool
    verdict: Verdict
    missing: tuple[str, ...]
    started_at: str
    finished_at: str
    duration_ms: int
    run_marker_ns: int | None = None

    def as_record(self) -> dict[str, Any]:
        return {
            "unit": self.unit_name,
            "build_id": self.build_id,
            "generation": self.generation,
            "ran": self.ran,
            "reason": self.verdict.reason,
            "trigger": self.verdict.trigger,
            "missing": list(self.missing),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "run_marker_ns": self.run_marker_ns,
        }


class GateRecorder(Protocol):
    def on_evaluate(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict, state: UnitState) -> None:
        ...

    def on_run_start(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict) -> None:
        ...

    def on_run_end(self, ctx: GateContext, unit: UnitSpec, outcome: GateOutcome) -> None:
        ...

    def on_run_error(self, ctx: GateContext, unit: UnitSpec, exc: Exception) -> None:
        ...


class DefaultGateRecorder:
    def on_evaluate(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict, state: UnitState) -> None:
        tokens = [f"generation={ctx.generation}", f"reason={verdict.reason}"]
        if state.missing:
            tokens.append(f"missing={','.join(state.missing)}")
        if verdict.trigger and verdict.reason == "input_newer":
            tokens.append(f"input={verdict.trigger}")
        ctx.logger.debug("Evaluated unit %s (%s)", unit.name, ", ".join(tokens))
        if not verdict.stale:
            ctx.logger.info("Unit %s is up to date", unit.name)

    def on_run_start(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict) -> None:
        ctx.logger.info(
            "Running unit %s (%s; targets=%d)", unit.name, verdict.describe(), len(unit.targets)
        )

    def on_run_end(self, ctx: GateContext, unit: UnitSpec, outcome: GateOutcome) -> None:
        ctx.logger.info("Completed unit %s in %d ms", unit.name, outcome.duration_ms)

    def on_run_error(self, ctx: GateContext, unit: UnitSpec, exc: Exception) -> None:
        ctx.logger.error("Unit %s failed: %s", unit.name, exc)


class NullGateRecorder:
    def on_evaluate(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict, state: UnitState) -> None:
        return

    def on_run_start(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict) -> None:
        return

    def on_run_end(self, ctx: GateContext, unit: UnitSpec, outcome: GateOutcome) -> None:
        return

    def on_run_error(self, ctx: GateContext, unit: UnitSpec, exc: Exception) -> None:
        return


class CompositeGateRecorder:
    def __init__(self, *recorders: GateRecorder) -> None:
        for recorder in recorders:
            validate_recorder(recorder)
        self._recorders = tuple(recorders)

    def on_evaluate(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict, state: UnitState) -> None:
        for recorder in self._recorders:
            recorder.on_evaluate(ctx, unit, verdict, state)

    def on_run_start(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict) -> None:
        for recorder in self._recorders:
            recorder.on_run_start(ctx, unit, verdict)

    def on_run_end(self, ctx: GateContext, unit: UnitSpec, outcome: GateOutcome) -> None:
        for recorder in self._recorders:
            recorder.on_run_end(ctx, unit, outcome)

    def on_run_error(self, ctx: GateContext, unit: UnitSpec, exc: Exception) -> None:
        for recorder in self._recorders:
            recorder.on_run_error(ctx, unit, exc)


def validate_recorder(recorder: Any) -> None:
    required = ("on_evaluate", "on_run_start", "on_run_end", "on_run_error")
    for name in required:
        method = getattr(recorder, name, None)
        if method is None or not callable(method):
            raise TypeError(f"Gate recorder missing required method: {name}")


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.outcome: GateOutcome | None = None
        self.error: Exception | None = None

    def result(self) -> GateOutcome:
        self.done.wait()
        if self.error is not None:
            raise self.error
        if self.outcome is None:
            raise RuntimeError("Gate flight ended without an outcome")
        return self.outcome


class ExecutionGate:
    """Single-flight gate for one unit within one build generation."""

    def __init__(
        self,
        unit: UnitSpec,
        store: SentinelStore,
        ctx: GateContext,
        *,
        recorder: GateRecorder | None = None,
    ) -> None:
        if not isinstance(unit, UnitSpec):
            raise TypeError(f"ExecutionGate requires a UnitSpec (type={type(unit).__name__})")
        self.unit = unit
        self.store = store
        self.ctx = ctx
        self.generation = ctx.generation
        self._recorder = recorder or DefaultGateRecorder()
        validate_recorder(self._recorder)
        self._mutex = threading.Lock()
        self._flight: _Flight | None = None
        self.invocations = 0

    @property
    def settled(self) -> bool:
        flight = self._flight
        return flight is not None and flight.done.is_set()

    def ensure_target(self, target_id: str) -> GateOutcome:
        if not isinstance(target_id, str) or not self.unit.declares(target_id):
            raise UnknownTargetError(self.unit.name, str(target_id), self.unit.targets)
        return self.ensure_run()

    def ensure_run(self) -> GateOutcome:
        with self._mutex:
            flight = self._flight
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flight = flight

        if not leader:
            return flight.result()

        try:
            flight.outcome = self._settle()
        except Exception as exc:
            flight.error = exc
            raise
        finally:
            flight.done.set()
        return flight.outcome

    def _settle(self) -> GateOutcome:
        unit = self.unit
        ctx = self.ctx
        started_at = utc_now_iso8601()
        start = time.monotonic()

        with self.store.lock():
            targets = stat_stamps(unit.targets, base_dir=unit.base_dir)
            inputs = stat_stamps(unit.inputs, base_dir=unit.base_dir)

            scan_missing(targets, self.store, ctx.clock)
            state = load_state(targets, self.store)
            verdict = evaluate(
                targets,
                inputs,
                self.store.read("run"),
                self.store.read("force"),
                unit_name=unit.name,
            )
            self._recorder.on_evaluate(ctx, unit, verdict, state)

            if not verdict.stale:
                return GateOutcome(
                    unit_name=unit.name,
                    build_id=ctx.build_id,
                    generation=self.generation,
                    ran=False,
                    verdict=verdict,
                    missing=state.missing,
                    started_at=started_at,
                    finished_at=utc_now_iso8601(),
                    duration_ms=int((time.monotonic() - start) * 1000),
                    run_marker_ns=state.last_success_ns,
                )

            self._recorder.on_run_start(ctx, unit, verdict)
            self.invocations += 1
            try:
                unit.work(unit.targets)
            except Exception as exc:
                try:
                    self._recorder.on_run_error(ctx, unit, exc)
                except Exception:
                    ctx.logger.exception("Gate recorder failed during error handling for %s", unit.name)
                self._attach_unit_error(exc)
                raise

            # The marker must not fall behind anything it is compared against.
            floor = [ctx.clock.now_ns()]
            floor.extend(stamp.mtime_ns for stamp in inputs if stamp.mtime_ns is not None)
            if state.force_ns is not None:
                floor.append(state.force_ns)
            marker = self.store.write("run", max(floor))

        outcome = GateOutcome(
            unit_name=unit.name,
            build_id=ctx.build_id,
            generation=self.generation,
            ran=True,
            verdict=verdict,
            missing=state.missing,
            started_at=started_at,
            finished_at=utc_now_iso8601(),
            duration_ms=int((time.monotonic() - start) * 1000),
            run_marker_ns=marker.timestamp_ns,
        )
        self._recorder.on_run_end(ctx, unit, outcome)
        return outcome

    def _attach_unit_error(self, exc: Exception) -> None:
        for name, value in (
            ("unit_name", self.unit.name),
            ("build_id", self.ctx.build_id),
            ("build_generation", self.generation),
        ):
            if hasattr(exc, name) and getattr(exc, name) is not None:
                continue
            try:
                setattr(exc, name, value)
            except Exception:
                pass
