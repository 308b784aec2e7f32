from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime

from unitkit.gate import ExecutionGate, GateOutcome, GateRecorder
from unitkit.sentinels import MemorySentinelStore, SentinelStore
from unitkit.stamps import Clock, SystemClock
from unitkit.unit import UnitSpec

StoreFactory = Callable[[UnitSpec], SentinelStore]


def generate_build_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


class BuildContext:
    """Owns per-unit gates and sentinel stores for one build invocation.

    Gates are created lazily and shared by every consumer of a unit. `new_generation()`
    discards the gates (so the next request re-evaluates) but keeps the stores.
    """

    def __init__(
        self,
        *,
        store_factory: StoreFactory | None = None,
        clock: Clock | None = None,
        logger: logging.Logger | None = None,
        recorder: GateRecorder | None = None,
        build_id: str | None = None,
    ) -> None:
        self.store_factory: StoreFactory = store_factory or (lambda unit: MemorySentinelStore(unit.name))
        self.clock: Clock = clock or SystemClock()
        self.logger = logger or logging.getLogger(__name__)
        self.recorder = recorder
        self.build_id = build_id or generate_build_id()
        self.generation = 1
        self._lock = threading.Lock()
        self._units: dict[str, UnitSpec] = {}
        self._stores: dict[str, SentinelStore] = {}
        self._gates: dict[str, ExecutionGate] = {}

    def store(self, unit: UnitSpec) -> SentinelStore:
        with self._lock:
            self._register(unit)
            return self._store_locked(unit)

    def gate(self, unit: UnitSpec) -> ExecutionGate:
        with self._lock:
            self._register(unit)
            gate = self._gates.get(unit.name)
            if gate is None:
                gate = ExecutionGate(unit, self._store_locked(unit), self, recorder=self.recorder)
                self._gates[unit.name] = gate
            return gate

    def ensure_run(self, unit: UnitSpec) -> GateOutcome:
        return self.gate(unit).ensure_run()

    def ensure_target(self, unit: UnitSpec, target_id: str) -> GateOutcome:
        return self.gate(unit).ensure_target(target_id)

    def new_generation(self) -> int:
        with self._lock:
            self.generation += 1
            self._gates.clear()
            self.logger.debug("Build %s advanced to generation %d", self.build_id, self.generation)
            return self.generation

    def reset(self, unit: UnitSpec) -> None:
        """Drop the unit's sentinels; its next evaluation is a first run."""

        with self._lock:
            self._register(unit)
            self._store_locked(unit).reset()
            self._gates.pop(unit.name, None)

    def _register(self, unit: UnitSpec) -> None:
        known = self._units.get(unit.name)
        if known is None:
            self._units[unit.name] = unit
            return
        if known is not unit and known != unit:
            raise ValueError(f"Conflicting declarations for unit: {unit.name}")

    def _store_locked(self, unit: UnitSpec) -> SentinelStore:
        store = self._stores.get(unit.name)
        if store is None:
            store = self.store_factory(unit)
            self._stores[unit.name] = store
        return store
