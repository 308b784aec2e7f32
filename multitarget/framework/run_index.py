"""JSONL run index: one entry per physical work invocation."""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Mapping
from typing import Any

import pandas as pd

from unitkit import GateOutcome, UnitSpec, UnitState, Verdict, utc_now_iso8601
from unitkit.gate import GateContext

RUN_INDEX_SCHEMA_VERSION = 1
HISTORY_COLUMNS = (
    "finished_at",
    "unit",
    "status",
    "reason",
    "duration_ms",
    "build_id",
    "generation",
    "error",
)


def append_run_index_entry(path: str, entry: Mapping[str, Any]) -> None:
    """
    Append a single JSON object to a JSONL run index file.

    The caller is responsible for building a schema_versioned entry object.
    """

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(dict(entry), ensure_ascii=False))
        handle.write("\n")


def read_run_history(path: str, *, unit: str | None = None, limit: int | None = None) -> pd.DataFrame:
    if not os.path.exists(path) or os.path.getsize(path) == 0:
        return pd.DataFrame(columns=list(HISTORY_COLUMNS))

    df = pd.read_json(path, lines=True, dtype=False, convert_dates=False)
    for column in HISTORY_COLUMNS:
        if column not in df.columns:
            df[column] = None
    if unit is not None:
        df = df[df["unit"] == unit]
    df = df[list(HISTORY_COLUMNS)]
    if limit is not None:
        df = df.tail(int(limit))
    return df.reset_index(drop=True)


class RunIndexRecorder:
    """Gate recorder that appends an entry for every run that started."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._started: dict[str, tuple[str, Verdict]] = {}

    def on_evaluate(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict, state: UnitState) -> None:
        return

    def on_run_start(self, ctx: GateContext, unit: UnitSpec, verdict: Verdict) -> None:
        with self._lock:
            self._started[unit.name] = (utc_now_iso8601(), verdict)

    def on_run_end(self, ctx: GateContext, unit: UnitSpec, outcome: GateOutcome) -> None:
        entry = {"schema_version": RUN_INDEX_SCHEMA_VERSION, "status": "success", "error": None}
        entry.update(outcome.as_record())
        with self._lock:
            self._started.pop(unit.name, None)
            append_run_index_entry(self.path, entry)

    def on_run_error(self, ctx: GateContext, unit: UnitSpec, exc: Exception) -> None:
        with self._lock:
            started_at, verdict = self._started.pop(unit.name, (None, None))
            append_run_index_entry(
                self.path,
                {
                    "schema_version": RUN_INDEX_SCHEMA_VERSION,
                    "status": "failed",
                    "error": f"{type(exc).__name__}: {exc}",
                    "unit": unit.name,
                    "build_id": ctx.build_id,
                    "generation": ctx.generation,
                    "ran": True,
                    "reason": verdict.reason if verdict is not None else None,
                    "started_at": started_at,
                    "finished_at": utc_now_iso8601(),
                },
            )
