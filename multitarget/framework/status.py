"""Read-only status reporting; never writes sentinels."""

from __future__ import annotations

from datetime import datetime, timezone

import pandas as pd

from unitkit import MissingInputError, SentinelStore, UnitSpec, evaluate, load_state, stat_stamps

STATUS_COLUMNS = ("kind", "id", "exists", "modified_at", "mtime_ns")


def _format_ns(value: int | None) -> str | None:
    if value is None:
        return None
    moment = datetime.fromtimestamp(value / 1_000_000_000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def unit_status_frame(unit: UnitSpec, store: SentinelStore) -> pd.DataFrame:
    rows: list[dict[str, object]] = []
    for kind, stamps in (
        ("target", stat_stamps(unit.targets, base_dir=unit.base_dir)),
        ("input", stat_stamps(unit.inputs, base_dir=unit.base_dir)),
    ):
        for stamp in stamps:
            rows.append(
                {
                    "kind": kind,
                    "id": stamp.id,
                    "exists": stamp.exists,
                    "modified_at": _format_ns(stamp.mtime_ns),
                    "mtime_ns": stamp.mtime_ns,
                }
            )
    for sentinel_kind in ("run", "force"):
        record = store.read(sentinel_kind)  # type: ignore[arg-type]
        timestamp = record.timestamp_ns if record else None
        rows.append(
            {
                "kind": "sentinel",
                "id": sentinel_kind,
                "exists": record is not None,
                "modified_at": _format_ns(timestamp),
                "mtime_ns": timestamp,
            }
        )
    return pd.DataFrame(rows, columns=list(STATUS_COLUMNS))


def unit_verdict_summary(unit: UnitSpec, store: SentinelStore) -> str:
    targets = stat_stamps(unit.targets, base_dir=unit.base_dir)
    inputs = stat_stamps(unit.inputs, base_dir=unit.base_dir)
    state = load_state(targets, store)
    try:
        verdict = evaluate(targets, inputs, store.read("run"), store.read("force"), unit_name=unit.name)
    except MissingInputError as exc:
        return f"blocked: {exc}"
    if state.missing:
        return f"stale: missing target(s): {', '.join(state.missing)}"
    if verdict.stale:
        return f"stale: {verdict.describe()}"
    return "up to date"
