"""Timestamps for targets, inputs and sentinel records.

All timestamps are integer nanoseconds. A `Stamp` with `mtime_ns=None` describes
something that does not exist.
"""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class Stamp:
    id: str
    mtime_ns: int | None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise TypeError("Stamp.id must be a non-empty string")
        if self.mtime_ns is not None and (
            isinstance(self.mtime_ns, bool) or not isinstance(self.mtime_ns, int)
        ):
            raise TypeError(
                f"Stamp.mtime_ns must be an int or None (type={type(self.mtime_ns).__name__})"
            )

    @property
    def exists(self) -> bool:
        return self.mtime_ns is not None


class Clock(Protocol):
    def now_ns(self) -> int:
        ...


class SystemClock:
    def now_ns(self) -> int:
        return time.time_ns()


class ManualClock:
    """Logical clock for deterministic builds and tests."""

    def __init__(self, start_ns: int = 1_000_000_000, *, step_ns: int = 0) -> None:
        self._now = int(start_ns)
        self._step = int(step_ns)
        self._lock = threading.Lock()

    def now_ns(self) -> int:
        with self._lock:
            value = self._now
            self._now += self._step
            return value

    def advance(self, delta_ns: int = 1_000_000_000) -> int:
        if delta_ns < 0:
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now += int(delta_ns)
            return self._now


def resolve_path(identifier: str, base_dir: str | None) -> str:
    if base_dir is None or os.path.isabs(identifier):
        return identifier
    return os.path.join(base_dir, identifier)


def stat_stamp(identifier: str, *, base_dir: str | None = None) -> Stamp:
    try:
        mtime_ns = os.stat(resolve_path(identifier, base_dir)).st_mtime_ns
    except FileNotFoundError:
        mtime_ns = None
    return Stamp(id=identifier, mtime_ns=mtime_ns)


def stat_stamps(identifiers: Iterable[str], *, base_dir: str | None = None) -> tuple[Stamp, ...]:
    return tuple(stat_stamp(identifier, base_dir=base_dir) for identifier in identifiers)


def touch(path: str, at_ns: int | None = None) -> None:
    """Create *path* if needed and set its mtime (defaults to now)."""

    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    with open(path, "a", encoding="utf-8"):
        pass
    if at_ns is None:
        os.utime(path)
    else:
        os.utime(path, ns=(int(at_ns), int(at_ns)))
