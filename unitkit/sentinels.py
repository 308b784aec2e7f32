"""Persisted sentinel records: the run marker and the force trigger.

Only the timestamp of a sentinel carries meaning. The file store keeps both records as
empty files whose mtime is set explicitly, one pair per unit:

    <state_dir>/<unit>.timestamp-run
    <state_dir>/<unit>.timestamp-force-run

Cross-process exclusion uses an OS advisory lock on `<state_dir>/<unit>.lock`. The OS
drops the lock when the holding process exits, so a killed run never blocks later builds.
"""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

from unitkit.stamps import touch

if os.name == "nt":
    import msvcrt
else:
    import fcntl

SentinelKind = Literal["run", "force"]
SENTINEL_KINDS: tuple[str, ...] = ("run", "force")

_SUFFIXES: dict[str, str] = {
    "run": ".timestamp-run",
    "force": ".timestamp-force-run",
}


def _check_kind(kind: str) -> str:
    if kind not in SENTINEL_KINDS:
        raise ValueError(f"Invalid sentinel kind: {kind!r} (expected one of: {', '.join(SENTINEL_KINDS)})")
    return kind


def _check_timeout(value: float | None) -> float | None:
    if value is None:
        return None
    if value <= 0:
        raise ValueError("lock_timeout_seconds must be > 0 or None")
    return float(value)


@dataclass(frozen=True)
class Sentinel:
    kind: SentinelKind
    timestamp_ns: int


class SentinelStore(Protocol):
    unit_name: str

    def read(self, kind: SentinelKind) -> Sentinel | None:
        ...

    def write(self, kind: SentinelKind, at_ns: int) -> Sentinel:
        ...

    def reset(self) -> None:
        ...

    def lock(self) -> AbstractContextManager[None]:
        ...


def _try_flock(fd: int) -> bool:
    try:
        if os.name == "nt":
            os.lseek(fd, 0, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _release_flock(fd: int) -> None:
    if os.name == "nt":
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


class FileSentinelStore:
    """Sentinels as mtime-only files under `state_dir`.

    `lock_timeout_seconds=None` (the default) waits for as long as the current holder
    runs, so a second build always observes the first build's completion.
    """

    def __init__(
        self,
        state_dir: str,
        unit_name: str,
        *,
        lock_timeout_seconds: float | None = None,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        if not isinstance(state_dir, str) or not state_dir.strip():
            raise ValueError("state_dir must be a non-empty string")
        if not isinstance(unit_name, str) or not unit_name.strip():
            raise ValueError("unit_name must be a non-empty string")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self.state_dir = state_dir
        self.unit_name = unit_name.strip()
        self.lock_timeout_seconds = _check_timeout(lock_timeout_seconds)
        self.poll_interval_seconds = float(poll_interval_seconds)

    def path(self, kind: SentinelKind) -> str:
        return os.path.join(self.state_dir, self.unit_name + _SUFFIXES[_check_kind(kind)])

    @property
    def lock_path(self) -> str:
        return os.path.join(self.state_dir, f"{self.unit_name}.lock")

    def read(self, kind: SentinelKind) -> Sentinel | None:
        try:
            mtime_ns = os.stat(self.path(kind)).st_mtime_ns
        except FileNotFoundError:
            return None
        return Sentinel(kind=kind, timestamp_ns=mtime_ns)

    def write(self, kind: SentinelKind, at_ns: int) -> Sentinel:
        touch(self.path(kind), at_ns)
        return Sentinel(kind=kind, timestamp_ns=int(at_ns))

    def reset(self) -> None:
        """Remove both sentinels, and the lock file unless a live process holds it."""

        for kind in SENTINEL_KINDS:
            try:
                os.remove(self.path(kind))  # type: ignore[arg-type]
            except FileNotFoundError:
                pass

        if not os.path.exists(self.lock_path):
            return
        fd = self._acquire_once()
        if fd is None:
            return
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            pass
        except PermissionError:
            # Windows cannot unlink an open file; the leftover file holds no lock.
            pass
        finally:
            self._release(fd)

    def _acquire_once(self) -> int | None:
        """One non-blocking attempt. Returns the locked descriptor or None."""

        lock_path = self.lock_path
        fd = os.open(lock_path, os.O_CREAT | os.O_RDWR)
        if _try_flock(fd):
            # The file may have been unlinked by `reset()` between open and lock.
            try:
                current = os.path.samestat(os.fstat(fd), os.stat(lock_path))
            except FileNotFoundError:
                current = False
            if current:
                return fd
            _release_flock(fd)
        os.close(fd)
        return None

    def _release(self, fd: int) -> None:
        try:
            _release_flock(fd)
        finally:
            os.close(fd)

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Exclusive cross-process lock for this unit's critical section."""

        start = time.monotonic()
        os.makedirs(self.state_dir, exist_ok=True)

        while True:
            fd = self._acquire_once()
            if fd is not None:
                break
            timeout = self.lock_timeout_seconds
            if timeout is not None and (time.monotonic() - start) >= timeout:
                raise TimeoutError(f"Timed out waiting for unit lock: {self.lock_path}")
            time.sleep(self.poll_interval_seconds)

        try:
            created_at = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, f"pid={os.getpid()}\ncreated_at={created_at}\n".encode("utf-8"))
            yield
        finally:
            self._release(fd)


class MemorySentinelStore:
    """In-process store; sentinels live only as long as the object."""

    def __init__(self, unit_name: str = "unit", *, lock_timeout_seconds: float | None = None) -> None:
        self.unit_name = unit_name
        self.lock_timeout_seconds = _check_timeout(lock_timeout_seconds)
        self._records: dict[str, Sentinel] = {}
        self._lock = threading.Lock()

    def read(self, kind: SentinelKind) -> Sentinel | None:
        return self._records.get(_check_kind(kind))

    def write(self, kind: SentinelKind, at_ns: int) -> Sentinel:
        record = Sentinel(kind=kind, timestamp_ns=int(at_ns))
        self._records[_check_kind(kind)] = record
        return record

    def reset(self) -> None:
        self._records.clear()

    @contextmanager
    def lock(self) -> Iterator[None]:
        timeout = -1 if self.lock_timeout_seconds is None else self.lock_timeout_seconds
        if not self._lock.acquire(timeout=timeout):
            raise TimeoutError(f"Timed out waiting for unit lock: {self.unit_name}")
        try:
            yield
        finally:
            self._lock.release()
