"""Work function adapters.

The gate calls `work(targets)` with the unit's declared target identifiers and assumes
every target was created or updated on return. Nothing here verifies that; the next
evaluation catches targets that are still missing.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from unitkit.errors import WorkFunctionFailure
from unitkit.stamps import Clock, resolve_path, touch


class CallableWork:
    """Wrap a plain Python callable; its exceptions propagate unchanged."""

    def __init__(self, fn: Callable[[tuple[str, ...]], Any], *, name: str | None = None) -> None:
        if not callable(fn):
            raise TypeError(f"CallableWork fn must be callable (type={type(fn).__name__})")
        self.fn = fn
        self.name = name or _callable_source(fn)

    def __call__(self, targets: tuple[str, ...]) -> None:
        self.fn(tuple(targets))

    def __repr__(self) -> str:
        return f"CallableWork({self.name})"


class CommandWork:
    def __init__(
        self,
        command: str | Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        shell: bool = False,
        unit_name: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if isinstance(command, str):
            if not command.strip():
                raise ValueError("CommandWork command cannot be empty")
            if not shell:
                raise ValueError("CommandWork string commands require shell=True; pass a list otherwise")
            self.command: str | tuple[str, ...] = command
        else:
            parts = tuple(str(part) for part in command)
            if not parts or not parts[0].strip():
                raise ValueError("CommandWork command cannot be empty")
            self.command = parts
        self.cwd = cwd
        self.env = dict(env) if env is not None else None
        self.shell = bool(shell)
        self.unit_name = unit_name
        self.logger = logger or logging.getLogger(__name__)

    def __call__(self, targets: tuple[str, ...]) -> None:
        env = None
        if self.env is not None:
            env = dict(os.environ)
            env.update(self.env)
        self.logger.debug("Executing work command for %s: %s", self.unit_name or "<unit>", self.command)
        command = self.command if isinstance(self.command, str) else list(self.command)
        completed = subprocess.run(command, cwd=self.cwd, env=env, shell=self.shell, check=False)
        if completed.returncode != 0:
            raise WorkFunctionFailure(self.command, completed.returncode, unit_name=self.unit_name)

    def __repr__(self) -> str:
        return f"CommandWork({self.command!r})"


class TouchWork:
    """Create or update every target, stamped with the clock when one is given."""

    def __init__(self, *, base_dir: str | None = None, clock: Clock | None = None) -> None:
        self.base_dir = base_dir
        self.clock = clock

    def __call__(self, targets: tuple[str, ...]) -> None:
        at_ns = self.clock.now_ns() if self.clock is not None else None
        for target in targets:
            touch(resolve_path(target, self.base_dir), at_ns)

    def __repr__(self) -> str:
        return "TouchWork()"


def _callable_source(fn: Any) -> str:
    module = getattr(fn, "__module__", None) or "<unknown_module>"
    qualname = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or "<callable>"
    return f"{module}.{qualname}"
