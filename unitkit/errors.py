from __future__ import annotations

from collections.abc import Sequence


class WorkFunctionFailure(RuntimeError):
    """A work command exited non-zero. The run marker is left untouched."""

    def __init__(self, command: str | Sequence[str], returncode: int, *, unit_name: str | None = None):
        self.command = command
        self.returncode = int(returncode)
        self.unit_name = unit_name
        shown = command if isinstance(command, str) else " ".join(str(part) for part in command)
        label = f" (unit={unit_name})" if unit_name else ""
        super().__init__(f"Work command failed with exit code {self.returncode}: {shown}{label}")


class UnknownTargetError(KeyError):
    def __init__(self, unit_name: str, target_id: str, declared: Sequence[str]):
        self.unit_name = unit_name
        self.target_id = target_id
        self.declared = tuple(declared)
        available = ", ".join(self.declared) or "<none>"
        super().__init__(
            f"Unknown target for unit {unit_name}: {target_id} (declared: {available})"
        )

    def __str__(self) -> str:
        return str(self.args[0])


class MissingInputError(FileNotFoundError):
    def __init__(self, unit_name: str, missing: Sequence[str]):
        self.unit_name = unit_name
        self.missing = tuple(missing)
        super().__init__(f"Missing input(s) for unit {unit_name}: {', '.join(self.missing)}")
