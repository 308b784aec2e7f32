from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from unitkit.stamps import resolve_path

_UNIT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class WorkFunction(Protocol):
    def __call__(self, targets: tuple[str, ...]) -> None:
        ...


def _normalize_ids(values: tuple[str, ...], *, field_name: str, unit_name: str) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for idx, raw in enumerate(values):
        if not isinstance(raw, str):
            raise TypeError(
                f"UnitSpec.{field_name}[{idx}] must be a string (unit={unit_name}, type={type(raw).__name__})"
            )
        value = raw.strip()
        if not value:
            raise ValueError(f"UnitSpec.{field_name}[{idx}] cannot be empty (unit={unit_name})")
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return tuple(out)


@dataclass(frozen=True)
class UnitSpec:
    """One multi-output unit of work: fixed targets, direct inputs, one work function."""

    name: str
    targets: tuple[str, ...]
    work: WorkFunction
    inputs: tuple[str, ...] = ()
    base_dir: str | None = None
    doc: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise TypeError("UnitSpec.name must be a non-empty string")
        name = self.name.strip()
        if not _UNIT_NAME_RE.match(name):
            raise ValueError(
                f"UnitSpec.name may only contain letters, digits, '.', '_' and '-' (got {name!r})"
            )
        object.__setattr__(self, "name", name)

        if isinstance(self.targets, str) or isinstance(self.inputs, str):
            raise TypeError(f"UnitSpec.targets/inputs must be sequences, not strings (unit={name})")
        targets = _normalize_ids(tuple(self.targets), field_name="targets", unit_name=name)
        if not targets:
            raise ValueError(f"UnitSpec.targets cannot be empty (unit={name})")
        inputs = _normalize_ids(tuple(self.inputs), field_name="inputs", unit_name=name)
        overlap = sorted(set(targets) & set(inputs))
        if overlap:
            raise ValueError(
                f"UnitSpec declares the same path as target and input (unit={name}): {', '.join(overlap)}"
            )
        object.__setattr__(self, "targets", targets)
        object.__setattr__(self, "inputs", inputs)

        if not callable(self.work):
            raise TypeError(f"UnitSpec.work must be callable (unit={name}, type={type(self.work).__name__})")
        if self.doc is not None and (not isinstance(self.doc, str) or not self.doc.strip()):
            raise TypeError("UnitSpec.doc must be a non-empty string or None")

    def target_path(self, target_id: str) -> str:
        return resolve_path(target_id, self.base_dir)

    def input_path(self, input_id: str) -> str:
        return resolve_path(input_id, self.base_dir)

    def declares(self, target_id: str) -> bool:
        return (target_id or "").strip() in self.targets
