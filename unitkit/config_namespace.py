"""Strict config namespace for unit declarations, with consumed-keys enforcement."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

_MISSING = object()


def _join_path(parent: str, key: str) -> str:
    if not parent:
        return key
    return f"{parent}.{key}"


@dataclass
class ConfigNamespace:
    data: Mapping[str, Any]
    path: str
    _consumed: set[str] = field(default_factory=set, init=False, repr=False)
    _effective: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def consumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._consumed))

    def unconsumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(str(k) for k in self.data.keys() if k not in self._consumed))

    def assert_consumed(self, *, unit_name: str | None = None) -> None:
        unknown = list(self.unconsumed_keys())
        if not unknown:
            return
        path = self.path or "<root>"
        consumed = ", ".join(self.consumed_keys()) or "<none>"
        if unit_name:
            raise ValueError(
                f"Unknown config keys under {path}: {', '.join(unknown)} "
                f"(unit: {unit_name}; consumed: {consumed})"
            )
        raise ValueError(f"Unknown config keys under {path}: {', '.join(unknown)} (consumed: {consumed})")

    def effective_values(self) -> dict[str, Any]:
        return dict(self._effective)

    def _get_raw(self, key: str, *, default: Any) -> Any:
        if not isinstance(key, str) or not key.strip():
            raise TypeError("ConfigNamespace key must be a non-empty string")
        normalized = key.strip()
        self._consumed.add(normalized)
        if normalized not in self.data:
            if default is _MISSING:
                raise ValueError(f"Missing required config key: {_join_path(self.path, normalized)}")
            return default
        return self.data.get(normalized)

    def _record(self, key: str, value: Any) -> Any:
        self._effective[key.strip()] = value
        return value

    def get_bool(self, key: str, *, default: bool | object = _MISSING) -> bool:
        raw = self._get_raw(key, default=default)
        if not isinstance(raw, bool):
            raise TypeError(
                f"{_join_path(self.path, key.strip())} must be a boolean (type={type(raw).__name__})"
            )
        return self._record(key, raw)

    def get_str(
        self,
        key: str,
        *,
        default: str | None | object = _MISSING,
        allow_empty: bool = False,
    ) -> str | None:
        raw = self._get_raw(key, default=default)
        if raw is None:
            return self._record(key, None)
        if not isinstance(raw, str):
            raise TypeError(
                f"{_join_path(self.path, key.strip())} must be a string (type={type(raw).__name__})"
            )
        value = raw.strip()
        if not value and not allow_empty:
            raise ValueError(f"{_join_path(self.path, key.strip())} cannot be empty")
        return self._record(key, value)

    def get_list_str(
        self,
        key: str,
        *,
        default: list[str] | tuple[str, ...] | object = _MISSING,
        allow_empty: bool = False,
    ) -> list[str]:
        raw = self._get_raw(key, default=default)
        if not isinstance(raw, (list, tuple)):
            raise TypeError(
                f"{_join_path(self.path, key.strip())} must be a list[str] (type={type(raw).__name__})"
            )

        items: list[str] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, str):
                raise TypeError(
                    f"{_join_path(self.path, key.strip())}[{idx}] must be a string (type={type(item).__name__})"
                )
            trimmed = item.strip()
            if not trimmed:
                raise ValueError(f"{_join_path(self.path, key.strip())}[{idx}] cannot be empty")
            items.append(trimmed)

        if not items and not allow_empty:
            raise ValueError(f"{_join_path(self.path, key.strip())} cannot be empty")
        return self._record(key, list(items))

    def get_command(self, key: str, *, default: Any = _MISSING) -> str | list[str] | None:
        """Parse a command given either as a shell string or as an argv list."""

        raw = self._get_raw(key, default=default)
        if raw is None:
            return self._record(key, None)
        if isinstance(raw, str):
            if not raw.strip():
                raise ValueError(f"{_join_path(self.path, key.strip())} cannot be empty")
            return self._record(key, raw.strip())
        if isinstance(raw, (list, tuple)):
            argv = [str(part) for part in raw if not isinstance(part, (dict, list, tuple))]
            if len(argv) != len(raw):
                raise TypeError(f"{_join_path(self.path, key.strip())} must be a list of scalars")
            if not argv or not argv[0].strip():
                raise ValueError(f"{_join_path(self.path, key.strip())} cannot be empty")
            return self._record(key, argv)
        raise TypeError(
            f"{_join_path(self.path, key.strip())} must be a string or list (type={type(raw).__name__})"
        )

    def get_list_mapping(self, key: str, *, allow_empty: bool = False) -> list[dict[str, Any]]:
        raw = self._get_raw(key, default=_MISSING)
        if not isinstance(raw, (list, tuple)):
            raise TypeError(
                f"{_join_path(self.path, key.strip())} must be a list[dict] (type={type(raw).__name__})"
            )

        items: list[dict[str, Any]] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, Mapping):
                raise TypeError(
                    f"{_join_path(self.path, key.strip())}[{idx}] must be a mapping (type={type(item).__name__})"
                )
            items.append(dict(item))

        if not items and not allow_empty:
            raise ValueError(f"{_join_path(self.path, key.strip())} cannot be empty")
        return items
