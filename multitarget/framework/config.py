from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping

from multitarget.foundation.config_io import find_repo_root
from unitkit.config_namespace import ConfigNamespace


@dataclass(frozen=True)
class UnitConfig:
    name: str
    targets: tuple[str, ...]
    inputs: tuple[str, ...]
    command: str | tuple[str, ...] | None
    shell: bool
    base_dir: str
    aggregate: str | None = None
    doc: str | None = None


@dataclass(frozen=True)
class LockConfig:
    timeout_seconds: float | None = None
    poll_interval_seconds: float = 0.1


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts True/False, 0/1 and the strings true/false/1/0/yes/no.
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_float(value: Any, path: str) -> float:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected float, got bool")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be a float") from exc
    raise ValueError(f"Invalid config type for {path}: expected float")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config type for {path}: expected int")


@dataclass(frozen=True)
class BuildConfig:
    base_dir: str
    state_dir: str
    log_dir: str
    run_index_path: str
    jobs: int
    lock: LockConfig
    units: tuple[UnitConfig, ...]

    def unit(self, name: str) -> UnitConfig:
        key = (name or "").strip()
        for unit in self.units:
            if unit.name == key:
                return unit
        available = ", ".join(u.name for u in self.units) or "<none>"
        raise ValueError(f"Unknown unit: {name} (available: {available})")

    def select(self, name: str | None) -> tuple[UnitConfig, ...]:
        if name is None:
            return self.units
        return (self.unit(name),)

    @classmethod
    def from_dict(
        cls, cfg: Mapping[str, Any], *, base_dir: str | None = None
    ) -> tuple["BuildConfig", list[str]]:
        """
        Parse and validate a build description, returning (BuildConfig, warnings).

        Relative paths resolve against `base_dir` (defaults to the repo root).

        Raises:
            ValueError: if required keys are missing or invalid.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        warnings: list[str] = []

        strict_unknown_keys = False
        if "strict" in cfg:
            strict_unknown_keys = parse_bool(cfg.get("strict"), "strict")

        schema: Mapping[str, Any] = {
            "strict": None,
            "state_dir": None,
            "log_dir": None,
            "run_index_path": None,
            "lock": {"timeout_seconds": None, "poll_interval_seconds": None},
            "build": {"jobs": None},
            "units": None,
        }

        unknown_keys: list[str] = []
        for key, value in cfg.items():
            if not isinstance(key, str):
                continue
            if key not in schema:
                unknown_keys.append(key)
                continue
            subschema = schema[key]
            if isinstance(subschema, Mapping) and isinstance(value, Mapping):
                unknown_keys.extend(
                    f"{key}.{sub}" for sub in value.keys() if isinstance(sub, str) and sub not in subschema
                )

        if unknown_keys:
            unknown_keys = sorted(set(unknown_keys))
            if strict_unknown_keys:
                raise ValueError("Unknown config keys: " + ", ".join(unknown_keys))
            warnings.extend(f"Unknown config key: {key}" for key in unknown_keys)

        root = os.path.abspath(base_dir) if base_dir else find_repo_root()

        def normalize_path(value: Any, path: str) -> str:
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"Invalid config value for {path}: expected a non-empty path string")
            expanded = os.path.expandvars(os.path.expanduser(value.strip()))
            if not os.path.isabs(expanded):
                expanded = os.path.join(root, expanded)
            return os.path.abspath(expanded)

        def get_mapping(key: str) -> Mapping[str, Any]:
            value = cfg.get(key)
            if value is None:
                return {}
            if not isinstance(value, Mapping):
                raise ValueError(f"Invalid config type for {key}: expected mapping")
            return value

        state_dir = normalize_path(cfg.get("state_dir", ".multitarget"), "state_dir")
        log_dir = normalize_path(cfg.get("log_dir", "logs"), "log_dir")
        if cfg.get("run_index_path") is None:
            run_index_path = os.path.join(log_dir, "runs.jsonl")
        else:
            run_index_path = normalize_path(cfg.get("run_index_path"), "run_index_path")

        lock_cfg = get_mapping("lock")
        raw_timeout = lock_cfg.get("timeout_seconds")
        lock = LockConfig(
            timeout_seconds=None if raw_timeout is None else parse_float(raw_timeout, "lock.timeout_seconds"),
            poll_interval_seconds=parse_float(
                lock_cfg.get("poll_interval_seconds", 0.1), "lock.poll_interval_seconds"
            ),
        )
        if lock.timeout_seconds is not None and lock.timeout_seconds <= 0:
            raise ValueError("Invalid config value for lock.timeout_seconds: must be > 0")
        if lock.poll_interval_seconds <= 0:
            raise ValueError("Invalid config value for lock.poll_interval_seconds: must be > 0")

        jobs = parse_int(get_mapping("build").get("jobs", 1), "build.jobs")
        if jobs < 1:
            raise ValueError("Invalid config value for build.jobs: must be >= 1")

        if cfg.get("units") is None:
            raise ValueError("Missing required config: units")
        unit_entries = ConfigNamespace({"units": cfg["units"]}, path="").get_list_mapping("units")

        units: list[UnitConfig] = []
        seen: set[str] = set()
        for idx, entry in enumerate(unit_entries):
            ns = ConfigNamespace(entry, path=f"units[{idx}]")
            name = ns.get_str("name")
            if name is None:
                raise ValueError(f"Missing required config: units[{idx}].name")
            if name in seen:
                raise ValueError(f"Duplicate unit name in units[{idx}]: {name}")
            seen.add(name)

            targets = ns.get_list_str("targets")
            inputs = ns.get_list_str("inputs", default=[], allow_empty=True)
            command = ns.get_command("command", default=None)
            shell = ns.get_bool("shell", default=False)
            cwd = ns.get_str("cwd", default=None)
            aggregate = ns.get_str("aggregate", default=None)
            doc = ns.get_str("doc", default=None)
            ns.assert_consumed(unit_name=name)

            if isinstance(command, str) and not shell:
                raise ValueError(
                    f"units[{idx}].command is a string; set shell: true or give an argv list (unit: {name})"
                )
            if command is None:
                warnings.append(f"Unit {name} has no command; its targets will be touched")
            if aggregate is not None and (aggregate in targets or aggregate in inputs):
                raise ValueError(
                    f"units[{idx}].aggregate must differ from targets and inputs (unit: {name})"
                )

            units.append(
                UnitConfig(
                    name=name,
                    targets=tuple(targets),
                    inputs=tuple(inputs),
                    command=tuple(command) if isinstance(command, list) else command,
                    shell=shell,
                    base_dir=normalize_path(cwd, f"units[{idx}].cwd") if cwd else root,
                    aggregate=aggregate,
                    doc=doc,
                )
            )

        built = cls(
            base_dir=root,
            state_dir=state_dir,
            log_dir=log_dir,
            run_index_path=run_index_path,
            jobs=jobs,
            lock=lock,
            units=tuple(units),
        )
        return built, warnings
