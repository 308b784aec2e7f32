"""Locate and read the YAML build description."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

DEFAULT_ENV_VAR = "MULTITARGET_CONFIG"
LOCAL_OVERLAY_NAME = "config.local.yaml"
_REPO_MARKERS = ("pyproject.toml", ".git")


def find_repo_root(start: str | os.PathLike[str] | None = None) -> str:
    here = Path(start or os.getcwd()).resolve()
    if here.is_file():
        here = here.parent
    for candidate in (here, *here.parents):
        if any((candidate / marker).exists() for marker in _REPO_MARKERS):
            return str(candidate)
    raise FileNotFoundError(f"Cannot locate repo root above {here} (looked for {', '.join(_REPO_MARKERS)})")


def read_yaml_mapping(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"Config file must contain a YAML mapping: {path}")
    return dict(payload)


def merge_overlay(base: Mapping[str, Any], overlay: Mapping[str, Any], *, path: str = "") -> dict[str, Any]:
    """Merge `overlay` into `base`: mappings recurse, everything else (lists included) is replaced."""

    merged = dict(base)
    for key, value in overlay.items():
        key_path = f"{path}.{key}" if path else str(key)
        current = merged.get(key)
        if isinstance(current, Mapping) and value is not None:
            if not isinstance(value, Mapping):
                raise ValueError(
                    f"Invalid config overlay merge at {key_path}: expected a mapping, got {type(value).__name__}"
                )
            merged[key] = merge_overlay(current, value, path=key_path)
        elif current is not None and isinstance(value, Mapping):
            raise ValueError(
                f"Invalid config overlay merge at {key_path}: cannot replace {type(current).__name__} with a mapping"
            )
        else:
            merged[key] = value
    return merged


def _requested_path(config_path: str | os.PathLike[str] | None, env_var: str | None) -> tuple[str | None, str]:
    if config_path is not None and str(config_path).strip():
        return str(config_path).strip(), "explicit"
    if env_var and os.environ.get(env_var, "").strip():
        return os.environ[env_var].strip(), "env"
    return None, "base"


def load_config(
    *,
    config_path: str | os.PathLike[str] | None = None,
    env_var: str | None = DEFAULT_ENV_VAR,
    start_dir: str | os.PathLike[str] | None = None,
    config_dir: str = "config",
    config_name: str = "config.yaml",
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load the build description and return `(cfg, meta)`.

    An explicit `config_path` wins, then `$MULTITARGET_CONFIG`; either loads that single
    file. Otherwise `<repo_root>/config/config.yaml` is read and `config.local.yaml` next
    to it is merged on top. `meta["base_dir"]` is where relative paths in the file resolve.
    """

    requested, mode = _requested_path(config_path, env_var)
    if requested is not None:
        path = os.path.abspath(os.path.expandvars(os.path.expanduser(requested)))
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Config file not found: {path}")
        meta = {"mode": mode, "paths": [path], "env_var": env_var, "repo_root": None, "base_dir": os.path.dirname(path)}
        return read_yaml_mapping(path), meta

    repo_root = find_repo_root(start_dir)
    directory = os.path.join(repo_root, config_dir)
    base_path = os.path.abspath(os.path.join(directory, config_name))
    if not os.path.isfile(base_path):
        raise FileNotFoundError(f"Missing base config file: {base_path}")

    cfg = read_yaml_mapping(base_path)
    paths = [base_path]
    overlay_path = os.path.abspath(os.path.join(directory, LOCAL_OVERLAY_NAME))
    if os.path.isfile(overlay_path):
        cfg = merge_overlay(cfg, read_yaml_mapping(overlay_path))
        paths.append(overlay_path)
        mode = "base+local"

    meta = {"mode": mode, "paths": paths, "env_var": env_var, "repo_root": repo_root, "base_dir": repo_root}
    return cfg, meta
