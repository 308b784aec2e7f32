"""Turn parsed unit configs into kernel `UnitSpec`s and sentinel stores."""

from __future__ import annotations

import logging

from multitarget.framework.config import BuildConfig, UnitConfig
from unitkit import CommandWork, FileSentinelStore, SentinelStore, TouchWork, UnitSpec, WorkFunction


def build_work(unit_cfg: UnitConfig, *, logger: logging.Logger | None = None) -> WorkFunction:
    if unit_cfg.command is None:
        return TouchWork(base_dir=unit_cfg.base_dir)
    return CommandWork(
        unit_cfg.command,
        cwd=unit_cfg.base_dir,
        shell=unit_cfg.shell,
        unit_name=unit_cfg.name,
        logger=logger,
    )


def build_unit(unit_cfg: UnitConfig, *, logger: logging.Logger | None = None) -> UnitSpec:
    return UnitSpec(
        name=unit_cfg.name,
        targets=unit_cfg.targets,
        inputs=unit_cfg.inputs,
        work=build_work(unit_cfg, logger=logger),
        base_dir=unit_cfg.base_dir,
        doc=unit_cfg.doc,
    )


def build_units(cfg: BuildConfig, *, logger: logging.Logger | None = None) -> dict[str, UnitSpec]:
    return {unit_cfg.name: build_unit(unit_cfg, logger=logger) for unit_cfg in cfg.units}


def file_store(cfg: BuildConfig, unit: UnitSpec) -> SentinelStore:
    return FileSentinelStore(
        cfg.state_dir,
        unit.name,
        lock_timeout_seconds=cfg.lock.timeout_seconds,
        poll_interval_seconds=cfg.lock.poll_interval_seconds,
    )
