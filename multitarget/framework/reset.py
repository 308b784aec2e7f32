"""Reset operations: `clean` removes outputs and sentinels, `init` also recreates inputs."""

from __future__ import annotations

import logging
import os

from unitkit import SentinelStore, UnitSpec
from unitkit.stamps import touch


def clean_unit(
    unit: UnitSpec,
    store: SentinelStore,
    *,
    aggregate: str | None = None,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Delete every target, the optional aggregate and both sentinels. Returns removed paths."""

    removed: list[str] = []
    paths = [unit.target_path(target) for target in unit.targets]
    if aggregate:
        paths.append(unit.target_path(aggregate))
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            continue
        removed.append(path)
    store.reset()
    if logger:
        logger.info("Cleaned unit %s (%d file(s) removed)", unit.name, len(removed))
    return removed


def init_unit(
    unit: UnitSpec,
    store: SentinelStore,
    *,
    aggregate: str | None = None,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Clean the unit, then create each declared input."""

    clean_unit(unit, store, aggregate=aggregate, logger=logger)
    created: list[str] = []
    for input_id in unit.inputs:
        path = unit.input_path(input_id)
        touch(path)
        created.append(path)
    if logger:
        logger.info("Initialized unit %s (%d input(s) created)", unit.name, len(created))
    return created
