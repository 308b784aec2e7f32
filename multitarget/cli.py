from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from multitarget.foundation.config_io import load_config
from multitarget.foundation.logging_utils import (
    close_logger,
    configure_stdio_utf8,
    setup_operational_logger,
)
from multitarget.framework.config import BuildConfig
from unitkit import MissingInputError, UnknownTargetError, generate_build_id

EXIT_OK = 0
EXIT_WORK_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="multitarget", add_help=True)
    parser.add_argument("--config", default=None, help="Path to the YAML build description")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log DEBUG to the console")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Bring unit outputs up to date")
    build.add_argument("--unit", default=None, help="Only this unit")
    build.add_argument("--target", action="append", default=None, help="Request a single target (repeatable)")
    build.add_argument("-j", "--jobs", type=int, default=None, help="Parallel consumers")

    status = sub.add_parser("status", help="Show targets, inputs and sentinels")
    status.add_argument("--unit", default=None)

    clean = sub.add_parser("clean", help="Delete targets and sentinels")
    clean.add_argument("--unit", default=None)

    init = sub.add_parser("init", help="Clean, then create the declared inputs")
    init.add_argument("--unit", default=None)

    history = sub.add_parser("history", help="Show recent work runs")
    history.add_argument("--unit", default=None)
    history.add_argument("--limit", type=int, default=20)

    sub.add_parser("list-units", help="List declared units")

    return parser


def _load_build_config(config_path: str | None) -> tuple[BuildConfig, list[str]]:
    cfg_dict, meta = load_config(config_path=config_path)
    return BuildConfig.from_dict(cfg_dict, base_dir=meta.get("base_dir"))


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    configure_stdio_utf8()

    try:
        cfg, warnings = _load_build_config(args.config)
    except (FileNotFoundError, ValueError, TypeError) as exc:
        print(f"multitarget: config error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    build_id = generate_build_id()
    logger, _log_file = setup_operational_logger(
        cfg.log_dir,
        build_id,
        console_level=logging.DEBUG if args.verbose else logging.INFO,
    )
    for warning in warnings:
        logger.warning(warning)

    try:
        return _dispatch(args, cfg, logger=logger, build_id=build_id)
    except (UnknownTargetError, MissingInputError, ValueError) as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR
    except Exception:
        logger.exception("Command %s failed", args.command)
        return EXIT_WORK_FAILED
    finally:
        close_logger(logger)


def _dispatch(args: argparse.Namespace, cfg: BuildConfig, *, logger: logging.Logger, build_id: str) -> int:
    if args.command == "build":
        from multitarget.app.build import run_build

        run_build(cfg, logger=logger, unit_name=args.unit, targets=args.target, jobs=args.jobs, build_id=build_id)
        return EXIT_OK

    if args.command == "list-units":
        for unit_cfg in cfg.units:
            doc = f" - {unit_cfg.doc}" if unit_cfg.doc else ""
            print(f"{unit_cfg.name}: {len(unit_cfg.targets)} target(s), {len(unit_cfg.inputs)} input(s){doc}")
        return EXIT_OK

    if args.command == "history":
        from multitarget.framework.run_index import read_run_history

        df = read_run_history(cfg.run_index_path, unit=args.unit, limit=args.limit)
        print("No runs recorded." if df.empty else df.to_string(index=False))
        return EXIT_OK

    from multitarget.framework.reset import clean_unit, init_unit
    from multitarget.framework.status import unit_status_frame, unit_verdict_summary
    from multitarget.framework.units import build_unit, file_store

    for unit_cfg in cfg.select(args.unit):
        unit = build_unit(unit_cfg, logger=logger)
        store = file_store(cfg, unit)
        if args.command == "status":
            print(f"== {unit.name}: {unit_verdict_summary(unit, store)}")
            print(unit_status_frame(unit, store).to_string(index=False))
        elif args.command == "clean":
            clean_unit(unit, store, aggregate=unit_cfg.aggregate, logger=logger)
        elif args.command == "init":
            init_unit(unit, store, aggregate=unit_cfg.aggregate, logger=logger)
        else:
            raise AssertionError(f"Unhandled command: {args.command}")
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
