"""Single-flight execution kernel for multi-output units of work.

This package is intentionally independent of `multitarget.*`. Config loading, logging
setup and the CLI live in the consuming application.
"""

from unitkit.config_namespace import ConfigNamespace
from unitkit.context import BuildContext, generate_build_id
from unitkit.errors import MissingInputError, UnknownTargetError, WorkFunctionFailure
from unitkit.gate import (
    CompositeGateRecorder,
    DefaultGateRecorder,
    ExecutionGate,
    GateOutcome,
    GateRecorder,
    NullGateRecorder,
    utc_now_iso8601,
)
from unitkit.oracle import UnitState, Verdict, evaluate, is_stale, load_state, scan_missing
from unitkit.sentinels import FileSentinelStore, MemorySentinelStore, Sentinel, SentinelStore
from unitkit.stamps import Clock, ManualClock, Stamp, SystemClock, stat_stamp, stat_stamps
from unitkit.unit import UnitSpec, WorkFunction
from unitkit.work import CallableWork, CommandWork, TouchWork

__all__ = [
    "BuildContext",
    "CallableWork",
    "Clock",
    "CommandWork",
    "CompositeGateRecorder",
    "ConfigNamespace",
    "DefaultGateRecorder",
    "ExecutionGate",
    "FileSentinelStore",
    "GateOutcome",
    "GateRecorder",
    "ManualClock",
    "MemorySentinelStore",
    "MissingInputError",
    "NullGateRecorder",
    "Sentinel",
    "SentinelStore",
    "Stamp",
    "SystemClock",
    "TouchWork",
    "UnitSpec",
    "UnitState",
    "UnknownTargetError",
    "Verdict",
    "WorkFunction",
    "WorkFunctionFailure",
    "evaluate",
    "generate_build_id",
    "is_stale",
    "load_state",
    "scan_missing",
    "stat_stamp",
    "stat_stamps",
    "utc_now_iso8601",
]
