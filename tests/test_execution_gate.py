import logging
import os
import subprocess
import sys
import threading
from pathlib import Path

import pytest

from unitkit import (
    BuildContext,
    FileSentinelStore,
    ManualClock,
    MemorySentinelStore,
    NullGateRecorder,
    TouchWork,
    UnitSpec,
    UnknownTargetError,
)
from unitkit.stamps import touch

SECOND = 1_000_000_000


def _quiet_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


class CountingWork:
    """Touches every target at the clock's current time and counts invocations."""

    def __init__(self, base_dir, clock, *, delay=0.0, fail_times=0):
        self.base_dir = str(base_dir)
        self.clock = clock
        self.delay = delay
        self.fail_times = fail_times
        self.calls = 0
        self.finished = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, targets):
        with self._lock:
            self.calls += 1
            call_no = self.calls
        if self.delay:
            threading.Event().wait(self.delay)
        if call_no <= self.fail_times:
            raise RuntimeError(f"work failed (call {call_no})")
        at_ns = self.clock.now_ns()
        for target in targets:
            touch(os.path.join(self.base_dir, target), at_ns)
        self.finished.set()


def _setup(tmp_path, logger_name, **work_kwargs):
    clock = ManualClock(100 * SECOND)
    touch(str(tmp_path / "input"), clock.now_ns())
    clock.advance(SECOND)
    work = CountingWork(tmp_path, clock, **work_kwargs)
    unit = UnitSpec(
        name="demo",
        targets=("file1", "file2", "file3"),
        inputs=("input",),
        work=work,
        base_dir=str(tmp_path),
    )
    store = MemorySentinelStore("demo")
    ctx = BuildContext(
        store_factory=lambda _unit: store,
        clock=clock,
        logger=_quiet_logger(logger_name),
    )
    return unit, work, store, ctx, clock


def test_first_run_invokes_work_and_writes_run_marker(tmp_path):
    unit, work, store, ctx, clock = _setup(tmp_path, "test.gate.first")

    outcome = ctx.ensure_run(unit)

    assert outcome.ran is True
    assert outcome.verdict.reason == "never_run"
    assert work.calls == 1
    marker = store.read("run")
    assert marker is not None
    assert marker.timestamp_ns >= os.stat(tmp_path / "input").st_mtime_ns
    for name in ("file1", "file2", "file3"):
        assert (tmp_path / name).exists()


def test_fresh_unit_is_not_rerun_in_the_next_generation(tmp_path):
    unit, work, store, ctx, clock = _setup(tmp_path, "test.gate.fresh")
    ctx.ensure_run(unit)
    marker_before = store.read("run")

    ctx.new_generation()
    clock.advance(SECOND)
    outcome = ctx.ensure_run(unit)

    assert outcome.ran is False
    assert outcome.verdict.reason == "fresh"
    assert work.calls == 1
    assert store.read("run") == marker_before
    assert store.read("force") is None


def test_repeated_calls_in_one_generation_run_once(tmp_path):
    unit, work, store, ctx, clock = _setup(tmp_path, "test.gate.idempotent")

    first = ctx.ensure_run(unit)
    second = ctx.ensure_run(unit)
    third = ctx.ensure_target(unit, "file2")

    assert work.calls == 1
    assert first is second is third


def test_touching_an_input_triggers_exactly_one_rerun(tmp_path):
    unit, work, store, ctx, clock = _setup(tmp_path, "test.gate.input")
    ctx.ensure_run(unit)

    clock.advance(10 * SECOND)
    input_ns = clock.now_ns()
    touch(str(tmp_path / "input"), input_ns)
    ctx.new_generation()

    outcome = ctx.ensure_run(unit)
    ctx.ensure_target(unit, "file1")
    ctx.ensure_target(unit, "file3")

    assert outcome.ran is True
    assert outcome.verdict.reason == "input_newer"
    assert outcome.verdict.trigger == "input"
    assert work.calls == 2
    assert store.read("run").timestamp_ns >= input_ns


@pytest.mark.parametrize("deleted", [("file2",), ("file1", "file3"), ("file1", "file2", "file3")])
def test_missing_outputs_force_one_run_that_restores_all_targets(tmp_path, deleted):
    unit, work, store, ctx, clock = _setup(tmp_path, "test.gate.missing")
    ctx.ensure_run(unit)

    for name in deleted:
        os.remove(tmp_path / name)
    ctx.new_generation()
    outcome = ctx.ensure_run(unit)

    assert outcome.ran is True
    assert outcome.verdict.reason == "forced"
    assert outcome.missing == tuple(sorted(deleted))
    assert work.calls == 2
    marker_ns = store.read("run").timestamp_ns
    assert marker_ns >= store.read("force").timestamp_ns
    for name in ("file1", "file2", "file3"):
        assert (tmp_path / name).exists()

    # The force trigger is neutralized once the run completes.
    ctx.new_generation()
    assert ctx.ensure_run(unit).ran is False
    assert work.calls == 2


def test_concurrent_consumers_share_a_single_run(tmp_path):
    unit, work, store, ctx, clock = _setup(tmp_path, "test.gate.concurrent", delay=0.05)
    consumers = 12
    barrier = threading.Barrier(consumers)
    outcomes = []
    finished_before_return = []
    guard = threading.Lock()

    def consumer(index):
        barrier.wait()
        target = unit.targets[index % len(unit.targets)]
        outcome = ctx.ensure_target(unit, target)
        with guard:
            outcomes.append(outcome)
            finished_before_return.append(work.finished.is_set())

    threads = [threading.Thread(target=consumer, args=(i,)) for i in range(consumers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert work.calls == 1
    assert len(outcomes) == consumers
    assert all(outcome is outcomes[0] for outcome in outcomes)
    assert all(finished_before_return)


def test_concurrent_builds_sharing_a_store_run_once(tmp_path):
    unit, work, store, ctx_a, clock = _setup(tmp_path, "test.gate.two_builds", delay=0.05)
    ctx_b = BuildContext(
        store_factory=lambda _unit: store,
        clock=clock,
        logger=_quiet_logger("test.gate.two_builds.b"),
    )
    barrier = threading.Barrier(2)
    outcomes = {}

    def consumer(name, ctx):
        barrier.wait()
        outcomes[name] = ctx.ensure_run(unit)

    threads = [
        threading.Thread(target=consumer, args=("a", ctx_a)),
        threading.Thread(target=consumer, args=("b", ctx_b)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert work.calls == 1
    assert sorted(outcome.ran for outcome in outcomes.values()) == [False, True]


def test_failure_is_shared_by_all_waiters_and_leaves_unit_stale(tmp_path):
    unit, work, store, ctx, clock = _setup(
        tmp_path, "test.gate.failure", delay=0.05, fail_times=1
    )
    consumers = 5
    barrier = threading.Barrier(consumers)
    errors = []
    guard = threading.Lock()

    def consumer():
        barrier.wait()
        try:
            ctx.ensure_run(unit)
        except RuntimeError as exc:
            with guard:
                errors.append(exc)

    threads = [threading.Thread(target=consumer) for _ in range(consumers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert work.calls == 1
    assert len(errors) == consumers
    assert all(exc is errors[0] for exc in errors)
    assert getattr(errors[0], "unit_name") == "demo"
    assert getattr(errors[0], "build_generation") == 1
    assert store.read("run") is None

    # Same generation: the settled failure is re-raised without another attempt.
    with pytest.raises(RuntimeError, match=r"work failed"):
        ctx.ensure_run(unit)
    assert work.calls == 1

    ctx.new_generation()
    outcome = ctx.ensure_run(unit)
    assert outcome.ran is True
    assert outcome.verdict.reason == "never_run"
    assert work.calls == 2


def test_failed_rerun_keeps_previous_run_marker(tmp_path):
    unit, work, store, ctx, clock = _setup(tmp_path, "test.gate.failed_rerun")
    ctx.ensure_run(unit)
    marker = store.read("run")

    work.fail_times = 2
    clock.advance(SECOND)
    touch(str(tmp_path / "input"), clock.now_ns())
    ctx.new_generation()
    with pytest.raises(RuntimeError):
        ctx.ensure_run(unit)

    assert store.read("run") == marker
    ctx.new_generation()
    outcome = ctx.ensure_run(unit)
    assert outcome.ran is True
    assert outcome.verdict.reason == "input_newer"


def test_ensure_target_rejects_undeclared_targets(tmp_path):
    unit, work, store, ctx, clock = _setup(tmp_path, "test.gate.unknown")
    with pytest.raises(UnknownTargetError, match=r"Unknown target for unit demo: file9"):
        ctx.ensure_target(unit, "file9")
    assert work.calls == 0


def test_recorder_receives_evaluate_and_run_events(tmp_path):
    class RecordingRecorder:
        def __init__(self):
            self.events = []

        def on_evaluate(self, ctx, unit, verdict, state):
            self.events.append(("evaluate", verdict.reason, state.missing))

        def on_run_start(self, ctx, unit, verdict):
            self.events.append(("start", verdict.reason))

        def on_run_end(self, ctx, unit, outcome):
            self.events.append(("end", outcome.ran))

        def on_run_error(self, ctx, unit, exc):
            self.events.append(("error", str(exc)))

    unit, work, store, _ctx, clock = _setup(tmp_path, "test.gate.recorder")
    recorder = RecordingRecorder()
    ctx = BuildContext(
        store_factory=lambda _unit: store,
        clock=clock,
        logger=_quiet_logger("test.gate.recorder.ctx"),
        recorder=recorder,
    )

    ctx.ensure_run(unit)
    ctx.new_generation()
    ctx.ensure_run(unit)

    assert recorder.events == [
        ("evaluate", "never_run", ()),
        ("start", "never_run"),
        ("end", True),
        ("evaluate", "fresh", ()),
    ]


def test_recorder_without_required_methods_is_rejected(tmp_path):
    unit, work, store, _ctx, clock = _setup(tmp_path, "test.gate.bad_recorder")
    ctx = BuildContext(store_factory=lambda _unit: store, clock=clock, recorder=object())
    with pytest.raises(TypeError, match=r"Gate recorder missing required method: on_evaluate"):
        ctx.gate(unit)


def test_null_recorder_and_reset_return_unit_to_never_run(tmp_path):
    unit, work, store, _ctx, clock = _setup(tmp_path, "test.gate.reset")
    ctx = BuildContext(store_factory=lambda _unit: store, clock=clock, recorder=NullGateRecorder())
    ctx.ensure_run(unit)

    ctx.reset(unit)

    assert store.read("run") is None
    outcome = ctx.ensure_run(unit)
    assert outcome.verdict.reason == "never_run"
    assert work.calls == 2


_KILLED_RUN = """\
import os
import sys

from unitkit import BuildContext, FileSentinelStore, UnitSpec

base_dir, state_dir = sys.argv[1], sys.argv[2]


def die_midway(targets):
    with open(os.path.join(base_dir, targets[0]), "w", encoding="utf-8"):
        pass
    os._exit(9)


unit = UnitSpec(
    name="demo",
    targets=("file1", "file2", "file3"),
    inputs=("input",),
    work=die_midway,
    base_dir=base_dir,
)
BuildContext(store_factory=lambda u: FileSentinelStore(state_dir, u.name)).ensure_run(unit)
"""


def _kill_run_midway(tmp_path):
    proc = subprocess.run(
        [sys.executable, "-c", _KILLED_RUN, str(tmp_path), str(tmp_path / "state")],
        capture_output=True,
        text=True,
        cwd=str(Path(__file__).resolve().parents[1]),
    )
    assert proc.returncode == 9, proc.stderr or proc.stdout
    assert (tmp_path / "file1").exists()
    assert not (tmp_path / "file2").exists()


def _file_unit(tmp_path, work):
    return UnitSpec(
        name="demo",
        targets=("file1", "file2", "file3"),
        inputs=("input",),
        work=work,
        base_dir=str(tmp_path),
    )


@pytest.mark.parametrize("reset_first", [False, True])
def test_killed_run_is_rerun_by_the_next_build(tmp_path, reset_first):
    touch(str(tmp_path / "input"))
    _kill_run_midway(tmp_path)

    store = FileSentinelStore(str(tmp_path / "state"), "demo", lock_timeout_seconds=0.5, poll_interval_seconds=0.01)
    assert store.read("run") is None
    if reset_first:
        store.reset()
        assert not os.path.exists(store.lock_path)

    work = TouchWork(base_dir=str(tmp_path))
    ctx = BuildContext(store_factory=lambda _unit: store, logger=_quiet_logger("test.gate.killed"))
    outcome = ctx.ensure_run(_file_unit(tmp_path, work))

    assert outcome.ran is True
    assert outcome.verdict.reason == "never_run"
    for name in ("file1", "file2", "file3"):
        assert (tmp_path / name).exists()
    assert store.read("run") is not None


def test_second_build_waits_for_a_long_run_through_the_file_lock(tmp_path):
    touch(str(tmp_path / "input"))
    calls = []
    started = threading.Event()

    def slow_work(targets):
        calls.append(targets)
        started.set()
        threading.Event().wait(0.5)
        TouchWork(base_dir=str(tmp_path))(targets)

    unit = _file_unit(tmp_path, slow_work)
    state_dir = str(tmp_path / "state")

    def new_context(name):
        return BuildContext(
            store_factory=lambda u: FileSentinelStore(state_dir, u.name, poll_interval_seconds=0.01),
            logger=_quiet_logger(name),
        )

    first_outcome = []
    leader = threading.Thread(target=lambda: first_outcome.append(new_context("test.gate.long.a").ensure_run(unit)))
    leader.start()
    started.wait()
    second = new_context("test.gate.long.b").ensure_run(unit)
    leader.join()

    assert len(calls) == 1
    assert first_outcome[0].ran is True
    assert second.ran is False
    assert second.verdict.reason == "fresh"
