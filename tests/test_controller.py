"""Tests for single-flight run control in kotlinrunner.execution.controller."""

import threading
import time
from pathlib import Path
from textwrap import dedent

import pytest

from kotlinrunner.config import RunnerConfig
from kotlinrunner.execution.controller import RunController
from kotlinrunner.types import EXIT_SENTINEL, OutputLine, RunStatus
from kotlinrunner.utils.workspace import ScriptWorkspace

from conftest import OutputRecorder, posix_only, wait_for

pytestmark = posix_only

LONG_SCRIPT = dedent("""
    import time
    print("ready", flush=True)
    time.sleep(60)
""")


@pytest.fixture
def controller(runner_config: RunnerConfig, workspace: ScriptWorkspace):
    """Controller running scripts through the fake kotlinc."""
    ctrl = RunController(runner_config, workspace=workspace)
    yield ctrl
    ctrl.stop_run(ctrl.current)
    ctrl.wait(10)


class TestInitialState:
    """Tests for a controller that never ran."""

    def test_idle(self, controller: RunController):
        assert controller.status == RunStatus.IDLE
        assert controller.current is None
        assert controller.last_exit_code is None
        assert controller.duration is None
        assert controller.output == []
        assert controller.summary().status.label() == "Idle"


class TestNaturalExit:
    """Tests for runs that end on their own."""

    def test_successful_run(self, controller: RunController, workspace: ScriptWorkspace, recorder):
        handle = controller.start_run('print("hi")', recorder.on_line, recorder.on_exit)

        assert handle is not None
        assert recorder.wait()
        assert recorder.lines == [("hi", False)]
        assert recorder.exit_codes == [0]
        assert controller.status == RunStatus.FINISHED_SUCCESS
        assert controller.last_exit_code == 0
        assert controller.current is None
        assert controller.was_cancelled is False
        assert controller.output == [OutputLine("hi", False)]
        assert controller.duration is not None
        assert controller.summary().success
        assert workspace.live_dirs == set()

    def test_failing_run(self, controller: RunController, recorder):
        controller.start_run("import sys\nsys.exit(2)\n", recorder.on_line, recorder.on_exit)

        assert recorder.wait()
        assert recorder.exit_codes == [2]
        assert controller.status == RunStatus.FINISHED_ERROR
        assert controller.status.label(controller.last_exit_code) == "Exit 2"

    def test_runs_the_working_file(self, controller: RunController, recorder):
        """The compiler is handed <tmpdir>/script.kts via -script."""
        controller.start_run("import sys\nprint(sys.argv[0])\n", recorder.on_line, recorder.on_exit)

        assert recorder.wait()
        assert Path(recorder.stdout[0]).name == "script.kts"

    def test_summary_carries_locations(self, controller: RunController, recorder):
        controller.start_run(
            'import sys\nprint("script.kts:3:5: error: boom", file=sys.stderr)\nsys.exit(1)\n',
            recorder.on_line,
            recorder.on_exit,
        )
        assert recorder.wait()

        data = controller.summary().to_dict()

        assert data["status"] == "finished_error"
        assert data["exit_code"] == 1
        assert data["lines"][0]["stream"] == "stderr"
        assert data["lines"][0]["locations"] == [
            {"span": "script.kts:3:5", "line": 3, "column": 5, "kind": "compile"}
        ]

    def test_transcript_cleared_on_next_run(self, controller: RunController):
        first = OutputRecorder()
        controller.start_run('print("one")', first.on_line, first.on_exit)
        assert first.wait()

        second = OutputRecorder()
        controller.start_run('print("two")', second.on_line, second.on_exit)
        assert second.wait()

        assert controller.output == [OutputLine("two", False)]
        assert first.exit_codes == [0]


class TestSingleFlight:
    """Tests for the at-most-one-run guarantee."""

    def test_start_while_running_is_rejected(self, controller: RunController, recorder):
        handle = controller.start_run(LONG_SCRIPT, recorder.on_line, recorder.on_exit)
        assert wait_for(lambda: recorder.stdout == ["ready"])

        rejected = OutputRecorder()
        assert controller.start_run('print("again")', rejected.on_line, rejected.on_exit) is None
        assert controller.current is handle
        assert rejected.exit_codes == []

    def test_concurrent_starts_accept_exactly_one(self, controller: RunController):
        barrier = threading.Barrier(6)
        handles = []
        lock = threading.Lock()

        def start():
            barrier.wait()
            handle = controller.start_run(LONG_SCRIPT)
            with lock:
                handles.append(handle)

        threads = [threading.Thread(target=start) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        accepted = [h for h in handles if h is not None]
        assert len(accepted) == 1
        assert controller.current is accepted[0]


class TestStopRun:
    """Tests for stop_run."""

    def test_stop_reports_sentinel_immediately(self, controller: RunController, workspace, recorder):
        handle = controller.start_run(LONG_SCRIPT, recorder.on_line, recorder.on_exit)
        assert wait_for(lambda: recorder.stdout == ["ready"])

        assert controller.stop_run(handle) is True

        assert recorder.exit_codes == [EXIT_SENTINEL]
        assert controller.status == RunStatus.FINISHED_ERROR
        assert controller.was_cancelled is True
        assert controller.last_exit_code == EXIT_SENTINEL
        assert controller.last_error is None
        assert controller.current is None

        assert controller.wait(10)
        assert handle.finished
        assert recorder.exit_codes == [EXIT_SENTINEL]
        assert workspace.live_dirs == set()

    def test_second_stop_is_noop(self, controller: RunController, recorder):
        handle = controller.start_run(LONG_SCRIPT, recorder.on_line, recorder.on_exit)
        assert wait_for(lambda: recorder.stdout == ["ready"])

        assert controller.stop_run(handle) is True
        assert controller.stop_run(handle) is False
        assert recorder.exit_codes == [EXIT_SENTINEL]

    def test_stop_unknown_handle(self, controller: RunController, recorder):
        first = controller.start_run('print("x")', recorder.on_line, recorder.on_exit)
        assert recorder.wait()
        controller.wait(10)

        current = OutputRecorder()
        controller.start_run(LONG_SCRIPT, current.on_line, current.on_exit)
        assert wait_for(lambda: current.stdout == ["ready"])

        assert controller.stop_run(None) is False
        assert controller.stop_run(first) is False
        assert controller.status == RunStatus.RUNNING

    def test_stop_after_natural_exit_is_noop(self, controller: RunController, recorder):
        handle = controller.start_run("pass", recorder.on_line, recorder.on_exit)
        assert recorder.wait()

        assert controller.stop_run(handle) is False
        assert recorder.exit_codes == [0]
        assert controller.was_cancelled is False

    def test_stop_racing_natural_exit_notifies_once(self, controller: RunController):
        """Concurrent stop and exit converge on exactly one notification."""
        for _ in range(5):
            rec = OutputRecorder()
            handle = controller.start_run("pass", rec.on_line, rec.on_exit)
            assert handle is not None
            stopper = threading.Thread(target=controller.stop_run, args=(handle,))
            stopper.start()
            stopper.join()
            assert rec.wait()
            controller.wait(10)

            assert len(rec.exit_codes) == 1
            assert rec.exit_codes[0] in (0, EXIT_SENTINEL)

    def test_stop_note_is_last_transcript_line(self, controller: RunController, recorder):
        handle = controller.start_run(LONG_SCRIPT, recorder.on_line, recorder.on_exit)
        assert wait_for(lambda: recorder.stdout == ["ready"])

        assert controller.stop_run(handle, note="[stopped]") is True

        assert controller.output == [OutputLine("ready", False), OutputLine("[stopped]", True)]
        assert recorder.lines == [("ready", False)]
        assert controller.summary().lines[-1] == OutputLine("[stopped]", True)

    def test_ineffective_stop_records_no_note(self, controller: RunController, recorder):
        handle = controller.start_run('print("done")', recorder.on_line, recorder.on_exit)
        assert recorder.wait()

        assert controller.stop_run(handle, note="[stopped]") is False
        assert controller.output == [OutputLine("done", False)]

    def test_line_in_delivery_completes_before_exit_callback(self, controller: RunController):
        """A stop issued while a line is being delivered waits for that delivery."""
        events = []
        delivering = threading.Event()

        def on_line(text, is_error):
            delivering.set()
            time.sleep(0.3)
            events.append(("line", text))

        def on_exit(code):
            events.append(("exit", code))

        handle = controller.start_run(LONG_SCRIPT, on_line, on_exit)
        assert delivering.wait(15)

        assert controller.stop_run(handle) is True

        assert events == [("line", "ready"), ("exit", EXIT_SENTINEL)]

    def test_new_run_after_stop(self, controller: RunController, recorder):
        handle = controller.start_run(LONG_SCRIPT, recorder.on_line, recorder.on_exit)
        assert wait_for(lambda: recorder.stdout == ["ready"])
        controller.stop_run(handle)

        after = OutputRecorder()
        assert controller.start_run('print("after")', after.on_line, after.on_exit) is not None
        assert after.wait()
        assert after.stdout == ["after"]
        assert handle.finished


class TestSpawnFailure:
    """Tests for runs that cannot start."""

    def test_missing_kotlinc(self, tmp_path: Path, workspace: ScriptWorkspace, recorder):
        missing = str(tmp_path / "missing" / "kotlinc")
        controller = RunController(RunnerConfig(kotlinc_path=missing), workspace=workspace)

        assert controller.start_run('println("x")', recorder.on_line, recorder.on_exit) is None

        assert recorder.exit_codes == [EXIT_SENTINEL]
        assert len(recorder.stderr) == 1
        assert recorder.stderr[0].startswith(f"Failed to start '{missing}': ")
        assert controller.status == RunStatus.FINISHED_ERROR
        assert controller.last_error is not None
        assert controller.last_error.executable == missing
        assert controller.was_cancelled is False
        assert controller.current is None
        assert workspace.live_dirs == set()

    def test_unwritable_working_file(self, tmp_path: Path, runner_config: RunnerConfig, recorder):
        broken = ScriptWorkspace(base_dir=str(tmp_path / "nope"))
        controller = RunController(runner_config, workspace=broken)

        assert controller.start_run("pass", recorder.on_line, recorder.on_exit) is None

        assert recorder.exit_codes == [EXIT_SENTINEL]
        assert "cannot write working file" in recorder.stderr[0]
        assert controller.status == RunStatus.FINISHED_ERROR

    def test_can_start_again_after_failure(self, tmp_path: Path, runner_config, workspace, recorder):
        controller = RunController(
            runner_config.with_overrides(kotlinc_path=str(tmp_path / "missing")), workspace=workspace,
        )
        controller.start_run("pass", recorder.on_line, recorder.on_exit)
        assert recorder.exit_codes == [EXIT_SENTINEL]

        controller.config = runner_config
        ok = OutputRecorder()
        assert controller.start_run('print("ok")', ok.on_line, ok.on_exit) is not None
        assert ok.wait()
        assert ok.exit_codes == [0]
        assert controller.last_error is None
