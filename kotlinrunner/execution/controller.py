"""
Run controller: at most one script run at a time.

The controller owns the current run, the output transcript and the status
shown to a front end. It turns a script text into a working file and a
``kotlinc -script`` invocation, hands that to a ProcessSession and
guarantees exactly one exit notification per accepted run, whether the run
ends by natural exit, by stop_run or by failing to start.
"""
import functools
import logging
import threading
import time
from typing import Callable, List, Optional

from kotlinrunner.config import RunnerConfig
from kotlinrunner.errors import SpawnError
from kotlinrunner.execution.session import ProcessSession, RunInstance
from kotlinrunner.types import EXIT_SENTINEL, OutputLine, RunStatus, RunSummary
from kotlinrunner.utils.commands import DEFAULT_KOTLINC, build_kotlinc_command
from kotlinrunner.utils.workspace import ScriptWorkspace

logger = logging.getLogger(__name__)


class _ActiveRun:
    """Bookkeeping for one accepted run."""

    def __init__(
        self,
        token: int,
        on_line: Optional[Callable[[str, bool], None]],
        on_exit: Optional[Callable[[int], None]],
    ) -> None:
        self.token = token
        self.on_line = on_line
        self.on_exit = on_exit
        self.instance: Optional[RunInstance] = None
        self.finished = False
        # Serializes line forwarding with the terminal notification
        self.forward_lock = threading.RLock()


class RunController:
    """
    Single-flight front door to the execution engine.

    Usage:
        controller = RunController()
        handle = controller.start_run(
            'println("hi")',
            on_line=lambda text, is_error: print(text),
            on_exit=lambda code: print("exit", code),
        )
        controller.stop_run(handle)

    Callbacks are invoked on engine threads; consumers marshal to their own.
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        session: Optional[ProcessSession] = None,
        workspace: Optional[ScriptWorkspace] = None,
    ) -> None:
        self.config = config or RunnerConfig.from_env()
        self.session = session or ProcessSession(
            grace_interval=self.config.grace_interval,
            poll_interval=self.config.poll_interval,
            drain_timeout=self.config.drain_timeout,
        )
        self.workspace = workspace or ScriptWorkspace()

        self._lock = threading.Lock()
        self._status = RunStatus.IDLE
        self._run: Optional[_ActiveRun] = None
        self._last_instance: Optional[RunInstance] = None
        self._token = 0
        self._lines: List[OutputLine] = []
        self._last_exit_code: Optional[int] = None
        self._last_error: Optional[SpawnError] = None
        self._was_cancelled = False
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._status

    @property
    def is_running(self) -> bool:
        return self.status == RunStatus.RUNNING

    @property
    def current(self) -> Optional[RunInstance]:
        """Handle of the active run, or None when idle or finished."""
        with self._lock:
            if self._run is None or self._run.finished:
                return None
            return self._run.instance

    @property
    def last_exit_code(self) -> Optional[int]:
        with self._lock:
            return self._last_exit_code

    @property
    def last_error(self) -> Optional[SpawnError]:
        """Why the last run failed to start, if it did."""
        with self._lock:
            return self._last_error

    @property
    def was_cancelled(self) -> bool:
        with self._lock:
            return self._was_cancelled

    @property
    def output(self) -> List[OutputLine]:
        """Copy of the transcript of the current or last run."""
        with self._lock:
            return list(self._lines)

    @property
    def duration(self) -> Optional[float]:
        """Elapsed seconds of the current or last run; live while running."""
        with self._lock:
            if self._started_at is None:
                return None
            end = self._finished_at if self._finished_at is not None else time.monotonic()
            return end - self._started_at

    def summary(self) -> RunSummary:
        duration = self.duration
        with self._lock:
            return RunSummary(
                status=self._status,
                exit_code=self._last_exit_code,
                duration=duration,
                lines=list(self._lines),
                cancelled=self._was_cancelled,
                error=str(self._last_error) if self._last_error else None,
            )

    def start_run(
        self,
        script_text: str,
        on_line: Optional[Callable[[str, bool], None]] = None,
        on_exit: Optional[Callable[[int], None]] = None,
    ) -> Optional[RunInstance]:
        """
        Start running ``script_text`` unless a run is already active.

        Args:
            script_text: Kotlin script source
            on_line: Called as on_line(text, is_error) for every output line
            on_exit: Called exactly once with the exit code (-1 when the run
                could not start or was stopped)

        Returns:
            The new RunInstance, or None when rejected or when the process
            failed to start (on_exit has then already been called)
        """
        with self._lock:
            if self._status == RunStatus.RUNNING:
                logger.debug("Run already in progress; ignoring start request")
                return None
            self._token += 1
            run = _ActiveRun(self._token, on_line, on_exit)
            self._run = run
            self._status = RunStatus.RUNNING
            self._lines = []
            self._last_exit_code = None
            self._last_error = None
            self._was_cancelled = False
            self._started_at = time.monotonic()
            self._finished_at = None
            previous = self._last_instance

        if previous is not None and not previous.finished:
            previous.wait(self.config.teardown_timeout)
            if not previous.finished:
                logger.warning(f"Previous process {previous.pid} still tearing down; starting anyway")

        try:
            script_path = self.workspace.create(script_text)
        except OSError as e:
            executable = self.config.kotlinc_path or DEFAULT_KOTLINC
            self._fail(run, SpawnError([executable], f"cannot write working file: {e}"))
            return None

        command = build_kotlinc_command(
            str(script_path),
            kotlinc_path=self.config.kotlinc_path,
            kotlin_home=self.config.kotlin_home,
            fallback_lib_dir=self.config.fallback_lib_dir,
        )
        logger.debug(f"Invocation: {command}")

        try:
            instance = self.session.start(
                command,
                working_dir=script_path.parent,
                on_line=functools.partial(self._handle_line, run),
                on_exit=functools.partial(self._handle_exit, run),
                cleanup=functools.partial(self.workspace.remove, script_path),
            )
        except SpawnError as e:
            self.workspace.remove(script_path)
            self._fail(run, e)
            return None

        with self._lock:
            run.instance = instance
            self._last_instance = instance
        return instance

    def stop_run(self, handle: Optional[RunInstance], note: Optional[str] = None) -> bool:
        """
        Cancel ``handle`` if it is the current, unfinished run.

        The run is reported finished with the exit sentinel immediately;
        process teardown completes in the background.

        Args:
            handle: The RunInstance returned by start_run
            note: Optional stderr line recorded as the last transcript entry

        Returns:
            True if this call stopped the run
        """
        with self._lock:
            run = self._run
            if handle is None or run is None or run.finished or run.instance is not handle:
                return False
        self.session.cancel(handle)
        return self._finish(run, EXIT_SENTINEL, cancelled=True, note=note)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the last started process is fully torn down."""
        with self._lock:
            instance = self._last_instance
        if instance is None:
            return True
        instance.wait(timeout)
        return instance.finished

    def _handle_line(self, run: _ActiveRun, text: str, is_error: bool) -> None:
        # Held across the callback so no line is delivered after on_exit
        with run.forward_lock:
            with self._lock:
                if run is not self._run or run.finished:
                    return
                self._lines.append(OutputLine(text, is_error))
            if run.on_line is not None:
                run.on_line(text, is_error)

    def _handle_exit(self, run: _ActiveRun, exit_code: int) -> None:
        self._finish(run, exit_code)

    def _fail(self, run: _ActiveRun, error: SpawnError) -> None:
        logger.warning(str(error))
        self._handle_line(run, str(error), True)
        self._finish(run, EXIT_SENTINEL, error=error)

    def _finish(
        self,
        run: _ActiveRun,
        exit_code: int,
        error: Optional[SpawnError] = None,
        cancelled: bool = False,
        note: Optional[str] = None,
    ) -> bool:
        """Record the terminal status of ``run``. Only the first call has any effect."""
        with run.forward_lock, self._lock:
            if run.finished:
                return False
            run.finished = True
            if note is not None and run is self._run:
                self._lines.append(OutputLine(note, True))
            self._status = RunStatus.from_exit_code(exit_code)
            self._last_exit_code = exit_code
            self._last_error = error
            self._was_cancelled = cancelled
            self._finished_at = time.monotonic()
        logger.info(f"Run {run.token} finished with exit code {exit_code}" + (" (stopped)" if cancelled else ""))
        if run.on_exit is not None:
            run.on_exit(exit_code)
        return True
