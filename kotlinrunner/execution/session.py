"""
Process session for running one external command with live output.

Supports:
- Concurrent line-by-line draining of stdout and stderr
- Exit detection on a dedicated wait thread
- Cancellation that kills the whole process tree (graceful, then forced)
- A finalizer that always runs after all threads are done, on every exit path
"""
import logging
import os
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Callable, Optional, Sequence, Union

import psutil

from kotlinrunner.errors import SpawnError, StreamError, TeardownError
from kotlinrunner.execution.process_tree import DEFAULT_GRACE_INTERVAL, ProcessTree
from kotlinrunner.types import EXIT_SENTINEL

logger = logging.getLogger(__name__)

LineCallback = Callable[[str, bool], None]
ExitCallback = Callable[[int], None]
CleanupCallback = Callable[[], None]

DEFAULT_POLL_INTERVAL = 0.05
DEFAULT_DRAIN_TIMEOUT = 2.0


class RunInstance:
    """
    Live handle for one spawned process.

    Owns the Popen object plus four threads: two drains, one waiter and a
    supervisor that joins the others and then finalizes. Created by
    ProcessSession.start().
    """

    def __init__(
        self,
        process: subprocess.Popen,
        command: Sequence[str],
        working_dir: Path,
        on_line: LineCallback,
        on_exit: Optional[ExitCallback] = None,
        cleanup: Optional[CleanupCallback] = None,
        tree: Optional[ProcessTree] = None,
        grace_interval: float = DEFAULT_GRACE_INTERVAL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
    ) -> None:
        self.process = process
        self.command = list(command)
        self.working_dir = working_dir
        self.started_at = time.monotonic()
        self.finished_at: Optional[float] = None

        self._on_line = on_line
        self._on_exit = on_exit
        self._cleanup = cleanup
        self._tree = tree or ProcessTree()
        self._grace_interval = grace_interval
        self._poll_interval = poll_interval
        self._drain_timeout = drain_timeout
        # start_new_session makes the child its own group leader
        self._process_group = process.pid if os.name == "posix" else None

        self._lock = threading.Lock()
        self._kill_lock = threading.Lock()
        self._cancelled = threading.Event()
        self._finished = threading.Event()
        self._exit_code: Optional[int] = None

        prefix = f"kotlinrunner-{process.pid}"
        self._drains = [
            threading.Thread(target=self._drain, args=(process.stdout, False), name=f"{prefix}-stdout", daemon=True),
            threading.Thread(target=self._drain, args=(process.stderr, True), name=f"{prefix}-stderr", daemon=True),
        ]
        self._waiter = threading.Thread(target=self._wait, name=f"{prefix}-wait", daemon=True)
        self._supervisor = threading.Thread(target=self._supervise, name=f"{prefix}-supervisor", daemon=True)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def finished(self) -> bool:
        """True once the process is reaped and all resources are released."""
        return self._finished.is_set()

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def start(self) -> None:
        for thread in (*self._drains, self._waiter, self._supervisor):
            thread.start()

    def cancel(self) -> bool:
        """
        Stop the run and kill the process tree.

        Idempotent: returns True only for the call that requested cancellation.
        Returns after the kill has been issued; reaping is observed by the
        wait thread.
        """
        with self._lock:
            if self._finished.is_set() or self._cancelled.is_set():
                return False
            self._cancelled.set()
        logger.info(f"Cancelling process {self.pid}")
        self._kill_tree()
        return True

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until teardown completes. Returns the exit code, or None on timeout."""
        if not self._finished.wait(timeout):
            return None
        return self._exit_code

    def _drain(self, stream: Optional[IO[str]], is_error: bool) -> None:
        """Forward one stream line by line until it closes or the run is cancelled."""
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, ""):
                if self._cancelled.is_set():
                    break
                text = raw[:-1] if raw.endswith("\n") else raw
                try:
                    self._on_line(text, is_error)
                except Exception:
                    logger.exception("Output line callback failed")
        except (OSError, ValueError) as e:
            # A broken stream ends the drain; the exit code stays authoritative
            logger.warning(str(StreamError("stderr" if is_error else "stdout", str(e))))

    def _wait(self) -> None:
        while True:
            try:
                code = self.process.wait(timeout=self._poll_interval)
            except subprocess.TimeoutExpired:
                if self._cancelled.is_set():
                    self._kill_tree()
                    self._exit_code = EXIT_SENTINEL
                    return
                continue
            self._exit_code = EXIT_SENTINEL if self._cancelled.is_set() else code
            return

    def _supervise(self) -> None:
        exit_code = EXIT_SENTINEL
        try:
            self._waiter.join()
            if self._exit_code is not None:
                exit_code = self._exit_code
            self._join_drains()
        finally:
            try:
                self._finalize()
            finally:
                self._notify_exit(exit_code)

    def _notify_exit(self, exit_code: int) -> None:
        logger.info(f"Process {self.pid} finished with exit code {exit_code}")
        if self._on_exit is not None:
            try:
                self._on_exit(exit_code)
            except Exception:
                logger.exception("Exit callback failed")

    def _join_drains(self) -> None:
        deadline = time.monotonic() + self._drain_timeout
        for thread in self._drains:
            thread.join(max(0.0, deadline - time.monotonic()))
        if not any(thread.is_alive() for thread in self._drains):
            return
        # A descendant still holds the pipes open after the root exited
        logger.debug(f"Output of {self.pid} still open after exit; killing remaining processes")
        self._kill_tree()
        for thread in self._drains:
            thread.join(self._drain_timeout)
            if thread.is_alive():
                logger.warning(f"{thread.name} did not finish; leaving it detached")

    def _finalize(self) -> None:
        try:
            if self.process.poll() is None:
                self._kill_tree()
                try:
                    self.process.wait(timeout=self._drain_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Process {self.pid} did not exit after kill")
        finally:
            try:
                self._close_streams()
                if self._cleanup is not None:
                    try:
                        self._cleanup()
                    except OSError as e:
                        logger.debug(f"Cleanup for {self.pid} failed: {e}")
                    except Exception:
                        logger.exception(f"Cleanup callback for {self.pid} failed")
            finally:
                self.finished_at = time.monotonic()
                self._finished.set()

    def _close_streams(self) -> None:
        streams = (self.process.stdout, self.process.stderr)
        for stream, thread in zip(streams, self._drains):
            # Closing under a blocked reader would block on the buffer lock
            if stream is None or thread.is_alive():
                continue
            try:
                stream.close()
            except OSError as e:
                logger.debug(f"Closing stream of {self.pid} failed: {e}")

    def _kill_tree(self) -> None:
        with self._kill_lock:
            try:
                self._tree.kill_tree(self.process, self._grace_interval, self._process_group)
            except (OSError, TeardownError, psutil.Error) as e:
                logger.warning(f"Teardown failed for pid {self.pid}: {e}")


class ProcessSession:
    """
    Spawns external processes and streams their output.

    Usage:
        session = ProcessSession()
        instance = session.start(
            ["kotlinc", "-script", "/tmp/x/script.kts"],
            working_dir="/tmp/x",
            on_line=lambda text, is_error: print(text),
            on_exit=lambda code: print("exit", code),
        )
        session.cancel(instance)
    """

    def __init__(
        self,
        grace_interval: float = DEFAULT_GRACE_INTERVAL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
        tree: Optional[ProcessTree] = None,
        env: Optional[dict] = None,
    ) -> None:
        self.grace_interval = grace_interval
        self.poll_interval = poll_interval
        self.drain_timeout = drain_timeout
        self.tree = tree or ProcessTree()
        self.env = env

    def start(
        self,
        command: Sequence[str],
        working_dir: Union[str, Path],
        on_line: LineCallback,
        on_exit: Optional[ExitCallback] = None,
        cleanup: Optional[CleanupCallback] = None,
    ) -> RunInstance:
        """
        Spawn ``command`` in ``working_dir`` and start streaming its output.

        Args:
            command: Argument vector
            working_dir: Directory to run in
            on_line: Called as on_line(text, is_error) for every complete line
            on_exit: Called once with the exit code after teardown
            cleanup: Called once during teardown (e.g. delete the working file)

        Returns:
            The live RunInstance

        Raises:
            SpawnError: If the executable is missing or the OS refuses to start it
        """
        command = list(command)
        if not command:
            raise SpawnError(command, "empty command")

        kwargs = {}
        if os.name == "posix":
            kwargs["start_new_session"] = True

        try:
            process = subprocess.Popen(
                command,
                cwd=str(working_dir),
                env=self.env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **kwargs,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise SpawnError(command, str(e)) from e

        logger.info(f"Started process {process.pid}: {' '.join(command)}")

        instance = RunInstance(
            process,
            command,
            Path(working_dir),
            on_line=on_line,
            on_exit=on_exit,
            cleanup=cleanup,
            tree=self.tree,
            grace_interval=self.grace_interval,
            poll_interval=self.poll_interval,
            drain_timeout=self.drain_timeout,
        )
        instance.start()
        return instance

    def cancel(self, instance: RunInstance) -> bool:
        """Cancel a running instance. No-op for finished instances."""
        return instance.cancel()
