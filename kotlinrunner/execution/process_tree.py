"""
Process tree termination.

``kotlinc -script`` starts a JVM that may start further children, so killing
only the root would orphan them. Termination is two-phase: request graceful
termination of every descendant and of the root, wait a short grace
interval, then force-kill whatever survived.

Descendants are enumerated with psutil. On POSIX the root is started in its
own session, so its process group is signalled as well; that also reaches
grandchildren that were re-parented after the root exited.
"""
import logging
import os
import signal
import subprocess
from typing import List, Optional

import psutil

from kotlinrunner.errors import TeardownError

logger = logging.getLogger(__name__)

DEFAULT_GRACE_INTERVAL = 0.12


class ProcessTree:
    """Uniform descendant enumeration and termination across platforms."""

    def enumerate_descendants(self, pid: int) -> List[psutil.Process]:
        """Return all live descendants of ``pid`` (empty if it is gone)."""
        try:
            return psutil.Process(pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return []
        except psutil.AccessDenied as e:
            logger.debug(f"Cannot enumerate children of {pid}: {e}")
            return []

    def terminate(self, pid: int, forceful: bool = False) -> bool:
        """
        Signal one process.

        Returns:
            True if a signal was delivered, False if the process was already gone

        Raises:
            TeardownError: If the OS refused the signal
        """
        try:
            process = psutil.Process(pid)
            if forceful:
                process.kill()
            else:
                process.terminate()
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as e:
            raise TeardownError(pid, str(e)) from e

    def signal_group(self, pgid: int, forceful: bool = False) -> bool:
        """Signal a whole POSIX process group. No-op elsewhere."""
        if os.name != "posix":
            return False
        sig = signal.SIGKILL if forceful else signal.SIGTERM
        try:
            os.killpg(pgid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            raise TeardownError(pgid, str(e)) from e

    def kill_tree(
        self,
        process: subprocess.Popen,
        grace_interval: float = DEFAULT_GRACE_INTERVAL,
        process_group: Optional[int] = None,
    ) -> None:
        """
        Terminate ``process`` and all of its descendants.

        The root is signalled through its Popen object so that reaping stays
        with the Popen owner. Failures are logged and swallowed: teardown is
        best-effort cleanup.

        Args:
            process: The spawned root process
            grace_interval: Seconds to wait between graceful and forced termination
            process_group: POSIX process group id to signal alongside the tree
        """
        descendants = self.enumerate_descendants(process.pid)
        logger.debug(f"Killing process tree of {process.pid} ({len(descendants)} descendants)")

        # Phase 1: graceful
        for child in descendants:
            self._signal_quietly(child.pid, forceful=False)
        self._signal_root(process, forceful=False)
        if process_group is not None:
            self._signal_group_quietly(process_group, forceful=False)

        _, alive = psutil.wait_procs(descendants, timeout=grace_interval)
        try:
            process.wait(timeout=grace_interval if not alive else 0.01)
        except subprocess.TimeoutExpired:
            pass

        # Phase 2: forced, including children spawned during the grace interval
        survivors = {p.pid: p for p in alive}
        for child in self.enumerate_descendants(process.pid):
            survivors.setdefault(child.pid, child)
        for pid in survivors:
            self._signal_quietly(pid, forceful=True)
        self._signal_root(process, forceful=True)
        if process_group is not None:
            self._signal_group_quietly(process_group, forceful=True)

        if survivors:
            psutil.wait_procs(list(survivors.values()), timeout=grace_interval)

    def _signal_root(self, process: subprocess.Popen, forceful: bool) -> None:
        if process.poll() is not None:
            return
        try:
            if forceful:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Teardown failed for pid {process.pid}: {e}")

    def _signal_quietly(self, pid: int, forceful: bool) -> None:
        try:
            self.terminate(pid, forceful=forceful)
        except TeardownError as e:
            logger.warning(str(e))

    def _signal_group_quietly(self, pgid: int, forceful: bool) -> None:
        try:
            self.signal_group(pgid, forceful=forceful)
        except TeardownError as e:
            logger.debug(str(e))
