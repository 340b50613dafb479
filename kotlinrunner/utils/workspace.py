"""
Working file management.

Each run writes the script to ``script.kts`` inside a fresh temporary
directory. The fixed basename keeps compiler diagnostics predictable
(``script.kts:LINE:COL``) so they can be pattern-matched.
"""
import atexit
import logging
import shutil
import tempfile
import threading
import weakref
from pathlib import Path
from typing import Optional, Set

from kotlinrunner.types import SCRIPT_FILENAME

logger = logging.getLogger(__name__)

TEMP_DIR_PREFIX = "kotlinrunner-"

_live_workspaces: "weakref.WeakSet[ScriptWorkspace]" = weakref.WeakSet()


@atexit.register
def _remove_all_workspaces() -> None:
    """Interpreter shutdown backstop for working files still on disk."""
    for workspace in list(_live_workspaces):
        workspace.remove_all()


class ScriptWorkspace:
    """Creates and removes run-scoped working files."""

    def __init__(self, base_dir: Optional[str] = None) -> None:
        self.base_dir = base_dir
        self._lock = threading.Lock()
        self._live_dirs: Set[Path] = set()
        _live_workspaces.add(self)

    def create(self, script_text: str) -> Path:
        """
        Write the script to ``<fresh temp dir>/script.kts``.

        Returns:
            Absolute path of the working file

        Raises:
            OSError: If the directory or file cannot be written
        """
        directory = Path(tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX, dir=self.base_dir)).absolute()
        with self._lock:
            self._live_dirs.add(directory)
        path = directory / SCRIPT_FILENAME
        try:
            path.write_text(script_text, encoding="utf-8")
        except OSError:
            self._remove_dir(directory)
            raise
        logger.debug(f"Wrote working file {path}")
        return path

    def remove(self, script_path: Path) -> None:
        """Best-effort removal of the working file and its directory."""
        self._remove_dir(Path(script_path).parent)

    def remove_all(self) -> None:
        """Remove every directory still registered (interpreter shutdown backstop)."""
        with self._lock:
            directories = list(self._live_dirs)
        for directory in directories:
            self._remove_dir(directory)

    @property
    def live_dirs(self) -> Set[Path]:
        with self._lock:
            return set(self._live_dirs)

    def _remove_dir(self, directory: Path) -> None:
        with self._lock:
            self._live_dirs.discard(directory)
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            # Deletion failure is non-fatal
            logger.debug(f"Could not remove working directory {directory}: {e}")
