"""
Command building utilities for script execution.

Provides the logic for constructing the ``kotlinc -script`` invocation,
including the platform-specific launcher and classpath probing.
"""
import logging
import os
from pathlib import Path, PureWindowsPath
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_KOTLINC = "kotlinc"

# Default install location probed last on Windows.
DEFAULT_WINDOWS_LIB_DIR = r"C:\Program Files\Kotlinc\lib"

# Jar name prefixes needed by the scripting host (main-kts is optional but useful).
SCRIPTING_JAR_PREFIXES = (
    "kotlin-stdlib",
    "kotlin-scripting-jvm-host",
    "kotlin-scripting-jvm",
    "kotlin-script-runtime",
    "kotlin-main-kts",
)


def is_windows_platform(os_name: Optional[str] = None) -> bool:
    """True when the (given or current) OS identity is Windows."""
    return (os_name or os.name) == "nt"


def _scripting_jars(lib_dir: Path) -> List[Path]:
    """Return the scripting jars inside ``lib_dir`` (empty if none or not a directory)."""
    if not lib_dir.is_dir():
        return []
    try:
        entries = sorted(lib_dir.iterdir())
    except OSError as e:
        logger.debug(f"Cannot list {lib_dir}: {e}")
        return []
    jars = []
    for entry in entries:
        name = entry.name.lower()
        if name.endswith(".jar") and name.startswith(SCRIPTING_JAR_PREFIXES):
            jars.append(entry)
    return jars


def _lib_dir_near_executable(kotlinc_path: str) -> Optional[Path]:
    """Map ``.../bin/kotlinc(.bat)`` to ``.../lib``; None for any other layout."""
    # Windows-style paths are parsed as such so probing works on any host
    if "\\" in kotlinc_path:
        win_exe = PureWindowsPath(kotlinc_path)
        if win_exe.parent.name.lower() == "bin":
            return Path(str(win_exe.parent.parent / "lib"))
        return None
    bin_dir = Path(kotlinc_path).absolute().parent
    if bin_dir.name.lower() == "bin":
        return bin_dir.parent / "lib"
    return None


def candidate_lib_dirs(
    kotlinc_path: Optional[str] = None,
    kotlin_home: Optional[str] = None,
    fallback_lib_dir: Optional[str] = DEFAULT_WINDOWS_LIB_DIR,
) -> List[Path]:
    """
    List the directories probed for Kotlin scripting jars, in search order.

    Order:
    1. ``<kotlinc_path>/../lib`` when the executable lives in a ``bin`` directory
    2. ``$KOTLIN_HOME/lib``
    3. The default install location
    """
    candidates: List[Path] = []
    if kotlinc_path:
        near = _lib_dir_near_executable(kotlinc_path)
        if near is not None:
            candidates.append(near)
    if kotlin_home:
        candidates.append(Path(kotlin_home) / "lib")
    if fallback_lib_dir:
        candidates.append(Path(fallback_lib_dir))
    return candidates


def resolve_kotlin_lib_classpath(
    kotlinc_path: Optional[str] = None,
    kotlin_home: Optional[str] = None,
    fallback_lib_dir: Optional[str] = DEFAULT_WINDOWS_LIB_DIR,
    separator: str = ";",
) -> Optional[str]:
    """
    Build a classpath from the first lib directory holding scripting jars.

    Args:
        kotlinc_path: Custom kotlinc executable, if configured
        kotlin_home: Kotlin installation root (usually $KOTLIN_HOME)
        fallback_lib_dir: Last-resort lib directory
        separator: Classpath separator (Windows uses ';')

    Returns:
        Joined absolute jar paths, or None when no directory qualifies
    """
    for lib_dir in candidate_lib_dirs(kotlinc_path, kotlin_home, fallback_lib_dir):
        jars = _scripting_jars(lib_dir)
        if jars:
            logger.debug(f"Using {len(jars)} scripting jars from {lib_dir}")
            return separator.join(str(jar.absolute()) for jar in jars)
    logger.debug("No Kotlin lib directory found; running without -cp")
    return None


def build_kotlinc_command(
    script_path: str,
    kotlinc_path: Optional[str] = None,
    kotlin_home: Optional[str] = None,
    os_name: Optional[str] = None,
    fallback_lib_dir: Optional[str] = DEFAULT_WINDOWS_LIB_DIR,
) -> List[str]:
    """
    Build the ``kotlinc -script <file>`` argument vector.

    On Windows the executable is launched through ``cmd /c`` so that
    ``kotlinc.bat`` runs, and a ``-cp`` with the scripting jars is injected
    when one can be found. Elsewhere the executable is exec'd directly.

    Args:
        script_path: Absolute path to the working file
        kotlinc_path: Custom executable (blank means "use kotlinc from PATH")
        kotlin_home: Installation root used only for the Windows classpath probe
        os_name: OS identity override (defaults to os.name)
        fallback_lib_dir: Last-resort lib directory for the classpath probe

    Returns:
        The argument vector
    """
    custom = kotlinc_path.strip() if kotlinc_path and kotlinc_path.strip() else None
    executable = custom or DEFAULT_KOTLINC
    windows = is_windows_platform(os_name)

    launcher = ["cmd", "/c", executable] if windows else [executable]

    args: List[str] = []
    if windows:
        classpath = resolve_kotlin_lib_classpath(custom, kotlin_home, fallback_lib_dir)
        if classpath:
            # -cp must come before -script
            args.extend(["-cp", classpath])
    args.extend(["-script", script_path])

    return launcher + args


def format_command(command: Sequence[str]) -> str:
    """Render an argument vector for display."""
    return " ".join(f'"{part}"' if " " in part else part for part in command)
