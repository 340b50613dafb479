"""
Source location extraction from compiler and runtime output.

Two diagnostic shapes are recognised, each by its own scan:

- Compile-time errors from kotlinc::

      script.kts:12:5: error: type mismatch

  The clickable span is ``script.kts:12:5`` (the trailing ``error`` is not part of it).

- Runtime stack trace frames::

      at App.run(script.kts:47)

  The clickable span is ``script.kts:47`` and the column is always 1.

Compile-time matches take precedence: when both scans claim overlapping text,
the runtime match is dropped.
"""
import re
from typing import List, Optional

from kotlinrunner.types import SCRIPT_FILENAME, LocationMatch, LocationRef

_FILENAME = re.escape(SCRIPT_FILENAME)

COMPILE_ERROR_PATTERN = re.compile(rf"\b({_FILENAME}:(\d+):(\d+)):\s+error\b")
RUNTIME_FRAME_PATTERN = re.compile(rf"\(({_FILENAME}:(\d+))\)")

COMPILE = "compile"
RUNTIME = "runtime"


def _positive_int(value: Optional[str]) -> int:
    """Parse a captured number, falling back to 1 when it is unusable."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return 1
    return number if number >= 1 else 1


def find_compile_errors(text: str) -> List[LocationMatch]:
    """Find ``script.kts:LINE:COL: error`` locations in a line of output."""
    matches = []
    for match in COMPILE_ERROR_PATTERN.finditer(text):
        matches.append(LocationMatch(
            start=match.start(1),
            end=match.end(1),
            span=match.group(1),
            location=LocationRef(_positive_int(match.group(2)), _positive_int(match.group(3))),
            kind=COMPILE,
        ))
    return matches


def find_runtime_frames(text: str) -> List[LocationMatch]:
    """Find ``(script.kts:LINE)`` stack frame locations in a line of output."""
    matches = []
    for match in RUNTIME_FRAME_PATTERN.finditer(text):
        matches.append(LocationMatch(
            start=match.start(1),
            end=match.end(1),
            span=match.group(1),
            location=LocationRef(_positive_int(match.group(2)), 1),
            kind=RUNTIME,
        ))
    return matches


def extract_locations(text: str) -> List[LocationMatch]:
    """
    Extract every source location from one line of output.

    Args:
        text: A single output line (no trailing newline)

    Returns:
        Non-overlapping matches ordered left to right. Empty for plain text.
    """
    accepted: List[LocationMatch] = []
    for candidate in find_compile_errors(text) + find_runtime_frames(text):
        if any(candidate.start < kept.end and kept.start < candidate.end for kept in accepted):
            continue
        accepted.append(candidate)
    accepted.sort(key=lambda m: m.start)
    return accepted


def has_locations(text: str) -> bool:
    """True when the line carries at least one navigable location."""
    return bool(COMPILE_ERROR_PATTERN.search(text) or RUNTIME_FRAME_PATTERN.search(text))
