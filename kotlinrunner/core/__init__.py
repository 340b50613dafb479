"""Pure helpers: output location extraction and navigation offsets."""

from .locations import (
    COMPILE_ERROR_PATTERN,
    RUNTIME_FRAME_PATTERN,
    extract_locations,
    find_compile_errors,
    find_runtime_frames,
    has_locations,
)
from .navigation import compute_char_offset, line_at

__all__ = [
    "COMPILE_ERROR_PATTERN",
    "RUNTIME_FRAME_PATTERN",
    "compute_char_offset",
    "extract_locations",
    "find_compile_errors",
    "find_runtime_frames",
    "has_locations",
    "line_at",
]
