"""Utility modules for kotlinrunner."""

from .commands import build_kotlinc_command, format_command, resolve_kotlin_lib_classpath
from .workspace import ScriptWorkspace

__all__ = [
    "ScriptWorkspace",
    "build_kotlinc_command",
    "format_command",
    "resolve_kotlin_lib_classpath",
]
