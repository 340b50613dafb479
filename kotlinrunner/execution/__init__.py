"""Execution engine: process sessions, tree teardown and the run controller."""

from .controller import RunController
from .process_tree import ProcessTree
from .session import ProcessSession, RunInstance

__all__ = [
    "ProcessSession",
    "ProcessTree",
    "RunController",
    "RunInstance",
]
