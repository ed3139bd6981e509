"""Taskwire — task-correlation messaging for workflow orchestration.

Dispatches request-leg messages to external workers, tracks each
in-flight execution under a correlation identifier, and reconciles the
asynchronous response legs exactly once.
"""

__version__ = "1.0.0"
