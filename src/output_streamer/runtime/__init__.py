"""Runtime module for running the captured command.

This module provides isolated process execution with reliable termination,
feeding the command's stdout/stderr into the broadcast engine.
"""

from __future__ import annotations

from .process_runner import ProcessRunner, ProcessSpec, outcome_for_returncode

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
    "outcome_for_returncode",
]
