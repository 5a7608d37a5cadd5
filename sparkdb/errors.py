"""Exception types raised by the data layer.

Most of the layer fails open (the dispatcher, interpreter and key-space store
return empty rows instead of raising). These types cover the places that do
raise: cluster stack exhaustion and the strict-shape development switch.
"""
from __future__ import annotations
from typing import List, Optional


class SparkDBError(Exception):
    """Base class for data layer errors."""


class StackExhaustedError(SparkDBError):
    """Every connection in the cluster stack failed (or the stack was empty)."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None,
                 attempts: Optional[List[str]] = None):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = list(attempts or [])


class UnhandledQueryShape(SparkDBError):
    """Raised by the local interpreter in strict mode for unrecognized queries."""

    def __init__(self, query: str):
        super().__init__(f"No local handler for query shape: {query[:80]}")
        self.query = query
