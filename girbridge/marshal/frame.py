"""
Per-call scratch state.

A ``CallFrame`` lives for exactly one boundary crossing. It keeps ctypes
buffers alive while native code may read them, and runs cleanups (freeing
temporary allocations, dropping call-scoped trampolines) when the crossing
ends.

Conversions that hand something to the callee (an extra reference, a copy,
an allocation with transfer ``full``) register an undo action. Undo actions
run on close only if the frame was never committed, i.e. the native call
was not made.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .._logging import scoped_logger

log = scoped_logger("marshal")


@dataclass(frozen=True)
class Site:
    """Where a value is being marshalled, for error messages."""

    callable: str = "<value>"
    parameter: str = "value"

    def element(self, index: int) -> Site:
        return Site(self.callable, f"{self.parameter}[{index}]")

    def details(self, **extra: Any) -> dict[str, Any]:
        details: dict[str, Any] = {"callable": self.callable, "parameter": self.parameter}
        details.update(extra)
        return details

    def __str__(self) -> str:
        return f"{self.callable}: parameter '{self.parameter}'"


class CallFrame:
    """Buffers and cleanups scoped to one call."""

    def __init__(self, name: str = "<value>"):
        self.name = name
        self._keep: list[Any] = []
        self._cleanups: list[Callable[[], None]] = []
        self._undo: list[Callable[[], None]] = []
        self._committed = False
        self._closed = False

    def site(self, parameter: str) -> Site:
        return Site(self.name, parameter)

    def keep(self, obj: Any) -> Any:
        """Hold a reference to ``obj`` until the frame closes."""
        self._keep.append(obj)
        return obj

    def defer(self, cleanup: Callable[[], None]) -> None:
        """Run ``cleanup`` when the frame closes (last registered runs first)."""
        self._cleanups.append(cleanup)

    def undo(self, action: Callable[[], None]) -> None:
        """Run ``action`` on close unless the frame has been committed."""
        if not self._committed:
            self._undo.append(action)

    def commit(self) -> None:
        """Mark the native call as made; undo actions are dropped."""
        self._committed = True
        self._undo.clear()

    def close(self) -> None:
        """Run cleanups and drop kept buffers. Idempotent."""
        if self._closed:
            return
        self._closed = True
        errors: list[BaseException] = []
        actions = self._cleanups + self._undo
        self._cleanups = []
        self._undo = []
        while actions:
            cleanup = actions.pop()
            try:
                cleanup()
            except Exception as e:
                log.error(
                    "Cleanup failed after native call",
                    exc_info=True,
                    extra={"callable": self.name},
                )
                errors.append(e)
        self._keep.clear()
        if errors:
            raise errors[0]

    def __enter__(self) -> CallFrame:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
