"""
Outcome of best-effort side effects.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Outcome:
    """Result of an operation that must never fail its caller.

    Callers on the primary path may ignore it; tests and callers that care
    can inspect ``ok`` and ``error``.
    """
    ok: bool
    value: Optional[str] = None
    error: Optional[Exception] = None

    @classmethod
    def success(cls, value: Optional[str] = None) -> "Outcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Exception) -> "Outcome":
        return cls(ok=False, error=error)
