"""
Token counting and usage tracking.

Extracts token counts from completion API responses.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by the completion API.
    
    Contains exact token counts without estimation or model-specific logic.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0
    reported_total: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used, preferring the provider's own total."""
        return self.reported_total or (self.prompt_tokens + self.completion_tokens)

    @classmethod
    def from_response_usage(cls, usage: Any) -> "TokenUsage":
        """Build from a response ``usage`` block; a missing block counts as zero."""
        if usage is None:
            return cls()
        return cls(
            prompt_tokens=getattr(usage, "prompt_tokens", None) or 0,
            completion_tokens=getattr(usage, "completion_tokens", None) or 0,
            reported_total=getattr(usage, "total_tokens", None) or 0,
        )
