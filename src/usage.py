"""Token usage accounting across generation attempts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


@dataclass(frozen=True)
class UsageRecord:
    """Token counts for one or more completion calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self):
        for name in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative int, got {value!r}")

    def __add__(self, other: UsageRecord) -> UsageRecord:
        if not isinstance(other, UsageRecord):
            return NotImplemented
        return UsageRecord(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_api(cls, usage: Any) -> UsageRecord:
        """Build from an Anthropic ``Usage`` object (input/output tokens)."""
        if usage is None:
            return cls()
        prompt = int(getattr(usage, "input_tokens", 0) or 0)
        completion = int(getattr(usage, "output_tokens", 0) or 0)
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


ZERO_USAGE = UsageRecord()


def sum_usage(records: Iterable[UsageRecord | None]) -> UsageRecord:
    """Field-wise sum, ignoring missing records."""
    total = ZERO_USAGE
    for record in records:
        if record is not None:
            total = total + record
    return total


def aggregate_usage(candidates: Iterable[Any]) -> UsageRecord:
    """Sum usage over every terminal candidate, losers and failures included.

    Tokens were spent whether or not the attempt won, so nothing is
    filtered by outcome; only candidates that never reported usage are skipped.
    """
    return sum_usage(getattr(c, "usage", None) for c in candidates)
