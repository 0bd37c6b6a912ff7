"""
ExtensionForge error taxonomy.

  ExtensionForgeError
    GenerationError              — a single service call failed (non-retryable)
      TransportError             — network/timeout/429/5xx, retried locally
      StructuralGenerationError  — model broke the submission contract
    AllCandidatesFailedError     — zero of N fan-out attempts succeeded

Errors raised after the API already billed a response carry that usage,
so cost accounting stays correct for failed attempts.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from usage import UsageRecord


class ExtensionForgeError(Exception):
    """Base class for all pipeline errors."""


class GenerationError(ExtensionForgeError):
    """A generation service call failed."""

    def __init__(self, message: str, usage: UsageRecord | None = None):
        super().__init__(message)
        self.usage = usage


class TransportError(GenerationError):
    """Transient transport failure (connection reset, timeout, 429, 5xx)."""


class StructuralGenerationError(GenerationError):
    """The model reply violated the submission contract. Never retried."""


class AllCandidatesFailedError(ExtensionForgeError):
    """Every fan-out attempt failed; the job must be marked failed."""

    def __init__(self, candidates: list, usage: UsageRecord | None = None):
        reasons = "; ".join(
            f"#{c.index}: {c.reason}" for c in candidates if c.reason
        )
        super().__init__(
            f"All {len(candidates)} candidate(s) failed"
            + (f" ({reasons})" if reasons else "")
        )
        self.candidates = candidates
        self.usage = usage
