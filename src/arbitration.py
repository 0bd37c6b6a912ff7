"""
Arbitration: choose one winner among preflight survivors.

Policy, in order:
  1. nobody passed    → first entry of the unfiltered list (degraded)
  2. one passed       → that candidate, no judge call
  3. several passed   → one judge call over the formatted candidates;
                        any failure, unparseable reply or out-of-range
                        index falls back to the first passing candidate
                        (degraded)

The fallback is always position 0, never "fewest warnings". Degraded
outcomes are logged at WARNING and flagged on the result; arbitration
itself never raises on judge trouble.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping

from artifact_bundle import MANIFEST, as_text, background_entry, parse_manifest
from candidates import PreflightResult
from pipeline_config import JudgeLimits
from usage import UsageRecord

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"-?\d+")

UI_FILE = "popup.js"


@dataclass
class ArbitrationResult:
    """Winner's original index and how it was chosen."""

    index: int
    judged: bool = False
    degraded_reason: str | None = None
    usage: UsageRecord | None = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None


def _truncate(text: str | None, limit: int) -> str:
    if not text:
        return "(missing)"
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... [truncated]"


def format_candidate(position: int, bundle: Mapping, limits: JudgeLimits) -> str:
    """Key artifacts of one candidate: manifest, background logic, UI logic.

    The background file is the manifest's service worker, as the linter sees it.
    """
    background = background_entry(parse_manifest(bundle))
    return (
        f"=== CANDIDATE {position} ===\n"
        f"--- {MANIFEST} ---\n{_truncate(as_text(bundle.get(MANIFEST)), limits.manifest_chars)}\n"
        f"--- {background} ---\n{_truncate(as_text(bundle.get(background)), limits.background_chars)}\n"
        f"--- {UI_FILE} ---\n{_truncate(as_text(bundle.get(UI_FILE)), limits.ui_chars)}"
    )


def format_candidates(passing: list[PreflightResult], limits: JudgeLimits) -> str:
    return "\n\n".join(format_candidate(i, r.bundle, limits) for i, r in enumerate(passing))


def parse_judge_choice(choice, count: int) -> int | None:
    """Position chosen by the judge, or None if unusable.

    Accepts an int or text containing one (first integer wins).
    """
    if isinstance(choice, bool):
        return None
    if isinstance(choice, int):
        value = choice
    elif isinstance(choice, str):
        match = _INT_RE.search(choice)
        if match is None:
            return None
        value = int(match.group())
    else:
        return None
    return value if 0 <= value < count else None


def _degrade(result: ArbitrationResult, reason: str) -> ArbitrationResult:
    result.degraded_reason = reason
    logger.warning("Arbitration degraded, using candidate #%d: %s", result.index, reason)
    return result


async def select_winner(
    service,
    results: list[PreflightResult],
    prompt: str,
    *,
    limits: JudgeLimits | None = None,
) -> ArbitrationResult:
    """Pick the winning candidate's original index.

    Args:
        service: GenerationService providing ``judge``.
        results: Preflight results for every successful candidate, unfiltered.
        prompt: Original user prompt, shown to the judge.
        limits: Truncation applied to each file in the judge prompt.

    Raises:
        ValueError: if ``results`` is empty (nothing to choose from).
    """
    if not results:
        raise ValueError("select_winner needs at least one candidate")
    limits = limits or JudgeLimits()

    passing = [r for r in results if r.passed]
    if not passing:
        return _degrade(
            ArbitrationResult(index=results[0].index),
            "no candidate passed preflight",
        )
    if len(passing) == 1:
        return ArbitrationResult(index=passing[0].index)

    fallback = ArbitrationResult(index=passing[0].index, judged=True)
    try:
        verdict = await service.judge(format_candidates(passing, limits), prompt, len(passing))
    except Exception as e:
        fallback.usage = getattr(e, "usage", None)
        return _degrade(fallback, f"judge call failed: {e}")

    fallback.usage = verdict.usage
    position = parse_judge_choice(verdict.choice, len(passing))
    if position is None:
        return _degrade(fallback, f"unusable judge reply {verdict.choice!r}")

    winner = passing[position]
    logger.info("Judge picked position %d (candidate #%d)", position, winner.index)
    return ArbitrationResult(index=winner.index, judged=True, usage=verdict.usage)
