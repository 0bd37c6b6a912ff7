"""
Closed-loop validation and repair of a single candidate bundle.

  lint → (findings?) → repair call → merge patch over bundle → lint → ...

Bounded to ``max_rounds`` repair calls (default 2). A failing repair call
ends the loop early with the best bundle obtained so far; the loop never
raises GenerationError and never runs unbounded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from artifact_bundle import Bundle, merge_bundles
from extension_linter import Finding, lint_bundle, summarize
from usage import ZERO_USAGE, UsageRecord

logger = logging.getLogger(__name__)

MAX_REPAIR_ROUNDS = 2


@dataclass
class RepairResult:
    """Outcome of validate_and_repair."""

    bundle: Bundle
    was_repaired: bool = False
    rounds: int = 0
    usage: UsageRecord = ZERO_USAGE
    findings: list[Finding] = field(default_factory=list)  # left after the last round
    error: str | None = None  # set when a repair call failed


async def validate_and_repair(
    service,
    prompt: str,
    bundle: Bundle,
    *,
    max_rounds: int = MAX_REPAIR_ROUNDS,
) -> RepairResult:
    """Lint a bundle and patch it through the repair service.

    Args:
        service: GenerationService providing ``repair``.
        prompt: The original user request.
        bundle: Candidate bundle; never mutated.
        max_rounds: Upper bound on repair calls.

    Returns:
        RepairResult with the final bundle, usage spent on repairs, and
        whatever findings remain.
    """
    current = bundle
    usage = ZERO_USAGE
    rounds = 0
    findings = lint_bundle(current)

    while findings and rounds < max_rounds:
        logger.info(
            "Repair round %d/%d: %s", rounds + 1, max_rounds, summarize(findings)
        )
        try:
            output = await service.repair(prompt, current, findings)
        except Exception as e:
            spent = getattr(e, "usage", None)
            if spent is not None:
                usage = usage + spent
            logger.warning("Repair call failed, keeping best bundle so far: %s", e)
            return RepairResult(
                bundle=current,
                was_repaired=rounds > 0,
                rounds=rounds,
                usage=usage,
                findings=findings,
                error=str(e),
            )

        rounds += 1
        usage = usage + output.usage
        current = merge_bundles(current, output.partial_bundle)
        findings = lint_bundle(current)

    if findings:
        logger.info("Repair finished with %s remaining", summarize(findings))
    return RepairResult(
        bundle=current,
        was_repaired=rounds > 0,
        rounds=rounds,
        usage=usage,
        findings=findings,
    )
