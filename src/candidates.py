"""
Candidate fan-out and preflight filtering.

generate_candidates launches exactly N independent attempts
(Generate → Repair Loop) as asyncio tasks and joins them all. An attempt
that raises becomes a failed Candidate; it never aborts its siblings or
the join. Attempts share no mutable state: the Blueprint is frozen and
each task owns its bundle.

preflight_filter re-lints every successful candidate and marks it as
passing iff it has zero critical findings. Warnings do not gate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from artifact_bundle import Bundle
from extension_linter import Finding, has_critical, lint_bundle
from generation_service import ExtensionRequest, GenerationSpec
from repair_loop import MAX_REPAIR_ROUNDS, validate_and_repair
from usage import UsageRecord

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Candidate:
    """Final state of one fan-out attempt."""

    index: int
    outcome: Outcome
    bundle: Bundle | None = None
    usage: UsageRecord | None = None
    reason: str = ""
    was_repaired: bool = False
    repair_rounds: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCESS


@dataclass(frozen=True)
class PreflightResult:
    """A successful candidate after the critical-findings gate."""

    index: int
    bundle: Bundle
    passed: bool
    findings: tuple[Finding, ...] = field(default_factory=tuple)


async def run_attempt(
    service,
    request: ExtensionRequest,
    blueprint,
    index: int,
    *,
    repair_rounds: int = MAX_REPAIR_ROUNDS,
) -> Candidate:
    """One attempt: generate, then validate-and-repair. Never raises Exception."""
    spec = GenerationSpec(request=request, blueprint=blueprint, attempt_index=index)
    try:
        generated = await service.generate(spec)
    except Exception as e:
        logger.warning("Candidate #%d failed generation: %s", index, e)
        return Candidate(
            index=index,
            outcome=Outcome.FAILURE,
            usage=getattr(e, "usage", None),
            reason=f"{type(e).__name__}: {e}",
        )

    try:
        repaired = await validate_and_repair(
            service, request.prompt, generated.bundle, max_rounds=repair_rounds
        )
    except Exception as e:
        logger.warning("Candidate #%d failed during repair: %s", index, e)
        return Candidate(
            index=index,
            outcome=Outcome.FAILURE,
            usage=generated.usage,
            reason=f"{type(e).__name__}: {e}",
        )

    return Candidate(
        index=index,
        outcome=Outcome.SUCCESS,
        bundle=repaired.bundle,
        usage=generated.usage + repaired.usage,
        was_repaired=repaired.was_repaired,
        repair_rounds=repaired.rounds,
    )


async def generate_candidates(
    service,
    request: ExtensionRequest,
    blueprint,
    n: int,
    *,
    repair_rounds: int = MAX_REPAIR_ROUNDS,
) -> list[Candidate]:
    """Run ``n`` concurrent attempts and return every terminal Candidate.

    The list is ordered by attempt index regardless of completion order.
    Zero successes is a valid return value; the caller decides what it means.
    """
    if n < 1:
        raise ValueError(f"candidate count must be >= 1, got {n}")

    tasks = [
        run_attempt(service, request, blueprint, i, repair_rounds=repair_rounds)
        for i in range(n)
    ]
    candidates = await asyncio.gather(*tasks)
    ok = sum(1 for c in candidates if c.succeeded)
    logger.info("Fan-out finished: %d/%d candidate(s) succeeded", ok, n)
    return list(candidates)


def preflight_filter(candidates: list[Candidate]) -> list[PreflightResult]:
    """Gate successful candidates on zero critical findings."""
    results = []
    for c in candidates:
        if not c.succeeded or c.bundle is None:
            continue
        findings = lint_bundle(c.bundle)
        passed = not has_critical(findings)
        if not passed:
            logger.info(
                "Candidate #%d dropped by preflight: %s",
                c.index,
                ", ".join(f.rule_id for f in findings if f.is_critical),
            )
        results.append(PreflightResult(
            index=c.index, bundle=c.bundle, passed=passed, findings=tuple(findings),
        ))
    return results
