"""
ExtensionForge Orchestrator: Natural language → working browser extension.

Single source of truth for the generation pipeline.
Both the CLI and queue workers call this module.

Pipeline (refined / best-of-N):
  prompt → plan Blueprint (once) → N parallel attempts
         → each: generate → lint → repair (≤2 rounds)
         → join → preflight filter → arbitration → usage aggregation

Pipeline (single-shot):
  prompt → plan Blueprint → generate → lint → repair (≤2 rounds)

Generator backends are pluggable through the GenerationService protocol
(ClaudeGenerationService by default, ScriptedGenerationService in tests).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from arbitration import select_winner
from artifact_bundle import Bundle
from blueprint import Blueprint, PermissionWhitelist
from candidates import Candidate, generate_candidates, preflight_filter
from errors import AllCandidatesFailedError
from extension_linter import Finding, has_critical, lint_bundle
from generation_service import (
    ClaudeGenerationService,
    ExtensionRequest,
    GenerationService,
    GenerationSpec,
)
from pipeline_config import PipelineConfig
from repair_loop import validate_and_repair
from usage import ZERO_USAGE, UsageRecord, aggregate_usage

logger = logging.getLogger(__name__)


# ── Data Structures ────────────────────────────────────────────────────


@dataclass
class StageResult:
    """Status of a single pipeline stage."""

    stage: str  # "planning", "generating", "preflight", "arbitrating"
    status: str  # "running", "success", "failed", "skipped"
    message: str = ""
    duration_ms: int | None = None


@dataclass
class GenerationResult:
    """Result of the full generation pipeline."""

    bundle: Bundle
    usage: UsageRecord
    winner_index: int = 0
    candidates_generated: int = 1
    candidates_succeeded: int = 1
    candidates_valid: int = 1
    was_repaired: bool = False
    judged: bool = False
    degraded_reason: str | None = None
    blueprint: Blueprint | None = None
    findings: list[Finding] = field(default_factory=list)
    stages: list[StageResult] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        return [str(f) for f in self.findings]


# ── Orchestrator ───────────────────────────────────────────────────────


class ExtensionOrchestrator:
    """Orchestrates planning → fan-out → preflight → arbitration.

    Uses a pluggable GenerationService. Defaults to Claude.
    """

    def __init__(
        self,
        service: GenerationService | None = None,
        *,
        whitelist: PermissionWhitelist | None = None,
        config: PipelineConfig | None = None,
        api_key: str | None = None,
        on_stage_update: Callable[[StageResult], None] | None = None,
    ):
        self._config = config or PipelineConfig()
        self._service = service or ClaudeGenerationService(api_key=api_key, config=self._config)
        self._whitelist = whitelist or PermissionWhitelist(
            ttl_s=self._config.whitelist_ttl_s,
            schema_url=self._config.schema_url,
        )
        self._on_stage_update = on_stage_update

    def _stage(
        self,
        stages: list[StageResult],
        stage: str,
        status: str,
        message: str = "",
        duration_ms: int | None = None,
    ) -> None:
        sr = StageResult(stage=stage, status=status, message=message, duration_ms=duration_ms)
        stages.append(sr)
        if self._on_stage_update:
            self._on_stage_update(sr)

    async def plan(
        self,
        request: ExtensionRequest,
        stages: list[StageResult] | None = None,
    ) -> tuple[Blueprint | None, UsageRecord]:
        """Produce the shared Blueprint once per request.

        A caller-supplied blueprint is used as-is. A planning failure is
        logged and the pipeline continues unplanned.
        """
        stages = stages if stages is not None else []
        if request.blueprint is not None:
            self._stage(stages, "planning", "skipped", "Using supplied blueprint")
            return request.blueprint, ZERO_USAGE

        self._stage(stages, "planning", "running", "Drafting blueprint...")
        t0 = time.monotonic()
        permissions = await self._whitelist.get_valid_permissions()
        try:
            planned = await self._service.plan(request, permissions)
        except Exception as e:
            logger.warning("Planning failed, continuing without blueprint: %s", e)
            self._stage(stages, "planning", "failed", f"Planning error: {e}")
            return None, getattr(e, "usage", None) or ZERO_USAGE

        elapsed = int((time.monotonic() - t0) * 1000)
        self._stage(
            stages, "planning", "success",
            f"Blueprint: {len(planned.blueprint.permissions)} permission(s)", elapsed,
        )
        return planned.blueprint, planned.usage

    async def generate_refined_extension(
        self,
        request: ExtensionRequest,
        candidate_count: int | None = None,
    ) -> GenerationResult:
        """Best-of-N generation.

        Raises:
            AllCandidatesFailedError: if none of the N attempts succeeded.
        """
        n = candidate_count if candidate_count is not None else self._config.candidate_count
        stages: list[StageResult] = []

        blueprint, plan_usage = await self.plan(request, stages)

        self._stage(stages, "generating", "running", f"Generating {n} candidate(s)...")
        t0 = time.monotonic()
        candidates = await generate_candidates(
            self._service, request, blueprint, n,
            repair_rounds=self._config.repair_rounds,
        )
        elapsed = int((time.monotonic() - t0) * 1000)
        succeeded = [c for c in candidates if c.succeeded]
        candidate_usage = aggregate_usage(candidates)

        if not succeeded:
            self._stage(stages, "generating", "failed", f"0/{n} succeeded", elapsed)
            raise AllCandidatesFailedError(candidates, usage=plan_usage + candidate_usage)
        self._stage(stages, "generating", "success", f"{len(succeeded)}/{n} succeeded", elapsed)

        if len(succeeded) == 1:
            winner = succeeded[0]
            self._stage(stages, "arbitrating", "skipped", f"Single survivor #{winner.index}")
            return self._result(
                winner, candidates, blueprint, stages,
                usage=plan_usage + candidate_usage,
                candidates_valid=0 if has_critical(lint_bundle(winner.bundle)) else 1,
            )

        results = preflight_filter(candidates)
        passed = sum(1 for r in results if r.passed)
        self._stage(stages, "preflight", "success", f"{passed}/{len(results)} passed")

        self._stage(stages, "arbitrating", "running", "Selecting winner...")
        verdict = await select_winner(self._service, results, request.prompt, limits=self._config.judge)
        status = "failed" if verdict.degraded else "success"
        self._stage(stages, "arbitrating", status, f"Winner #{verdict.index}"
                    + (f" (fallback: {verdict.degraded_reason})" if verdict.degraded else ""))

        winner = next(c for c in candidates if c.index == verdict.index)
        result = self._result(
            winner, candidates, blueprint, stages,
            usage=plan_usage + candidate_usage + (verdict.usage or ZERO_USAGE),
            candidates_valid=passed,
        )
        result.judged = verdict.judged
        result.degraded_reason = verdict.degraded_reason
        return result

    async def generate_extension(self, request: ExtensionRequest) -> GenerationResult:
        """Single-shot generation: one attempt plus the repair loop.

        Generation errors propagate to the caller.
        """
        stages: list[StageResult] = []
        blueprint, plan_usage = await self.plan(request, stages)

        self._stage(stages, "generating", "running", "Generating extension...")
        t0 = time.monotonic()
        try:
            generated = await self._service.generate(GenerationSpec(request=request, blueprint=blueprint))
        except Exception as e:
            self._stage(stages, "generating", "failed", f"Generation error: {e}")
            raise
        repaired = await validate_and_repair(
            self._service, request.prompt, generated.bundle,
            max_rounds=self._config.repair_rounds,
        )
        elapsed = int((time.monotonic() - t0) * 1000)
        note = f", repaired in {repaired.rounds} round(s)" if repaired.was_repaired else ""
        self._stage(stages, "generating", "success", f"Generated{note}", elapsed)

        return GenerationResult(
            bundle=repaired.bundle,
            usage=plan_usage + generated.usage + repaired.usage,
            was_repaired=repaired.was_repaired,
            blueprint=blueprint,
            findings=repaired.findings,
            stages=stages,
        )

    def _result(
        self,
        winner: Candidate,
        candidates: list[Candidate],
        blueprint: Blueprint | None,
        stages: list[StageResult],
        *,
        usage: UsageRecord,
        candidates_valid: int,
    ) -> GenerationResult:
        return GenerationResult(
            bundle=winner.bundle,
            usage=usage,
            winner_index=winner.index,
            candidates_generated=len(candidates),
            candidates_succeeded=sum(1 for c in candidates if c.succeeded),
            candidates_valid=candidates_valid,
            was_repaired=winner.was_repaired,
            blueprint=blueprint,
            findings=lint_bundle(winner.bundle),
            stages=stages,
        )
