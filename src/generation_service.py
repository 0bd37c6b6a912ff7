"""
ExtensionForge Generation Service: the LLM boundary.

Interface (GenerationService protocol):
  plan(request, valid_permissions)    → PlanOutput(blueprint, usage)
  generate(spec)                      → GenerationOutput(bundle, usage)
  repair(prompt, bundle, findings)    → RepairOutput(partial_bundle, usage)
  judge(candidates_text, prompt, count) → JudgeOutput(choice, usage)

Backends:
  ClaudeGenerationService   — Anthropic Messages API with forced tool use
  ScriptedGenerationService — deterministic double for tests and dry runs

Every Claude call runs through a bounded transport retry (linear backoff).
Only transient failures are retried; a reply that breaks the submission
contract raises StructuralGenerationError immediately. This retry counter
is local to one call and unrelated to the repair loop's round bound.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, Union

import anthropic

from artifact_bundle import (
    SUMMARY_KEY,
    Bundle,
    extract_json_object,
    is_complete,
    normalize_bundle,
    text_entries,
)
from blueprint import CHECK_FIELDS, Blueprint
from errors import GenerationError, StructuralGenerationError, TransportError
from extension_linter import Finding
from pipeline_config import PipelineConfig
from prompts import (
    Persona,
    DEFAULT_TEMPLATE_ID,
    build_judge_message,
    build_repair_message,
    build_system_prompt,
    build_user_message,
)
from usage import UsageRecord

logger = logging.getLogger(__name__)


# ── Data Structures ────────────────────────────────────────────────────


@dataclass
class ExtensionRequest:
    """What the caller (queue worker, CLI) asks for."""

    prompt: str
    user_id: str = "agent"  # sent as request metadata.user_id
    template_id: str = DEFAULT_TEMPLATE_ID  # builder template, see prompts.get_template
    context_files: dict[str, str] | None = None  # parent version, for edits
    blueprint: Blueprint | None = None  # pre-approved plan skips planning


@dataclass(frozen=True)
class GenerationSpec:
    """Input to one generation attempt."""

    request: ExtensionRequest
    blueprint: Blueprint | None = None
    attempt_index: int = 0


@dataclass
class PlanOutput:
    blueprint: Blueprint
    usage: UsageRecord


@dataclass
class GenerationOutput:
    bundle: Bundle
    usage: UsageRecord


@dataclass
class RepairOutput:
    partial_bundle: Bundle
    usage: UsageRecord


@dataclass
class JudgeOutput:
    choice: Union[int, str]
    usage: UsageRecord


class GenerationService(Protocol):
    """Protocol for pluggable generation backends."""

    async def plan(self, request: ExtensionRequest, valid_permissions: Sequence[str]) -> PlanOutput: ...

    async def generate(self, spec: GenerationSpec) -> GenerationOutput: ...

    async def repair(self, prompt: str, bundle: Mapping, findings: Sequence[Finding]) -> RepairOutput: ...

    async def judge(self, candidates_text: str, prompt: str, count: int) -> JudgeOutput: ...


# ── Tool schemas ───────────────────────────────────────────────────────

_FILES_SCHEMA = {
    "type": "object",
    "description": "Map of file path (e.g. 'manifest.json', 'background.js') to raw file content.",
    "additionalProperties": {"type": "string"},
}

SUBMIT_EXTENSION_TOOL = {
    "name": "submit_extension",
    "description": "Submit the complete extension.",
    "input_schema": {
        "type": "object",
        "properties": {
            "summary": {"type": "string", "description": "One-paragraph description of what was built."},
            "files": _FILES_SCHEMA,
        },
        "required": ["files"],
    },
}

SUBMIT_REPAIR_TOOL = {
    "name": "submit_repair",
    "description": "Submit only the files that changed.",
    "input_schema": {
        "type": "object",
        "properties": {"files": _FILES_SCHEMA},
        "required": ["files"],
    },
}

SUBMIT_BLUEPRINT_TOOL = {
    "name": "submit_blueprint",
    "description": "Submit the technical blueprint.",
    "input_schema": {
        "type": "object",
        "properties": {
            "user_intent": {"type": "string"},
            "permissions_reasoning": {"type": "string"},
            "permissions": {"type": "array", "items": {"type": "string"}},
            "manifest_instructions": {"type": "string"},
            "background_instructions": {"type": "string"},
            "content_instructions": {"type": "string"},
            "popup_instructions": {"type": "string"},
            "implementation_strategy": {"type": "string"},
            "summary": {"type": "string"},
            **{name: {"type": "string"} for name in CHECK_FIELDS},
        },
        "required": [
            "user_intent",
            "permissions_reasoning",
            "permissions",
            "manifest_instructions",
            "background_instructions",
            "popup_instructions",
        ],
    },
}


# ── Error classification ───────────────────────────────────────────────

_RETRYABLE_STATUS = frozenset({408, 409, 429})


def classify_error(exc: BaseException) -> GenerationError | None:
    """Map a client exception onto the pipeline taxonomy.

    Returns None for exceptions that are not transport/API failures
    (programming errors propagate unchanged).
    """
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, anthropic.APIConnectionError):
        return TransportError(f"Connection error: {exc}")
    if isinstance(exc, anthropic.APIStatusError):
        status = exc.status_code
        if status in _RETRYABLE_STATUS or status >= 500:
            return TransportError(f"HTTP {status}: {exc}")
        return GenerationError(f"API client error {status}: {exc}")
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransportError(f"{type(exc).__name__}: {exc}")
    return None


def _tool_input(response: Any, tool_name: str, usage: UsageRecord) -> dict:
    """Extract the forced tool call's input, falling back to JSON in text."""
    texts = []
    for block in getattr(response, "content", None) or []:
        kind = getattr(block, "type", None)
        if kind == "tool_use" and getattr(block, "name", None) == tool_name:
            data = getattr(block, "input", None)
            if isinstance(data, dict):
                return data
            raise StructuralGenerationError(f"{tool_name} input is not an object", usage=usage)
        if kind == "text":
            texts.append(getattr(block, "text", ""))

    joined = "\n".join(texts)
    if joined.strip():
        try:
            return extract_json_object(joined)
        except ValueError:
            pass
    raise StructuralGenerationError(f"Model did not call {tool_name}", usage=usage)


def _response_text(response: Any) -> str:
    return "".join(
        getattr(b, "text", "") for b in (getattr(response, "content", None) or [])
        if getattr(b, "type", None) == "text"
    )


# ── Claude backend ─────────────────────────────────────────────────────


class ClaudeGenerationService:
    """Generation backend using the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        config: PipelineConfig | None = None,
        client: Any = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._config = config or PipelineConfig()
        self._sleep = sleep
        if client is not None:
            self._client = client
        else:
            key = (api_key or os.environ.get("ANTHROPIC_API_KEY") or "").strip()
            if key.lower().startswith("bearer "):
                key = key[7:].strip()
            if not key:
                raise ValueError(
                    "No API key provided. Set ANTHROPIC_API_KEY environment variable "
                    "or pass api_key to ClaudeGenerationService()."
                )
            # retries are handled by _create so the attempt bound stays ours
            self._client = anthropic.AsyncAnthropic(api_key=key, max_retries=0)

    @property
    def engine_name(self) -> str:
        return "claude"

    async def _create(self, **kwargs) -> Any:
        attempts = self._config.max_transport_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self._client.messages.create(**kwargs)
            except Exception as e:
                err = classify_error(e)
                if err is None:
                    raise
                if not isinstance(err, TransportError):
                    raise err from e
                if attempt >= attempts:
                    raise TransportError(
                        f"Generation failed after {attempts} attempt(s): {e}"
                    ) from e
                delay = self._config.retry_delay_s * attempt
                logger.warning(
                    "Transport failure on attempt %d/%d (%s), retrying in %.1fs",
                    attempt, attempts, err, delay,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _tool_call(
        self, model: str, system: str, user: str, tool: dict, *, user_id: str | None = None,
    ) -> tuple[dict, UsageRecord]:
        extra = {"metadata": {"user_id": user_id}} if user_id else {}
        response = await self._create(
            model=model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
            tools=[tool],
            tool_choice={"type": "tool", "name": tool["name"]},
            **extra,
        )
        usage = UsageRecord.from_api(getattr(response, "usage", None))
        return _tool_input(response, tool["name"], usage), usage

    async def plan(self, request: ExtensionRequest, valid_permissions: Sequence[str]) -> PlanOutput:
        system = build_system_prompt(Persona.ARCHITECT, valid_permissions=valid_permissions)
        user = build_user_message(request.prompt, context_files=request.context_files)
        data, usage = await self._tool_call(
            self._config.models.planner, system, user, SUBMIT_BLUEPRINT_TOOL, user_id=request.user_id,
        )
        try:
            blueprint = Blueprint.from_dict(data)
        except StructuralGenerationError as e:
            raise StructuralGenerationError(str(e), usage=usage) from e
        if valid_permissions:
            blueprint = blueprint.restrict_permissions(valid_permissions)
        return PlanOutput(blueprint=blueprint, usage=usage)

    async def generate(self, spec: GenerationSpec) -> GenerationOutput:
        system = build_system_prompt(
            Persona.BUILDER, blueprint=spec.blueprint, template_id=spec.request.template_id,
        )
        user = build_user_message(spec.request.prompt, context_files=spec.request.context_files)
        data, usage = await self._tool_call(
            self._config.models.builder, system, user, SUBMIT_EXTENSION_TOOL, user_id=spec.request.user_id,
        )

        files = data.get("files")
        if not isinstance(files, dict):
            raise StructuralGenerationError("submit_extension has no 'files' object", usage=usage)
        bundle = normalize_bundle(files)
        if not is_complete(bundle):
            raise StructuralGenerationError(
                "Generated extension is missing a parseable manifest.json", usage=usage
            )
        summary = data.get("summary")
        if isinstance(summary, str) and summary:
            bundle[SUMMARY_KEY] = summary
        return GenerationOutput(bundle=bundle, usage=usage)

    async def repair(self, prompt: str, bundle: Mapping, findings: Sequence[Finding]) -> RepairOutput:
        files = {k: v for k, v in text_entries(bundle).items() if k != SUMMARY_KEY}
        system = build_system_prompt(Persona.REPAIR)
        user = build_repair_message(prompt, files, findings)
        data, usage = await self._tool_call(self._config.models.builder, system, user, SUBMIT_REPAIR_TOOL)

        patch = data.get("files")
        if not isinstance(patch, dict):
            raise StructuralGenerationError("submit_repair has no 'files' object", usage=usage)
        return RepairOutput(partial_bundle=normalize_bundle(patch, inject_icons=False), usage=usage)

    async def judge(self, candidates_text: str, prompt: str, count: int) -> JudgeOutput:
        response = await self._create(
            model=self._config.models.judge,
            max_tokens=16,
            temperature=0,
            system=build_system_prompt(Persona.JUDGE),
            messages=[{"role": "user", "content": build_judge_message(prompt, candidates_text, count)}],
        )
        usage = UsageRecord.from_api(getattr(response, "usage", None))
        return JudgeOutput(choice=_response_text(response).strip(), usage=usage)


# ── Scripted backend ───────────────────────────────────────────────────

ScriptedOutcome = Union[Mapping[str, Any], GenerationOutput, BaseException]


@dataclass
class ScriptedGenerationService:
    """Deterministic stand-in for the LLM.

    - ``outcomes``: attempt index → bundle, GenerationOutput, or exception
    - ``repairs``: consumed in call order; each is a partial bundle or an
      exception. A callable ``(bundle, findings) -> partial`` may be used
      instead of a list.
    - ``judge_reply``: int/str returned by judge, or an exception to raise
    - ``blueprint``: returned by plan, or an exception to raise

    Every call is recorded in ``calls`` as ``(method, detail)``.
    """

    outcomes: dict[int, ScriptedOutcome] = field(default_factory=dict)
    repairs: Any = field(default_factory=list)
    judge_reply: Any = 0
    blueprint: Any = None
    usage: UsageRecord = field(default_factory=lambda: UsageRecord(100, 50, 150))
    calls: list[tuple[str, Any]] = field(default_factory=list)
    _repair_cursor: int = field(default=0, init=False)

    @property
    def engine_name(self) -> str:
        return "scripted"

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def plan(self, request: ExtensionRequest, valid_permissions: Sequence[str]) -> PlanOutput:
        self.calls.append(("plan", request.prompt))
        await asyncio.sleep(0)
        if isinstance(self.blueprint, BaseException):
            raise self.blueprint
        blueprint = self.blueprint or Blueprint(
            user_intent=request.prompt,
            permissions_reasoning="scripted",
            permissions=(),
            manifest_instructions="Use Manifest V3.",
            background_instructions="",
            popup_instructions="",
        )
        return PlanOutput(blueprint=blueprint, usage=self.usage)

    async def generate(self, spec: GenerationSpec) -> GenerationOutput:
        self.calls.append(("generate", spec.attempt_index))
        await asyncio.sleep(0)
        outcome = self.outcomes.get(spec.attempt_index)
        if outcome is None:
            raise StructuralGenerationError(f"No scripted outcome for attempt {spec.attempt_index}")
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, GenerationOutput):
            return GenerationOutput(bundle=dict(outcome.bundle), usage=outcome.usage)
        return GenerationOutput(bundle=dict(outcome), usage=self.usage)

    async def repair(self, prompt: str, bundle: Mapping, findings: Sequence[Finding]) -> RepairOutput:
        self.calls.append(("repair", [f.rule_id for f in findings]))
        await asyncio.sleep(0)
        if callable(self.repairs):
            reply = self.repairs(bundle, findings)
        elif self._repair_cursor < len(self.repairs):
            reply = self.repairs[self._repair_cursor]
            self._repair_cursor += 1
        else:
            reply = {}
        if isinstance(reply, BaseException):
            raise reply
        return RepairOutput(partial_bundle=dict(reply), usage=self.usage)

    async def judge(self, candidates_text: str, prompt: str, count: int) -> JudgeOutput:
        self.calls.append(("judge", candidates_text))
        await asyncio.sleep(0)
        if isinstance(self.judge_reply, BaseException):
            raise self.judge_reply
        return JudgeOutput(choice=self.judge_reply, usage=self.usage)
