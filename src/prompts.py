"""
ExtensionForge Prompt Builder: Constructs LLM prompts for each persona.

Personas:
  - architect: request → Blueprint (no code)
  - builder:   request + Blueprint → full file bundle
  - repair:    bundle + linter findings → patched files only
  - judge:     formatted candidates → index of the best one

Also injects Manifest V3 golden rules and keyword-matched code patterns
(retrieval-augmented generation, like a snippet registry but inline).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Sequence

from extension_linter import Finding

logger = logging.getLogger(__name__)


class Persona(str, Enum):
    ARCHITECT = "architect"
    BUILDER = "builder"
    REPAIR = "repair"
    JUDGE = "judge"


# ── Golden rules ───────────────────────────────────────────────────────

FILE_STRUCTURE = {
    "manifest.json": "Configuration (must include content_scripts if needed)",
    "background.js": "Service worker (must handle async messaging correctly)",
    "content.js": "Page interaction logic (only if page scraping/manipulation is required)",
    "popup.html": "UI HTML",
    "popup.js": "UI logic",
    "styles.css": "Styles",
    "README.md": "Instructions",
}

GOLDEN_RULES = (
    'Manifest V3: manifest.json must declare "manifest_version": 3, plus name, version, action and icons.',
    "Content scripts: if you create content.js you MUST register it under \"content_scripts\" in manifest.json.",
    "Async messaging: an onMessage listener that responds asynchronously MUST return true synchronously.",
    "Service workers have no DOM: never use window, document or alert() in background.js.",
    "Declare every permission whose chrome.* API you call (storage, tabs, alarms, notifications, ...).",
)


# ── Code patterns ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class CodePattern:
    name: str
    keywords: tuple[str, ...]
    description: str
    code: str


CODE_PATTERNS = (
    CodePattern(
        name="Messaging (Robust)",
        keywords=("message", "send", "communicate", "background", "content"),
        description="Message handler that keeps the channel open for async replies.",
        code=(
            "chrome.runtime.onMessage.addListener((request, sender, sendResponse) => {\n"
            "  if (request.action === 'getData') {\n"
            "    (async () => {\n"
            "      try {\n"
            "        const data = await fetchData();\n"
            "        sendResponse({ success: true, data });\n"
            "      } catch (e) {\n"
            "        sendResponse({ success: false, error: e.message });\n"
            "      }\n"
            "    })();\n"
            "    return true;\n"
            "  }\n"
            "});\n"
        ),
    ),
    CodePattern(
        name="Storage (Local)",
        keywords=("save", "load", "storage", "remember", "settings", "preference"),
        description="chrome.storage.local with async/await (requires the storage permission).",
        code=(
            "const saveSettings = async (settings) => {\n"
            "  await chrome.storage.local.set({ settings });\n"
            "};\n"
            "const getSettings = async () => {\n"
            "  const result = await chrome.storage.local.get('settings');\n"
            "  return result.settings || {};\n"
            "};\n"
        ),
    ),
    CodePattern(
        name="Tabs Query",
        keywords=("tab", "url", "page", "website", "current"),
        description="Getting the active tab safely.",
        code=(
            "const [tab] = await chrome.tabs.query({ active: true, currentWindow: true });\n"
            "if (!tab?.id) return;\n"
        ),
    ),
    CodePattern(
        name="Side Panel",
        keywords=("side panel", "sidebar", "panel"),
        description="Opening the side panel (Manifest V3).",
        code=(
            '// manifest.json: "permissions": ["sidePanel"], "side_panel": { "default_path": "sidepanel.html" }\n'
            "chrome.sidePanel.setPanelBehavior({ openPanelOnActionClick: true });\n"
        ),
    ),
)


def select_patterns(prompt: str) -> list[CodePattern]:
    """Patterns whose keywords appear in the prompt (case-insensitive)."""
    lowered = prompt.lower()
    return [p for p in CODE_PATTERNS if any(k in lowered for k in p.keywords)]


def build_pattern_context(prompt: str) -> str:
    matches = select_patterns(prompt)
    if not matches:
        return ""
    blocks = [
        f"#### {p.name}\n{p.description}\n```javascript\n{p.code}```" for p in matches
    ]
    return "### OFFICIAL CODE SAMPLES (use these patterns)\n" + "\n\n".join(blocks)


# ── System prompts ─────────────────────────────────────────────────────


def _rules_block() -> str:
    rules = "\n".join(f"{i}. {r}" for i, r in enumerate(GOLDEN_RULES, 1))
    files = "\n".join(f"- {name}: {desc}" for name, desc in FILE_STRUCTURE.items())
    return f"GOLDEN RULES (strict compliance required):\n{rules}\n\nFiles to generate:\n{files}"


# ── Templates ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExtensionTemplate:
    """A builder starting point, selected by ``ExtensionRequest.template_id``."""

    id: str
    name: str
    description: str
    system_prompt: str


BASIC_EXTENSION = ExtensionTemplate(
    id="basic-extension",
    name="Basic Extension (Manifest V3)",
    description=(
        "A standard Chrome extension using Manifest V3: background service worker, "
        "popup, and content script support."
    ),
    system_prompt=(
        "You are an expert browser extension developer specializing in Manifest V3.\n"
        "Generate a complete, working browser extension from the user's description.\n\n"
        f"{_rules_block()}\n\n"
        "Submit every file with the submit_extension tool. File contents are raw strings."
    ),
)

TEMPLATES: dict[str, ExtensionTemplate] = {BASIC_EXTENSION.id: BASIC_EXTENSION}
DEFAULT_TEMPLATE_ID = BASIC_EXTENSION.id


def get_template(template_id: str | None = None) -> ExtensionTemplate:
    """Look up a template; unknown or empty ids fall back to the default."""
    if template_id and template_id in TEMPLATES:
        return TEMPLATES[template_id]
    if template_id:
        logger.warning("Unknown template %r, using %s", template_id, DEFAULT_TEMPLATE_ID)
    return TEMPLATES[DEFAULT_TEMPLATE_ID]


def build_blueprint_instructions(blueprint) -> str:
    """Render a Blueprint as a strict-adherence block for the builder."""
    if blueprint is None:
        return ""
    lines = [
        "--- ARCHITECTURAL BLUEPRINT (STRICT ADHERENCE REQUIRED) ---",
        f"USER INTENT: {blueprint.user_intent}",
        "",
        f"PERMISSIONS ALLOWED: {json.dumps(list(blueprint.permissions))}",
        "(Do NOT use any other permissions)",
        "",
        "FILE INSTRUCTIONS:",
        f"1. MANIFEST: {blueprint.manifest_instructions}",
        f"2. BACKGROUND: {blueprint.background_instructions}",
        f"3. POPUP: {blueprint.popup_instructions}",
    ]
    if blueprint.content_instructions:
        lines.append(f"4. CONTENT_SCRIPT: {blueprint.content_instructions}")
    if blueprint.checks:
        lines.append("")
        lines.append("SELF-CHECKS:")
        lines.extend(f"- {name}: {text}" for name, text in blueprint.checks)
    lines.append("-" * 60)
    return "\n".join(lines)


def build_system_prompt(
    persona: Persona,
    *,
    valid_permissions: Sequence[str] = (),
    blueprint=None,
    template_id: str | None = None,
) -> str:
    if persona == Persona.ARCHITECT:
        perms = ", ".join(valid_permissions) if valid_permissions else "(any documented permission)"
        return (
            "You are a senior software architect for Chrome extensions.\n"
            "Convert the user's request into a precise technical blueprint.\n\n"
            "Do NOT write code. Write INSTRUCTIONS for the coder. Decide:\n"
            "1. Exact permissions needed (least privilege).\n"
            "2. Manifest configuration (MV3).\n"
            "3. Logic for the background service worker.\n"
            "4. UI requirements for the popup.\n\n"
            f"Valid permissions: {perms}\n\n"
            "Submit the plan with the submit_blueprint tool."
        )
    if persona == Persona.BUILDER:
        prompt = get_template(template_id).system_prompt
        instructions = build_blueprint_instructions(blueprint)
        return prompt + ("\n\n" + instructions if instructions else "")
    if persona == Persona.REPAIR:
        return (
            "You are fixing a generated Chrome extension that failed static validation.\n"
            f"{_rules_block()}\n\n"
            "Fix every listed issue. Submit ONLY the files you changed with the "
            "submit_repair tool; omitted files are kept as they are."
        )
    if persona == Persona.JUDGE:
        return (
            "You are a tech lead evaluating code generation candidates for Chrome extensions.\n"
            "Pick the BEST one based on:\n"
            "1. Code quality: correct syntax, proper async handling in background.js, error checking.\n"
            "2. Completeness: has all required files (popup.js, background.js, manifest.json).\n"
            "3. Relevance: does it actually solve the user's prompt?\n\n"
            "Return ONLY the integer index of the best candidate. If all are bad, return 0."
        )
    raise ValueError(f"Unknown persona: {persona!r}")


# ── User messages ──────────────────────────────────────────────────────


def _files_block(files: Mapping[str, str]) -> str:
    return "\n\n".join(f"=== {name} ===\n{content}" for name, content in files.items())


def build_user_message(prompt: str, *, context_files: Mapping[str, str] | None = None) -> str:
    """User turn for planning and building: request + patterns + prior files."""
    parts = [f"Build this extension:\n{prompt}"]
    patterns = build_pattern_context(prompt)
    if patterns:
        parts.append(patterns)
    if context_files:
        parts.append(
            "This is an update to an existing extension. Current files:\n\n"
            + _files_block(context_files)
        )
    return "\n\n".join(parts)


def build_repair_message(prompt: str, files: Mapping[str, str], findings: Iterable[Finding]) -> str:
    """User turn for a repair round: original request, current text files, findings."""
    issues = "\n".join(f"  - {f}" for f in findings)
    return (
        f"Original request:\n{prompt}\n\n"
        f"The validator reported these issues:\n{issues}\n\n"
        f"Current files:\n\n{_files_block(files)}\n\n"
        "Return corrected versions of the affected files."
    )


def build_judge_message(prompt: str, candidates_text: str, count: int) -> str:
    return (
        f"User prompt:\n{prompt}\n\n"
        f"{candidates_text}\n\n"
        f"Which candidate is best? Answer with a single integer from 0 to {count - 1}."
    )
