"""
ExtensionForge Linter — static rule engine for generated extension bundles.

Checks a bundle (file name → content) against Manifest V3 rules:

  MANIFEST
    1. missing-file                — manifest.json absent                 (critical)
    2. json-syntax                 — manifest is not a JSON object        (critical)
    3. manifest-version            — manifest_version must be 3           (critical)
    4. deprecated-permission       — e.g. webRequestBlocking              (critical)
    5. unregistered-content-script — content.js not in content_scripts    (critical)

  SCRIPTS
    6. missing-permission          — chrome.<api>.* used, not declared    (critical)
    7. no-dom-in-worker            — window/document/alert in worker      (critical)
    8. async-message-return        — async onMessage without return true  (warning)
    9. no-get-bg-page              — getBackgroundPage() in UI logic      (warning)

Pure and deterministic: no I/O, never raises (a manifest too deeply nested
to decode is reported as json-syntax), same bundle → same findings
in the same order. Critical findings block a candidate; warnings never do.

Rule 8 is a regex heuristic, not a parse. It looks at the handler passed to
each onMessage.addListener registration (inline ``async`` function, or an
identifier declared ``async`` in the same script) and then for any literal
``return true`` in that script. False negatives are accepted.

Usage:
    from extension_linter import lint_bundle, has_critical
    findings = lint_bundle(bundle)
    if has_critical(findings):
        ...
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

from artifact_bundle import background_entry

__version__ = "1.0"


# ── Data Classes ─────────────────────────────────────────────────


class Severity(str, Enum):
    """Finding severity. Only CRITICAL blocks preflight."""

    CRITICAL = "critical"
    WARNING = "warning"


@dataclass(frozen=True)
class Finding:
    """A single rule violation."""

    file: str
    rule_id: str
    message: str
    severity: Severity

    @property
    def is_critical(self) -> bool:
        return self.severity == Severity.CRITICAL

    def __str__(self) -> str:
        return f"[{self.severity.value}] {self.file} ({self.rule_id}): {self.message}"


# ── Rule tables ──────────────────────────────────────────────────

MANIFEST_FILE = "manifest.json"
CONTENT_SCRIPT_FILE = "content.js"
REQUIRED_MANIFEST_VERSION = 3

# deprecated permission → replacement
DEPRECATED_PERMISSIONS = {
    "webRequestBlocking": "declarativeNetRequest",
}

# permission → call pattern that implies it
PERMISSION_PATTERNS: tuple[tuple[str, re.Pattern], ...] = tuple(
    (perm, re.compile(rf"\b(?:chrome|browser)\.{api}\."))
    for perm, api in (
        ("storage", "storage"),
        ("tabs", "tabs"),
        ("bookmarks", "bookmarks"),
        ("alarms", "alarms"),
        ("notifications", "notifications"),
        ("contextMenus", "contextMenus"),
        ("scripting", "scripting"),
        ("cookies", "cookies"),
        ("history", "history"),
        ("downloads", "downloads"),
    )
)

_DOM_PATTERNS = (
    re.compile(r"\bwindow\."),
    re.compile(r"\bdocument\."),
    re.compile(r"\balert\("),
)

UI_SCRIPT_FILES = ("popup.js", "options.js", "sidepanel.js")
_GET_BG_PAGE_RE = re.compile(r"\bchrome\.extension\.getBackgroundPage\b")

_ON_MESSAGE_RE = re.compile(
    r"\b(?:chrome|browser)\.runtime\.onMessage\.addListener\(\s*"
    r"(?P<handler>async\b|[A-Za-z_$][\w$]*)"
)
_RETURN_TRUE_RE = re.compile(r"\breturn\s+true\b")


# ── Helpers ──────────────────────────────────────────────────────


def _text(content) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, bytes):
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError:
            return None
    return None


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _scripts(bundle: Mapping) -> list[tuple[str, str]]:
    """(name, text) for every .js entry, sorted by name."""
    out = []
    for name in sorted(bundle):
        if not name.endswith(".js"):
            continue
        text = _text(bundle[name])
        if text is not None:
            out.append((name, text))
    return out


def _is_async_handler(handler: str, script: str) -> bool:
    if handler == "async":
        return True
    name = re.escape(handler)
    return bool(
        re.search(rf"\basync\s+function\s+{name}\b", script)
        or re.search(rf"\b(?:const|let|var)\s+{name}\s*=\s*async\b", script)
    )


# ── Manifest rules ───────────────────────────────────────────────


def _load_manifest(bundle: Mapping, findings: list[Finding]) -> dict | None:
    if MANIFEST_FILE not in bundle:
        findings.append(Finding(
            MANIFEST_FILE, "missing-file", "manifest.json is missing.", Severity.CRITICAL,
        ))
        return None
    raw = _text(bundle[MANIFEST_FILE])
    try:
        manifest = json.loads(raw) if raw is not None else None
    except (ValueError, RecursionError):
        manifest = None
    if not isinstance(manifest, dict):
        findings.append(Finding(
            MANIFEST_FILE, "json-syntax", "Manifest is not valid JSON.", Severity.CRITICAL,
        ))
        return None
    return manifest


def _check_manifest(manifest: dict, bundle: Mapping, findings: list[Finding]) -> None:
    version = manifest.get("manifest_version")
    if version != REQUIRED_MANIFEST_VERSION:
        findings.append(Finding(
            MANIFEST_FILE,
            "manifest-version",
            f'Must use "manifest_version": {REQUIRED_MANIFEST_VERSION} (found {version!r}).',
            Severity.CRITICAL,
        ))

    permissions = _string_list(manifest.get("permissions"))
    for deprecated, replacement in DEPRECATED_PERMISSIONS.items():
        if deprecated in permissions:
            findings.append(Finding(
                MANIFEST_FILE,
                "deprecated-permission",
                f"'{deprecated}' is deprecated in Manifest V3. Use '{replacement}'.",
                Severity.CRITICAL,
            ))

    if CONTENT_SCRIPT_FILE in bundle:
        registered = False
        entries = manifest.get("content_scripts")
        if isinstance(entries, list):
            for entry in entries:
                if isinstance(entry, dict) and CONTENT_SCRIPT_FILE in _string_list(entry.get("js")):
                    registered = True
                    break
        if not registered:
            findings.append(Finding(
                MANIFEST_FILE,
                "unregistered-content-script",
                "content.js exists but is not listed under \"content_scripts\"; it will never load.",
                Severity.CRITICAL,
            ))


# ── Script rules ─────────────────────────────────────────────────


def _check_permissions(manifest: dict, scripts: list[tuple[str, str]], findings: list[Finding]) -> None:
    declared = set(_string_list(manifest.get("permissions")))
    declared |= set(_string_list(manifest.get("host_permissions")))

    for name, text in scripts:
        for permission, pattern in PERMISSION_PATTERNS:
            if permission not in declared and pattern.search(text):
                findings.append(Finding(
                    name,
                    "missing-permission",
                    f"{name} uses the '{permission}' API but permission "
                    f"'{permission}' is not declared in manifest.json.",
                    Severity.CRITICAL,
                ))


def _check_worker_dom(background: str, scripts: list[tuple[str, str]], findings: list[Finding]) -> None:
    for name, text in scripts:
        if name != background:
            continue
        if any(p.search(text) for p in _DOM_PATTERNS):
            findings.append(Finding(
                name,
                "no-dom-in-worker",
                "Service workers cannot access window, document, or alert.",
                Severity.CRITICAL,
            ))


def _check_async_listeners(scripts: list[tuple[str, str]], findings: list[Finding]) -> None:
    for name, text in scripts:
        if _RETURN_TRUE_RE.search(text):
            continue
        for match in _ON_MESSAGE_RE.finditer(text):
            if _is_async_handler(match.group("handler"), text):
                findings.append(Finding(
                    name,
                    "async-message-return",
                    'Async message listeners likely need "return true;" to keep the channel open.',
                    Severity.WARNING,
                ))
                break


def _check_ui_scripts(scripts: list[tuple[str, str]], findings: list[Finding]) -> None:
    for name, text in scripts:
        if name.rsplit("/", 1)[-1] not in UI_SCRIPT_FILES:
            continue
        if _GET_BG_PAGE_RE.search(text):
            findings.append(Finding(
                name,
                "no-get-bg-page",
                "Avoid getBackgroundPage(). Use messaging to talk to the service worker.",
                Severity.WARNING,
            ))


# ── Public API ───────────────────────────────────────────────────


def lint_bundle(bundle: Mapping) -> list[Finding]:
    """Run every rule over a bundle and return the ordered findings."""
    findings: list[Finding] = []
    manifest = _load_manifest(bundle, findings)
    scripts = _scripts(bundle)

    if manifest is not None:
        _check_manifest(manifest, bundle, findings)
        _check_permissions(manifest, scripts, findings)

    _check_worker_dom(background_entry(manifest), scripts, findings)
    _check_async_listeners(scripts, findings)
    _check_ui_scripts(scripts, findings)
    return findings


def critical_findings(findings: Iterable[Finding]) -> list[Finding]:
    return [f for f in findings if f.is_critical]


def has_critical(findings: Iterable[Finding]) -> bool:
    return any(f.is_critical for f in findings)


def summarize(findings: list[Finding]) -> str:
    crit = len(critical_findings(findings))
    return f"{crit} critical, {len(findings) - crit} warning(s)"


# ── CLI test ─────────────────────────────────────────────────────

if __name__ == "__main__":
    import sys

    from artifact_bundle import read_bundle_dir

    target = sys.argv[1] if len(sys.argv) > 1 else "."
    results = lint_bundle(read_bundle_dir(target))
    for f in results:
        print(f)
    print(summarize(results))
    sys.exit(1 if has_critical(results) else 0)
