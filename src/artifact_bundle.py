"""
Artifact bundle helpers: the file map a generation attempt produces.

A bundle maps logical file names ("manifest.json", "background.js",
"icons/icon16.png", ...) to text or binary content. Bundles are values:
every helper here returns a new dict and never mutates its input.

Usage:
    from artifact_bundle import normalize_bundle, merge_bundles, is_complete

    bundle = normalize_bundle(tool_input["files"])
    bundle = merge_bundles(bundle, repair_patch)
    assert is_complete(bundle)
"""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Union

Content = Union[str, bytes]
Bundle = dict[str, Content]

MANIFEST = "manifest.json"
DEFAULT_BACKGROUND_FILE = "background.js"
SUMMARY_KEY = "summary"
NEW_PROJECT_VERSION = "0.1.0"

# 1x1 transparent PNG, used when the model ships no icons
_PLACEHOLDER_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
DEFAULT_ICON_PATHS = ("icons/icon16.png", "icons/icon48.png", "icons/icon128.png")

_LICENSE_NAMES = ("LICENSE", "LICENSE.md", "LICENSE.txt")

_MIT_LICENSE = """MIT License

Copyright (c) {year} Extension Author

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE."""

_UNDERSCORE_EXT_RE = re.compile(r"^(?P<stem>.+)_(?P<ext>json|js|html|css|md|txt)$")
_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


# ── Basic operations ──────────────────────────────────────────────────


def merge_bundles(base: Mapping[str, Content], patch: Mapping[str, Content]) -> Bundle:
    """Key-wise merge: entries in ``patch`` win, omitted keys are kept."""
    merged = dict(base)
    merged.update(patch)
    return merged


def text_entries(bundle: Mapping[str, Content]) -> dict[str, str]:
    """Only the textual entries (binary icons are skipped)."""
    return {k: v for k, v in bundle.items() if isinstance(v, str)}


def as_text(content: Content | None) -> str | None:
    """Decode content to text, or None if it is missing or not UTF-8."""
    if content is None:
        return None
    if isinstance(content, bytes):
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError:
            return None
    return content


def parse_manifest(bundle: Mapping[str, Content]) -> dict | None:
    """Parse manifest.json; None if missing or not a JSON object."""
    raw = as_text(bundle.get(MANIFEST))
    if raw is None:
        return None
    try:
        manifest = json.loads(raw)
    except (ValueError, RecursionError):
        return None
    return manifest if isinstance(manifest, dict) else None


def background_entry(manifest: Mapping | None) -> str:
    """Bundle key of the service worker: ``background.service_worker`` or background.js."""
    if manifest is not None:
        background = manifest.get("background")
        if isinstance(background, dict):
            worker = background.get("service_worker")
            if isinstance(worker, str) and worker:
                return worker
    return DEFAULT_BACKGROUND_FILE


def is_complete(bundle: Mapping[str, Content]) -> bool:
    """A bundle is complete only with a manifest that parses as an object."""
    return parse_manifest(bundle) is not None


# ── Model output handling ─────────────────────────────────────────────


def _normalize_key(key: str) -> str:
    # "manifest_json" → "manifest.json"; keys with a real extension pass through
    if "." in key.rsplit("/", 1)[-1]:
        return key
    match = _UNDERSCORE_EXT_RE.match(key)
    if match:
        return f"{match.group('stem')}.{match.group('ext')}"
    return key


def normalize_bundle(raw: Mapping[str, Any], *, inject_icons: bool = True) -> Bundle:
    """Coerce a model-submitted file map into a bundle.

    Handles:
      - underscore-mangled names (``manifest_json``)
      - a manifest delivered as a JSON object instead of a string
      - non-text values (dropped)
      - missing icons (placeholder PNGs injected)
    """
    bundle: Bundle = {}
    for key, value in raw.items():
        name = _normalize_key(str(key))
        if name == MANIFEST and isinstance(value, dict):
            bundle[name] = json.dumps(value, indent=2)
        elif isinstance(value, (str, bytes)):
            bundle[name] = value

    if inject_icons:
        for path in DEFAULT_ICON_PATHS:
            bundle.setdefault(path, _PLACEHOLDER_PNG)
    return bundle


def extract_json_object(text: str) -> dict:
    """Extract a JSON object from an LLM reply.

    Tries, in order: the raw text, fenced ```json blocks, and the span
    from the first ``{`` to the last ``}``.

    Raises:
        ValueError: if no JSON object can be recovered.
    """
    candidates = [text.strip()]
    candidates.extend(m.strip() for m in _FENCE_RE.findall(text))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except (ValueError, RecursionError):
            continue
        if isinstance(value, dict):
            return value
    raise ValueError("No JSON object found in model reply")


# ── Job post-processing ───────────────────────────────────────────────


@dataclass
class FinalizedBundle:
    """Bundle ready for packaging, plus metadata pulled from the manifest."""

    files: Bundle
    name: str | None = None
    version: str = NEW_PROJECT_VERSION
    description: str = ""
    summary: str | None = None
    notes: list[str] = field(default_factory=list)


def finalize_bundle(
    bundle: Mapping[str, Content],
    *,
    is_new_project: bool = True,
    year: int | None = None,
) -> FinalizedBundle:
    """Prepare a winning bundle for delivery.

    - moves the ``summary`` pseudo-entry out of the file map
    - forces version 0.1.0 on brand-new projects
    - adds an MIT LICENSE if no license file exists
    - extracts name/version/description for the job record
    """
    files = dict(bundle)
    result = FinalizedBundle(files=files)

    summary = files.pop(SUMMARY_KEY, None)
    if isinstance(summary, str):
        result.summary = summary

    if is_new_project and MANIFEST in files:
        manifest = parse_manifest(files)
        if manifest is not None:
            if manifest.get("version") != NEW_PROJECT_VERSION:
                result.notes.append(
                    f"version {manifest.get('version')!r} → {NEW_PROJECT_VERSION}"
                )
                manifest["version"] = NEW_PROJECT_VERSION
                files[MANIFEST] = json.dumps(manifest, indent=2)
        else:
            raw = as_text(files[MANIFEST]) or ""
            if '"version":' in raw:
                files[MANIFEST] = re.sub(
                    r'"version"\s*:\s*"[^"]*"',
                    f'"version": "{NEW_PROJECT_VERSION}"',
                    raw,
                    count=1,
                )
                result.notes.append(f"version forced to {NEW_PROJECT_VERSION} (unparsed manifest)")

    if not any(name in files for name in _LICENSE_NAMES):
        files["LICENSE"] = _MIT_LICENSE.format(year=year or datetime.now().year)
        result.notes.append("added MIT LICENSE")

    manifest = parse_manifest(files)
    if manifest is not None:
        if manifest.get("version"):
            result.version = str(manifest["version"])
        if manifest.get("name"):
            result.name = str(manifest["name"])
        if manifest.get("description"):
            result.description = str(manifest["description"])
    if not result.description:
        result.description = result.summary or "No description available"
    return result


# ── Filesystem round trip ─────────────────────────────────────────────


def read_bundle_dir(root: str | Path) -> Bundle:
    """Load every file under ``root`` into a bundle (UTF-8 text, else bytes)."""
    root = Path(root)
    if not root.is_dir():
        raise NotADirectoryError(f"Not an extension directory: {root}")
    bundle: Bundle = {}
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        data = path.read_bytes()
        name = path.relative_to(root).as_posix()
        try:
            bundle[name] = data.decode("utf-8")
        except UnicodeDecodeError:
            bundle[name] = data
    return bundle


def write_bundle_dir(bundle: Mapping[str, Content], root: str | Path) -> list[Path]:
    """Write a bundle below ``root``. Returns the written paths."""
    root = Path(root)
    written = []
    for name, content in bundle.items():
        target = (root / name).resolve()
        if root.resolve() not in target.parents:
            raise ValueError(f"Refusing to write outside output dir: {name}")
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
        written.append(target)
    return written
