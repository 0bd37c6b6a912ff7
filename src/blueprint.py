"""
Blueprint and permission whitelist for the planning step.

The Blueprint is the shared, read-only plan every candidate is generated
against: intent, requested permissions, per-file instructions, and the
planner's self-reported compliance checks. It is produced once per request.

PermissionWhitelist owns the cached list of valid manifest permissions
(fetched from the schemastore Chrome manifest schema) as an explicit
``{value, fetched_at}`` entry with a TTL, instead of process-wide state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import urllib.request
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Iterable, Mapping

from errors import StructuralGenerationError

logger = logging.getLogger(__name__)

__version__ = "1.0"


# ── Blueprint ─────────────────────────────────────────────────────────

_REQUIRED_TEXT_FIELDS = (
    "user_intent",
    "permissions_reasoning",
    "manifest_instructions",
    "background_instructions",
    "popup_instructions",
)
_OPTIONAL_TEXT_FIELDS = ("content_instructions", "implementation_strategy", "summary")
CHECK_FIELDS = (
    "async_logic_check",
    "data_contract_check",
    "ui_event_handling_check",
    "storage_async_check",
    "ux_interactivity_check",
)


@dataclass(frozen=True)
class Blueprint:
    """Immutable build plan shared by all candidates."""

    user_intent: str
    permissions_reasoning: str
    permissions: tuple[str, ...]
    manifest_instructions: str
    background_instructions: str
    popup_instructions: str
    content_instructions: str | None = None
    implementation_strategy: str | None = None
    summary: str | None = None
    checks: tuple[tuple[str, str], ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Blueprint:
        """Validate a planner submission.

        Raises:
            StructuralGenerationError: on missing or mistyped fields.
        """
        if not isinstance(data, Mapping):
            raise StructuralGenerationError("Blueprint must be a JSON object")

        missing = [k for k in _REQUIRED_TEXT_FIELDS if not isinstance(data.get(k), str)]
        if missing:
            raise StructuralGenerationError(f"Blueprint missing field(s): {', '.join(missing)}")

        permissions = data.get("permissions")
        if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
            raise StructuralGenerationError("Blueprint 'permissions' must be a list of strings")

        optional = {}
        for key in _OPTIONAL_TEXT_FIELDS:
            value = data.get(key)
            optional[key] = value if isinstance(value, str) and value else None

        checks = tuple(
            (key, data[key]) for key in CHECK_FIELDS
            if isinstance(data.get(key), str) and data[key]
        )

        return cls(
            user_intent=data["user_intent"],
            permissions_reasoning=data["permissions_reasoning"],
            permissions=tuple(dict.fromkeys(permissions)),
            manifest_instructions=data["manifest_instructions"],
            background_instructions=data["background_instructions"],
            popup_instructions=data["popup_instructions"],
            checks=checks,
            **optional,
        )

    def restrict_permissions(self, valid: Iterable[str]) -> Blueprint:
        """Copy with permissions outside the whitelist dropped."""
        allowed = set(valid)
        kept = tuple(p for p in self.permissions if p in allowed)
        dropped = [p for p in self.permissions if p not in allowed]
        if dropped:
            logger.warning("Blueprint requested unknown permission(s), dropped: %s", dropped)
            return replace(self, permissions=kept)
        return self

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "user_intent": self.user_intent,
            "permissions_reasoning": self.permissions_reasoning,
            "permissions": list(self.permissions),
            "manifest_instructions": self.manifest_instructions,
            "background_instructions": self.background_instructions,
            "popup_instructions": self.popup_instructions,
        }
        for key in _OPTIONAL_TEXT_FIELDS:
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        data.update(dict(self.checks))
        return data


# ── Permission whitelist ──────────────────────────────────────────────

# listed in the schema but rejected by Chrome as unknown permissions
PERMISSION_DENY_LIST = frozenset({"runtime", "app", "usb", "bluetooth", "system.display"})

FALLBACK_PERMISSIONS = (
    "activeTab", "alarms", "background", "bookmarks", "browsingData",
    "clipboardRead", "clipboardWrite", "contentSettings", "contextMenus",
    "cookies", "debugger", "declarativeContent", "declarativeNetRequest",
    "desktopCapture", "downloads", "fontSettings", "gcm", "geolocation",
    "history", "identity", "idle", "management", "nativeMessaging",
    "notifications", "pageCapture", "power", "printerProvider", "printing",
    "privacy", "proxy", "scripting", "search", "sessions", "sidePanel",
    "storage", "system.cpu", "system.memory", "system.storage", "tabCapture",
    "tabGroups", "tabs", "topSites", "tts", "ttsEngine", "unlimitedStorage",
    "webNavigation", "webRequest",
)


def parse_permission_schema(schema: Mapping[str, Any]) -> list[str]:
    """Pull the permission enum out of the Chrome manifest JSON schema.

    Looks at ``definitions.permission.enum`` first, then the ``enum`` of
    every ``anyOf`` branch under ``definitions.permissions`` (or its
    ``items``). Result is de-duplicated, deny-listed and sorted.
    """
    definitions = schema.get("definitions") or {}
    found: list[str] = []

    single = definitions.get("permission") or {}
    plural = definitions.get("permissions") or {}
    if isinstance(single.get("enum"), list):
        found = list(single["enum"])
    else:
        branches = (plural.get("items") or {}).get("anyOf") or plural.get("anyOf") or []
        for branch in branches:
            if isinstance(branch, dict) and isinstance(branch.get("enum"), list):
                found.extend(branch["enum"])

    unique = {p for p in found if isinstance(p, str)}
    return sorted(unique - PERMISSION_DENY_LIST)


def fetch_schema_permissions(url: str, timeout_s: float = 30) -> list[str]:
    """Blocking fetch of the manifest schema; returns parsed permissions."""
    req = urllib.request.Request(url, headers={"User-Agent": "ExtensionForge/1.0"})
    with urllib.request.urlopen(req, timeout=timeout_s) as resp:
        schema = json.loads(resp.read().decode("utf-8"))
    return parse_permission_schema(schema)


@dataclass
class CachedValue:
    """A cached whitelist and the clock reading it was fetched at."""
    value: tuple[str, ...]
    fetched_at: float


@dataclass
class PermissionWhitelist:
    """TTL-cached source of valid manifest permissions.

    ``fetcher`` is an async callable returning the permission list; the
    default fetches the schemastore schema on a worker thread. A failed or
    empty fetch falls back to FALLBACK_PERMISSIONS and is not cached, so
    the next call tries again.
    """

    fetcher: Callable[[], Awaitable[list[str]]] | None = None
    ttl_s: float = 24 * 60 * 60
    schema_url: str = "https://json.schemastore.org/chrome-manifest"
    clock: Callable[[], float] = time.monotonic
    cache: CachedValue | None = field(default=None, init=False)

    async def _fetch(self) -> list[str]:
        if self.fetcher is not None:
            return await self.fetcher()
        return await asyncio.to_thread(fetch_schema_permissions, self.schema_url)

    async def get_valid_permissions(self) -> tuple[str, ...]:
        now = self.clock()
        if self.cache is not None and now - self.cache.fetched_at < self.ttl_s:
            logger.debug("Permission whitelist served from cache")
            return self.cache.value

        logger.info("Fetching permission whitelist")
        try:
            permissions = await self._fetch()
        except Exception as e:
            logger.error("Permission whitelist fetch failed, using fallback: %s", e)
            return FALLBACK_PERMISSIONS

        if not permissions:
            logger.warning("Permission whitelist fetch returned nothing, using fallback")
            return FALLBACK_PERMISSIONS

        value = tuple(permissions)
        self.cache = CachedValue(value=value, fetched_at=now)
        return value

    def invalidate(self) -> None:
        self.cache = None
