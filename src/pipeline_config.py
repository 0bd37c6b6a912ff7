"""Pipeline configuration loader for ExtensionForge.

Loads model names, retry/repair bounds, judge truncation limits and the
permission-whitelist policy from configs/pipeline.yaml. Every key is
optional; anything missing keeps the dataclass default.

Usage:
    from pipeline_config import load_config

    config = load_config()
    config.repair_rounds      # 2
    config.models.judge       # "claude-haiku-4-5-20251001"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from paths import PIPELINE_CONFIG_PATH

DEFAULT_BUILDER_MODEL = "claude-sonnet-4-20250514"
DEFAULT_JUDGE_MODEL = "claude-haiku-4-5-20251001"
DEFAULT_SCHEMA_URL = "https://json.schemastore.org/chrome-manifest"


@dataclass
class ModelNames:
    """Which model serves each persona."""
    builder: str = DEFAULT_BUILDER_MODEL
    planner: str = DEFAULT_BUILDER_MODEL
    judge: str = DEFAULT_JUDGE_MODEL


@dataclass
class JudgeLimits:
    """Per-file truncation applied when formatting candidates for the judge."""
    manifest_chars: int = 2000
    background_chars: int = 2000
    ui_chars: int = 1500


@dataclass
class PipelineConfig:
    """Complete parsed configuration."""
    models: ModelNames = field(default_factory=ModelNames)
    max_tokens: int = 8192
    temperature: float = 0.7
    max_transport_attempts: int = 3
    retry_delay_s: float = 1.0
    candidate_count: int = 3
    repair_rounds: int = 2
    judge: JudgeLimits = field(default_factory=JudgeLimits)
    whitelist_ttl_s: float = 24 * 60 * 60
    schema_url: str = DEFAULT_SCHEMA_URL

    def validate(self) -> None:
        """Raise ValueError on out-of-range settings."""
        if self.max_transport_attempts < 1:
            raise ValueError("max_transport_attempts must be >= 1")
        if self.candidate_count < 1:
            raise ValueError("candidate_count must be >= 1")
        if self.repair_rounds < 0:
            raise ValueError("repair_rounds must be >= 0")
        if self.retry_delay_s < 0:
            raise ValueError("retry_delay_s must be >= 0")
        if self.whitelist_ttl_s < 0:
            raise ValueError("whitelist_ttl_s must be >= 0")


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Invalid pipeline config: '{key}' must be a mapping")
    return value


def config_from_dict(raw: dict[str, Any]) -> PipelineConfig:
    """Build a PipelineConfig from an already-parsed mapping."""
    if not isinstance(raw, dict):
        raise ValueError("Invalid pipeline config: top level must be a mapping")

    models = _section(raw, "models")
    generation = _section(raw, "generation")
    pipeline = _section(raw, "pipeline")
    judge = _section(raw, "judge")
    whitelist = _section(raw, "whitelist")

    defaults = PipelineConfig()
    try:
        config = PipelineConfig(
            models=ModelNames(
                builder=models.get("builder", defaults.models.builder),
                planner=models.get("planner", defaults.models.planner),
                judge=models.get("judge", defaults.models.judge),
            ),
            max_tokens=int(generation.get("max_tokens", defaults.max_tokens)),
            temperature=float(generation.get("temperature", defaults.temperature)),
            max_transport_attempts=int(
                generation.get("max_transport_attempts", defaults.max_transport_attempts)
            ),
            retry_delay_s=float(generation.get("retry_delay_s", defaults.retry_delay_s)),
            candidate_count=int(pipeline.get("candidate_count", defaults.candidate_count)),
            repair_rounds=int(pipeline.get("repair_rounds", defaults.repair_rounds)),
            judge=JudgeLimits(
                manifest_chars=int(judge.get("manifest_chars", defaults.judge.manifest_chars)),
                background_chars=int(judge.get("background_chars", defaults.judge.background_chars)),
                ui_chars=int(judge.get("ui_chars", defaults.judge.ui_chars)),
            ),
            whitelist_ttl_s=float(whitelist.get("ttl_s", defaults.whitelist_ttl_s)),
            schema_url=str(whitelist.get("schema_url", defaults.schema_url)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid pipeline config: {e}") from e

    config.validate()
    return config


def load_config(config_path: str | Path | None = None) -> PipelineConfig:
    """Load pipeline settings from YAML.

    Args:
        config_path: Path to config file. Defaults to configs/pipeline.yaml.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If config is malformed.
    """
    path = Path(config_path) if config_path else PIPELINE_CONFIG_PATH

    if not path.exists():
        raise FileNotFoundError(f"Pipeline config not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    return config_from_dict(raw or {})


# ---------------------------------------------------------------------------
# Self-test
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    cfg = load_config()
    print(f"Loaded {PIPELINE_CONFIG_PATH}")
    print(f"  models: builder={cfg.models.builder} judge={cfg.models.judge}")
    print(f"  candidates={cfg.candidate_count} repair_rounds={cfg.repair_rounds}")
    print(f"  transport attempts={cfg.max_transport_attempts} delay={cfg.retry_delay_s}s")
