#!/usr/bin/env python3
"""
ExtensionForge CLI: Natural language → browser extension (Manifest V3).

Usage:
    python extforge.py "Remind me to drink water every hour"
    python extforge.py --candidates 5 "Pomodoro timer with a popup"
    python extforge.py --single "Count words on the current page"
    echo "Save the current tab URL to a list" | python extforge.py -

Lint an existing extension directory:
    python extforge.py --lint ./my-extension

Options:
    --candidates N       Parallel candidates for best-of-N (default: config, 3)
    --single             Single-shot generation (no fan-out, no judge)
    --config PATH        Pipeline config YAML (default: configs/pipeline.yaml)
    --model MODEL        Override the builder model
    --output-dir DIR     Output directory (default: ./output)
    --verbose / -v       Log pipeline details and show remaining findings
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
import time
from pathlib import Path

# Ensure src/ is importable
_SCRIPT_DIR = Path(__file__).resolve().parent
_SRC_DIR = _SCRIPT_DIR.parent / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))


STAGE_ORDER = {
    "planning": 1,
    "generating": 2,
    "preflight": 3,
    "arbitrating": 4,
}

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _print_stage(stage_result):
    """Print a stage update to the terminal."""
    idx = STAGE_ORDER.get(stage_result.stage, 0)
    label = stage_result.stage.capitalize()

    if stage_result.status == "skipped":
        print(f"  [{idx}/4] {label}... skipped ({stage_result.message})", flush=True)
    elif stage_result.status == "running":
        print(f"  [{idx}/4] {label}...", end=" ", flush=True)
    elif stage_result.status == "success":
        duration = f" ({stage_result.duration_ms}ms)" if stage_result.duration_ms else ""
        print(f"done{duration} {stage_result.message}", flush=True)
    elif stage_result.status == "failed":
        print(f"FAILED: {stage_result.message}", flush=True)


def extension_slug(name: str | None) -> str:
    """Directory name for an extension: lowercase [a-z0-9-], never empty."""
    slug = _SLUG_RE.sub("-", (name or "").lower()).strip("-")
    return slug or "extension"


def resolve_output_dir(output_root: str | Path, name: str | None) -> Path:
    """Per-extension directory under ``output_root``.

    Raises:
        ValueError: if the result would not sit inside ``output_root``.
    """
    root = Path(output_root).resolve()
    out_dir = (root / extension_slug(name)).resolve()
    if root not in out_dir.parents:
        raise ValueError(f"Refusing to write outside {root}: {out_dir}")
    return out_dir


def _load_config(path: str | None, model: str | None):
    from pipeline_config import PipelineConfig, load_config
    from paths import PIPELINE_CONFIG_PATH

    if path:
        config = load_config(path)
    elif PIPELINE_CONFIG_PATH.exists():
        config = load_config(PIPELINE_CONFIG_PATH)
    else:
        config = PipelineConfig()
    if model:
        config.models.builder = model
    return config


def _run_lint(target: str) -> int:
    from artifact_bundle import read_bundle_dir
    from extension_linter import has_critical, lint_bundle, summarize

    try:
        bundle = read_bundle_dir(target)
    except NotADirectoryError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    findings = lint_bundle(bundle)
    for f in findings:
        print(f"  {f}")
    print(f"\n{summarize(findings)}")
    return 1 if has_critical(findings) else 0


async def _generate(args, config) -> int:
    from artifact_bundle import finalize_bundle, write_bundle_dir
    from errors import AllCandidatesFailedError, ExtensionForgeError
    from generation_service import ExtensionRequest
    from orchestrator import ExtensionOrchestrator

    try:
        orch = ExtensionOrchestrator(config=config, on_stage_update=_print_stage)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    request = ExtensionRequest(prompt=args.prompt, user_id="cli")
    t0 = time.monotonic()
    try:
        if args.single:
            result = await orch.generate_extension(request)
        else:
            result = await orch.generate_refined_extension(request, args.candidates)
    except AllCandidatesFailedError as e:
        print(f"\n  FAILED: {e}", file=sys.stderr)
        if e.usage is not None:
            print(f"  Tokens spent: {e.usage.total_tokens}", file=sys.stderr)
        return 1
    except ExtensionForgeError as e:
        print(f"\n  FAILED: {e}", file=sys.stderr)
        return 1
    elapsed = time.monotonic() - t0

    final = finalize_bundle(result.bundle, is_new_project=True)
    out_dir = resolve_output_dir(args.output_dir, final.name)
    written = write_bundle_dir(final.files, out_dir)

    print(f"\n  {final.name or 'Extension'} v{final.version}: {final.description}")
    print(f"  Winner: candidate #{result.winner_index} "
          f"({result.candidates_valid}/{result.candidates_generated} passed preflight)")
    if result.degraded_reason:
        print(f"  Arbitration fallback: {result.degraded_reason}")
    print(f"  Tokens: {result.usage.prompt_tokens} prompt + "
          f"{result.usage.completion_tokens} completion = {result.usage.total_tokens}")
    print(f"  Wrote {len(written)} file(s) to {out_dir} in {elapsed:.1f}s")
    if args.verbose and result.findings:
        print("\n  Remaining findings:")
        for f in result.findings:
            print(f"    {f}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="extforge",
        description="ExtensionForge: Natural language → browser extension",
        epilog="Set ANTHROPIC_API_KEY env var before using LLM generation.",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help='Natural language description, or "-" to read from stdin',
    )
    parser.add_argument(
        "--lint",
        type=str,
        default=None,
        metavar="DIR",
        help="Skip generation, lint this extension directory",
    )
    parser.add_argument(
        "--candidates",
        type=int,
        default=None,
        help="Number of parallel candidates (default: from config)",
    )
    parser.add_argument(
        "--single",
        action="store_true",
        help="Single-shot generation without fan-out",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Pipeline config YAML (default: configs/pipeline.yaml)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Override the builder model",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="./output",
        help="Output directory (default: ./output)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose logging",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.lint:
        sys.exit(_run_lint(args.lint))

    if args.prompt is None:
        parser.error("a prompt is required unless --lint is given")
    if args.prompt == "-":
        args.prompt = sys.stdin.read().strip()
    if not args.prompt:
        parser.error("empty prompt")
    if args.candidates is not None and args.candidates < 1:
        parser.error("--candidates must be >= 1")

    try:
        config = _load_config(args.config, args.model)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    print(f"\n  ExtensionForge: \"{args.prompt}\"\n")
    sys.exit(asyncio.run(_generate(args, config)))


if __name__ == "__main__":
    main()
