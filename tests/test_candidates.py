"""Tests for candidates.py — concurrent fan-out, failure isolation, preflight."""

from __future__ import annotations

import asyncio
import json
import sys
import unittest
from pathlib import Path

_SCRIPT_DIR = Path(__file__).resolve().parent
_SRC_DIR = _SCRIPT_DIR.parent / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from candidates import Candidate, Outcome, generate_candidates, preflight_filter
from errors import StructuralGenerationError, TransportError
from generation_service import ExtensionRequest, GenerationOutput, ScriptedGenerationService
from usage import UsageRecord, aggregate_usage


def _manifest(permissions):
    return json.dumps({
        "manifest_version": 3,
        "name": "Tab Saver",
        "version": "1.0",
        "permissions": permissions,
        "background": {"service_worker": "background.js"},
    })


GOOD = {
    "manifest.json": _manifest(["tabs"]),
    "background.js": "chrome.tabs.query({ active: true });\n",
}
CRITICAL = dict(GOOD, **{"manifest.json": _manifest([])})
WARNING_ONLY = dict(GOOD, **{
    "popup.js": "const bg = chrome.extension.getBackgroundPage();\n",
})

REQUEST = ExtensionRequest(prompt="Save the current tab")


def _run(coro):
    return asyncio.run(coro)


class TestGenerateCandidates(unittest.TestCase):

    def test_returns_exactly_n_in_index_order(self):
        service = ScriptedGenerationService(outcomes={0: GOOD, 1: GOOD, 2: GOOD, 3: GOOD})
        candidates = _run(generate_candidates(service, REQUEST, None, 4))
        self.assertEqual([c.index for c in candidates], [0, 1, 2, 3])
        self.assertTrue(all(c.succeeded for c in candidates))

    def test_failure_isolated(self):
        """One attempt raising does not cancel or fail its siblings."""
        service = ScriptedGenerationService(outcomes={
            0: GOOD,
            1: TransportError("connection reset"),
            2: GOOD,
        })
        candidates = _run(generate_candidates(service, REQUEST, None, 3))

        self.assertEqual([c.outcome for c in candidates],
                         [Outcome.SUCCESS, Outcome.FAILURE, Outcome.SUCCESS])
        self.assertIn("TransportError", candidates[1].reason)
        self.assertIn("connection reset", candidates[1].reason)
        self.assertIsNone(candidates[1].bundle)
        self.assertEqual(service.count("generate"), 3)

    def test_all_failed_is_a_value_not_an_error(self):
        service = ScriptedGenerationService(outcomes={
            0: StructuralGenerationError("no tool call"),
            1: TransportError("timeout"),
        })
        candidates = _run(generate_candidates(service, REQUEST, None, 2))
        self.assertEqual(len(candidates), 2)
        self.assertFalse(any(c.succeeded for c in candidates))

    def test_attempts_start_concurrently(self):
        service = ScriptedGenerationService(outcomes={0: CRITICAL, 1: CRITICAL, 2: CRITICAL})
        _run(generate_candidates(service, REQUEST, None, 3))
        self.assertEqual([name for name, _ in service.calls[:3]], ["generate"] * 3)

    def test_each_attempt_gets_own_index(self):
        service = ScriptedGenerationService(outcomes={0: GOOD, 1: GOOD})
        _run(generate_candidates(service, REQUEST, None, 2))
        indices = sorted(detail for name, detail in service.calls if name == "generate")
        self.assertEqual(indices, [0, 1])

    def test_repair_runs_inside_attempt(self):
        fix = {"manifest.json": _manifest(["tabs"])}
        service = ScriptedGenerationService(outcomes={0: CRITICAL}, repairs=[fix])
        [candidate] = _run(generate_candidates(service, REQUEST, None, 1))
        self.assertTrue(candidate.succeeded)
        self.assertTrue(candidate.was_repaired)
        self.assertEqual(candidate.repair_rounds, 1)
        self.assertEqual(candidate.usage, service.usage + service.usage)

    def test_zero_candidates_rejected(self):
        service = ScriptedGenerationService()
        with self.assertRaises(ValueError):
            _run(generate_candidates(service, REQUEST, None, 0))

    def test_usage_includes_failed_attempts(self):
        billed = UsageRecord(30, 0, 30)
        service = ScriptedGenerationService(outcomes={
            0: GenerationOutput(bundle=GOOD, usage=UsageRecord(100, 50, 150)),
            1: StructuralGenerationError("no files", usage=billed),
            2: TransportError("reset"),
        })
        candidates = _run(generate_candidates(service, REQUEST, None, 3))
        self.assertEqual(candidates[1].usage, billed)
        self.assertIsNone(candidates[2].usage)
        self.assertEqual(aggregate_usage(candidates), UsageRecord(130, 50, 180))


class TestPreflight(unittest.TestCase):

    def _candidate(self, index, bundle=None, ok=True):
        return Candidate(
            index=index,
            outcome=Outcome.SUCCESS if ok else Outcome.FAILURE,
            bundle=bundle,
        )

    def test_criticals_fail_warnings_pass(self):
        results = preflight_filter([
            self._candidate(0, CRITICAL),
            self._candidate(1, WARNING_ONLY),
            self._candidate(2, GOOD),
        ])
        self.assertEqual([r.passed for r in results], [False, True, True])
        self.assertEqual([f.rule_id for f in results[1].findings], ["no-get-bg-page"])

    def test_failed_candidates_excluded(self):
        results = preflight_filter([
            self._candidate(0, ok=False),
            self._candidate(1, GOOD),
        ])
        self.assertEqual([r.index for r in results], [1])

    def test_original_indices_kept(self):
        results = preflight_filter([self._candidate(5, GOOD), self._candidate(2, GOOD)])
        self.assertEqual([r.index for r in results], [5, 2])


if __name__ == "__main__":
    unittest.main()
