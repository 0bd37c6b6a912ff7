"""Tests for arbitration.py — judge policy and deterministic fallbacks."""

from __future__ import annotations

import asyncio
import sys
import unittest
from pathlib import Path

_SCRIPT_DIR = Path(__file__).resolve().parent
_SRC_DIR = _SCRIPT_DIR.parent / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from arbitration import format_candidate, parse_judge_choice, select_winner
from candidates import PreflightResult
from errors import TransportError
from generation_service import ScriptedGenerationService
from pipeline_config import JudgeLimits
from usage import UsageRecord


def _result(index, passed=True, marker=""):
    bundle = {
        "manifest.json": '{"manifest_version": 3, "name": "C%d"}' % index,
        "background.js": f"// candidate {index} {marker}\n",
        "popup.js": "// ui\n",
    }
    return PreflightResult(index=index, bundle=bundle, passed=passed)


def _select(service, results):
    return asyncio.run(select_winner(service, results, "make a timer"))


class TestSelectWinner(unittest.TestCase):

    def test_empty_rejected(self):
        with self.assertRaises(ValueError):
            _select(ScriptedGenerationService(), [])

    def test_none_passed_falls_back_to_first(self):
        service = ScriptedGenerationService()
        verdict = _select(service, [_result(3, passed=False), _result(1, passed=False)])
        self.assertEqual(verdict.index, 3)
        self.assertTrue(verdict.degraded)
        self.assertFalse(verdict.judged)
        self.assertEqual(service.count("judge"), 0)

    def test_single_pass_needs_no_judge(self):
        service = ScriptedGenerationService()
        verdict = _select(service, [_result(0, passed=False), _result(2)])
        self.assertEqual(verdict.index, 2)
        self.assertFalse(verdict.degraded)
        self.assertFalse(verdict.judged)
        self.assertEqual(service.count("judge"), 0)

    def test_judge_choice_maps_to_original_index(self):
        service = ScriptedGenerationService(judge_reply=1)
        verdict = _select(service, [_result(0), _result(1, passed=False), _result(2)])
        self.assertEqual(verdict.index, 2)
        self.assertTrue(verdict.judged)
        self.assertFalse(verdict.degraded)
        self.assertEqual(verdict.usage, service.usage)

    def test_judge_sees_only_passing(self):
        service = ScriptedGenerationService(judge_reply=0)
        _select(service, [_result(0), _result(1, passed=False, marker="LOSER"), _result(2)])
        [(_, text)] = [c for c in service.calls if c[0] == "judge"]
        self.assertEqual(text.count("=== CANDIDATE "), 2)
        self.assertNotIn("LOSER", text)

    def test_text_reply_parsed(self):
        service = ScriptedGenerationService(judge_reply="Candidate 1 is best.")
        verdict = _select(service, [_result(4), _result(7)])
        self.assertEqual(verdict.index, 7)

    def test_judge_error_falls_back(self):
        service = ScriptedGenerationService(judge_reply=TransportError("judge down", usage=UsageRecord(5, 0, 5)))
        verdict = _select(service, [_result(4), _result(7)])
        self.assertEqual(verdict.index, 4)
        self.assertTrue(verdict.degraded)
        self.assertIn("judge down", verdict.degraded_reason)
        self.assertEqual(verdict.usage, UsageRecord(5, 0, 5))

    def test_out_of_range_falls_back(self):
        service = ScriptedGenerationService(judge_reply=9)
        verdict = _select(service, [_result(4), _result(7)])
        self.assertEqual(verdict.index, 4)
        self.assertTrue(verdict.degraded)
        self.assertEqual(verdict.usage, service.usage)

    def test_unparseable_falls_back(self):
        service = ScriptedGenerationService(judge_reply="they are all great")
        verdict = _select(service, [_result(4), _result(7)])
        self.assertEqual(verdict.index, 4)
        self.assertTrue(verdict.degraded)

    def test_degraded_is_logged(self):
        service = ScriptedGenerationService(judge_reply="?")
        with self.assertLogs("arbitration", level="WARNING"):
            _select(service, [_result(0), _result(1)])


class TestParseJudgeChoice(unittest.TestCase):

    def test_ints(self):
        self.assertEqual(parse_judge_choice(0, 2), 0)
        self.assertEqual(parse_judge_choice(1, 2), 1)
        self.assertIsNone(parse_judge_choice(2, 2))
        self.assertIsNone(parse_judge_choice(-1, 2))

    def test_strings(self):
        self.assertEqual(parse_judge_choice(" 1\n", 3), 1)
        self.assertIsNone(parse_judge_choice("-1", 3))
        self.assertIsNone(parse_judge_choice("", 3))

    def test_other_types(self):
        self.assertIsNone(parse_judge_choice(True, 3))
        self.assertIsNone(parse_judge_choice(None, 3))
        self.assertIsNone(parse_judge_choice(1.0, 3))


class TestFormatCandidate(unittest.TestCase):

    def test_truncation_and_missing_files(self):
        limits = JudgeLimits(manifest_chars=100, background_chars=10, ui_chars=100)
        text = format_candidate(0, {"manifest.json": "{}", "background.js": "x" * 50}, limits)
        self.assertTrue(text.startswith("=== CANDIDATE 0 ==="))
        self.assertIn("x" * 10 + "\n... [truncated]", text)
        self.assertNotIn("x" * 11, text)
        self.assertIn("--- popup.js ---\n(missing)", text)

    def test_custom_service_worker_shown(self):
        bundle = {
            "manifest.json": '{"manifest_version": 3, "background": {"service_worker": "sw.js"}}',
            "sw.js": "chrome.alarms.create('tick', { periodInMinutes: 1 });\n",
        }
        text = format_candidate(1, bundle, JudgeLimits())
        self.assertIn("--- sw.js ---\nchrome.alarms.create", text)
        self.assertNotIn("--- sw.js ---\n(missing)", text)
        self.assertNotIn("--- background.js ---", text)


if __name__ == "__main__":
    unittest.main()
