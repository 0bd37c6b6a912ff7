"""Tests for artifact_bundle.py — normalization, merging, finalization, disk I/O."""

from __future__ import annotations

import json
import sys
import tempfile
import unittest
from pathlib import Path

_SCRIPT_DIR = Path(__file__).resolve().parent
_SRC_DIR = _SCRIPT_DIR.parent / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from artifact_bundle import (
    DEFAULT_ICON_PATHS,
    NEW_PROJECT_VERSION,
    as_text,
    background_entry,
    extract_json_object,
    finalize_bundle,
    is_complete,
    merge_bundles,
    normalize_bundle,
    parse_manifest,
    read_bundle_dir,
    text_entries,
    write_bundle_dir,
)

_MANIFEST = json.dumps({
    "manifest_version": 3,
    "name": "Water Reminder",
    "version": "2.3.1",
    "description": "Reminds you to drink water.",
})


class TestMerge(unittest.TestCase):

    def test_patch_wins_and_omitted_keys_kept(self):
        base = {"manifest.json": "old", "background.js": "bg", "popup.js": "ui"}
        patch = {"manifest.json": "new", "styles.css": "body {}"}
        merged = merge_bundles(base, patch)
        self.assertEqual(merged, {
            "manifest.json": "new",
            "background.js": "bg",
            "popup.js": "ui",
            "styles.css": "body {}",
        })

    def test_inputs_untouched(self):
        base = {"a.js": "1"}
        patch = {"a.js": "2"}
        merge_bundles(base, patch)
        self.assertEqual(base, {"a.js": "1"})
        self.assertEqual(patch, {"a.js": "2"})

    def test_empty_patch_is_identity(self):
        base = {"a.js": "1", "icon.png": b"\x89"}
        self.assertEqual(merge_bundles(base, {}), base)


class TestNormalize(unittest.TestCase):

    def test_underscore_names_fixed(self):
        bundle = normalize_bundle({"manifest_json": _MANIFEST, "background_js": "x", "README_md": "r"})
        self.assertIn("manifest.json", bundle)
        self.assertIn("background.js", bundle)
        self.assertIn("README.md", bundle)
        self.assertNotIn("manifest_json", bundle)

    def test_real_extension_untouched(self):
        bundle = normalize_bundle({"lib/my_util.js": "x"}, inject_icons=False)
        self.assertEqual(list(bundle), ["lib/my_util.js"])

    def test_manifest_object_serialized(self):
        bundle = normalize_bundle({"manifest.json": {"manifest_version": 3, "name": "X"}})
        self.assertIsInstance(bundle["manifest.json"], str)
        self.assertEqual(json.loads(bundle["manifest.json"])["name"], "X")

    def test_non_text_values_dropped(self):
        bundle = normalize_bundle({"manifest.json": _MANIFEST, "bad.js": 42, "none.js": None}, inject_icons=False)
        self.assertEqual(list(bundle), ["manifest.json"])

    def test_icons_injected(self):
        bundle = normalize_bundle({"manifest.json": _MANIFEST})
        for path in DEFAULT_ICON_PATHS:
            self.assertIsInstance(bundle[path], bytes)
            self.assertTrue(bundle[path].startswith(b"\x89PNG"))

    def test_existing_icon_kept(self):
        bundle = normalize_bundle({"manifest.json": _MANIFEST, "icons/icon16.png": b"custom"})
        self.assertEqual(bundle["icons/icon16.png"], b"custom")

    def test_no_icons_for_repair_patches(self):
        bundle = normalize_bundle({"background.js": "x"}, inject_icons=False)
        self.assertEqual(bundle, {"background.js": "x"})


class TestManifestHelpers(unittest.TestCase):

    def test_parse_and_complete(self):
        self.assertTrue(is_complete({"manifest.json": _MANIFEST}))
        self.assertEqual(parse_manifest({"manifest.json": _MANIFEST})["name"], "Water Reminder")

    def test_incomplete(self):
        self.assertFalse(is_complete({}))
        self.assertFalse(is_complete({"manifest.json": "{broken"}))
        self.assertFalse(is_complete({"manifest.json": '"just a string"'}))

    def test_deeply_nested_manifest_incomplete(self):
        deep = "[" * 100000 + "]" * 100000
        self.assertIsNone(parse_manifest({"manifest.json": deep}))
        self.assertFalse(is_complete({"manifest.json": deep}))

    def test_background_entry(self):
        self.assertEqual(background_entry(None), "background.js")
        self.assertEqual(background_entry({}), "background.js")
        self.assertEqual(background_entry({"background": {"service_worker": ""}}), "background.js")
        self.assertEqual(background_entry({"background": {"service_worker": "sw.js"}}), "sw.js")
        self.assertEqual(background_entry({"background": "sw.js"}), "background.js")

    def test_bytes_manifest(self):
        self.assertTrue(is_complete({"manifest.json": _MANIFEST.encode("utf-8")}))

    def test_text_helpers(self):
        self.assertEqual(text_entries({"a.js": "x", "i.png": b"\x89"}), {"a.js": "x"})
        self.assertIsNone(as_text(None))
        self.assertIsNone(as_text(b"\xff\xfe\x00"))
        self.assertEqual(as_text(b"ok"), "ok")


class TestExtractJson(unittest.TestCase):

    def test_raw_json(self):
        self.assertEqual(extract_json_object('{"a": 1}'), {"a": 1})

    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"files": {"a.js": "x"}}\n```\nDone.'
        self.assertEqual(extract_json_object(text), {"files": {"a.js": "x"}})

    def test_embedded_in_prose(self):
        text = 'Sure! {"choice": 2} is my answer.'
        self.assertEqual(extract_json_object(text), {"choice": 2})

    def test_no_object(self):
        with self.assertRaises(ValueError):
            extract_json_object("no json here")
        with self.assertRaises(ValueError):
            extract_json_object("[1, 2, 3]")

    def test_deep_nesting_is_value_error(self):
        with self.assertRaises(ValueError):
            extract_json_object('{"a": ' + "[" * 100000 + "]" * 100000 + "}")


class TestFinalize(unittest.TestCase):

    def test_new_project_forced_version_and_license(self):
        bundle = {"manifest.json": _MANIFEST, "summary": "A water reminder.", "background.js": "x"}
        final = finalize_bundle(bundle, is_new_project=True, year=2024)

        self.assertNotIn("summary", final.files)
        self.assertEqual(final.summary, "A water reminder.")
        self.assertEqual(json.loads(final.files["manifest.json"])["version"], NEW_PROJECT_VERSION)
        self.assertEqual(final.version, NEW_PROJECT_VERSION)
        self.assertEqual(final.name, "Water Reminder")
        self.assertEqual(final.description, "Reminds you to drink water.")
        self.assertIn("Copyright (c) 2024", final.files["LICENSE"])
        self.assertIn("added MIT LICENSE", final.notes)
        # input untouched
        self.assertIn("summary", bundle)

    def test_existing_license_kept(self):
        bundle = {"manifest.json": _MANIFEST, "LICENSE.md": "Apache"}
        final = finalize_bundle(bundle)
        self.assertNotIn("LICENSE", final.files)
        self.assertEqual(final.files["LICENSE.md"], "Apache")

    def test_edit_keeps_version(self):
        final = finalize_bundle({"manifest.json": _MANIFEST}, is_new_project=False)
        self.assertEqual(final.version, "2.3.1")

    def test_unparseable_manifest_version_rewritten(self):
        broken = '{"name": "X", "version": "9.9", }'
        final = finalize_bundle({"manifest.json": broken, "summary": "Fallback text"})
        self.assertIn('"version": "0.1.0"', final.files["manifest.json"])
        self.assertIsNone(final.name)
        self.assertEqual(final.description, "Fallback text")

    def test_description_default(self):
        manifest = json.dumps({"manifest_version": 3, "name": "X", "version": "0.1.0"})
        final = finalize_bundle({"manifest.json": manifest})
        self.assertEqual(final.description, "No description available")


class TestBundleDir(unittest.TestCase):

    def test_write_then_read(self):
        bundle = normalize_bundle({"manifest.json": _MANIFEST, "popup.js": "let x = 1;\n"})
        with tempfile.TemporaryDirectory() as tmp:
            written = write_bundle_dir(bundle, tmp)
            self.assertEqual(len(written), len(bundle))
            loaded = read_bundle_dir(tmp)
        self.assertEqual(loaded["manifest.json"], _MANIFEST)
        self.assertEqual(loaded["popup.js"], "let x = 1;\n")
        self.assertIsInstance(loaded["icons/icon128.png"], bytes)

    def test_refuses_path_escape(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ValueError):
                write_bundle_dir({"../evil.js": "x"}, Path(tmp) / "out")

    def test_read_missing_dir(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(NotADirectoryError):
                read_bundle_dir(Path(tmp) / "nope")


if __name__ == "__main__":
    unittest.main()
