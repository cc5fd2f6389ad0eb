from __future__ import annotations

import argparse
import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))
from layout_audit_core import core as layout_core  # noqa: E402
from layout_audit_core.cli import main  # noqa: E402
from layout_audit_core.commands import command_diff  # noqa: E402
from layout_fixtures import modified_table, simple_table  # noqa: E402


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.old = self.root / "old.json"
        self.new = self.root / "new.json"
        layout_core.write_snapshot(self.old, simple_table().snapshot("sha256:old"))
        layout_core.write_snapshot(self.new, modified_table().snapshot("sha256:new"))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def run_main(self, *argv: str) -> tuple[int, str, str]:
        out = io.StringIO()
        err = io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def write_config(self, payload: dict) -> Path:
        path = self.root / "audit.json"
        layout_core.write_json(path, payload)
        return path

    def test_diff_fails_on_breaking_change(self) -> None:
        report = self.root / "diff.json"
        code, _, err = self.run_main("diff", str(self.old), str(self.new), "--fail-on-breaking", "--report", str(report))
        self.assertEqual(code, 1)
        payload = json.loads(report.read_text(encoding="utf-8"))
        self.assertTrue(payload["summary"]["breaking"])
        self.assertEqual(payload["added"], ["NewStruct"])
        self.assertEqual(payload["old_binary"]["identity"], "sha256:old")
        self.assertIn("breaking: NoPadding (12 -> 16 bytes)", err)

    def test_diff_without_gates_exits_zero(self) -> None:
        code, out, _ = self.run_main("diff", str(self.old), str(self.new))
        self.assertEqual(code, 0)
        self.assertIn("NoPadding", json.loads(out)["changes"])

    def test_diff_of_identical_snapshots_passes_gates(self) -> None:
        args = argparse.Namespace(
            old=str(self.old),
            new=str(self.old),
            report=str(self.root / "same.json"),
            fail_on_breaking=True,
            fail_on_regression=True,
            jobs=1,
        )
        with redirect_stderr(io.StringIO()):
            self.assertEqual(command_diff(args), 0)
        payload = json.loads((self.root / "same.json").read_text(encoding="utf-8"))
        self.assertEqual(payload["changed"], {})

    def test_diff_filter_limits_compared_types(self) -> None:
        code, out, _ = self.run_main("diff", str(self.old), str(self.new), "--filter", "*Padding", "--fail-on-breaking")
        self.assertEqual(code, 1)
        payload = json.loads(out)
        self.assertEqual((payload["added"], payload["removed"]), ([], []))
        self.assertEqual(sorted(payload["changed"]), ["InternalPadding", "NoPadding"])
        self.assertEqual(payload["summary"]["unchanged"], 1)

        code, out, _ = self.run_main("diff", str(self.old), str(self.new), "--filter", "Tail", "--fail-on-breaking")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["changed"], {})

    def test_inspect_writes_report(self) -> None:
        output = self.root / "inspect.json"
        code, _, err = self.run_main("inspect", str(self.old), "--min-padding", "1", "--output", str(output))
        self.assertEqual(code, 0)
        payload = json.loads(output.read_text(encoding="utf-8"))
        names = [item["name"] for item in payload["types"]]
        self.assertIn("InternalPadding", names)
        self.assertNotIn("NoPadding", names)
        self.assertEqual(payload["summary"]["type_count"], len(names))
        self.assertEqual(payload["config"]["cache_line_size"], 64)
        self.assertIn("Inspected", err)

    def test_inspect_filter_and_cache_line_override(self) -> None:
        code, out, _ = self.run_main("inspect", str(self.old), "--filter", "*Padding", "--cache-line", "32")
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual([item["name"] for item in payload["types"]], ["InternalPadding", "NoPadding", "TailPadding"])
        self.assertEqual(payload["config"]["cache_line_size"], 32)

    def test_inspect_sorts_by_padding_and_keeps_top(self) -> None:
        code, out, _ = self.run_main("inspect", str(self.old), "--sort-by", "padding", "--top", "2")
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual(
            [(item["name"], item["padding_bytes"]) for item in payload["types"]],
            [("WithPointer", 11), ("InternalPadding", 6)],
        )
        self.assertEqual(payload["summary"]["type_count"], 2)
        self.assertEqual(payload["summary"]["total_padding"], 17)

    def test_inspect_top_must_be_positive(self) -> None:
        with redirect_stderr(io.StringIO()), self.assertRaises(SystemExit) as ctx:
            main(["inspect", str(self.old), "--top", "0"])
        self.assertEqual(ctx.exception.code, 2)

    def test_suggest_lists_reorderable_types(self) -> None:
        code, out, _ = self.run_main("suggest", str(self.old))
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual([item["name"] for item in payload["suggestions"]], ["InternalPadding", "Outer", "WithPointer"])
        self.assertEqual(payload["total_savings"], 16)

        code, out, _ = self.run_main("suggest", str(self.old), "--min-savings", "5")
        self.assertEqual([item["name"] for item in json.loads(out)["suggestions"]], ["WithPointer"])

    def test_suggest_with_max_align_packs_tighter(self) -> None:
        code, out, _ = self.run_main("suggest", str(self.old), "--max-align", "1")
        self.assertEqual(code, 0)
        suggestions = {item["name"]: item for item in json.loads(out)["suggestions"]}
        self.assertIn("TailPadding", suggestions)
        self.assertEqual(suggestions["TailPadding"]["candidate_size"], 5)
        self.assertEqual(suggestions["WithPointer"]["candidate_size"], 13)
        self.assertEqual(suggestions["WithPointer"]["savings_bytes"], 11)

    def test_check_fails_over_budget(self) -> None:
        config = self.write_config({"budgets": {"InternalPadding": {"max_size": 12}}})
        report = self.root / "check.json"
        code, _, err = self.run_main("check", str(self.old), "--config", str(config), "--report", str(report))
        self.assertEqual(code, 1)
        self.assertEqual(json.loads(report.read_text(encoding="utf-8"))["status"], "fail")
        self.assertIn("error: InternalPadding: size 16 exceeds budget 12", err)

    def test_check_passes_within_budget(self) -> None:
        config = self.write_config({"budgets": {"InternalPadding": {"max_size": 16, "max_padding": 6}}})
        code, _, err = self.run_main("check", str(self.old), "--config", str(config))
        self.assertEqual(code, 0)
        self.assertIn("Budget check pass", err)

    def test_check_without_budgets_is_an_error(self) -> None:
        config = self.write_config({"cache_line_size": 64})
        code, _, err = self.run_main("check", str(self.old), "--config", str(config))
        self.assertEqual(code, 2)
        self.assertIn("layout-audit error: config: No budgets configured", err)

    def test_unreadable_binary_reports_extract_stage(self) -> None:
        junk = self.root / "junk.bin"
        junk.write_bytes(b"definitely not an object file")
        code, out, err = self.run_main("inspect", str(junk))
        self.assertEqual(code, 2)
        self.assertEqual(out, "")
        self.assertIn("layout-audit error: extract:", err)

    def test_missing_input_reports_extract_stage(self) -> None:
        code, _, err = self.run_main("diff", str(self.root / "absent.json"), str(self.new))
        self.assertEqual(code, 2)
        self.assertIn("Input does not exist", err)

    def test_jobs_must_be_positive(self) -> None:
        with redirect_stderr(io.StringIO()), self.assertRaises(SystemExit) as ctx:
            main(["inspect", str(self.old), "--jobs", "0"])
        self.assertEqual(ctx.exception.code, 2)


if __name__ == "__main__":
    unittest.main()
