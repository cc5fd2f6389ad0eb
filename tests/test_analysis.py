from __future__ import annotations

import unittest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))
from layout_audit_core import core as layout_core  # noqa: E402
from layout_fixtures import DescriptorTable, network_table, simple_table  # noqa: E402


class PaddingAnalysisTests(unittest.TestCase):
    def setUp(self) -> None:
        self.simple = simple_table().snapshot()
        self.network = network_table().snapshot()
        self.config = layout_core.AuditConfig(hot_path_tags=("Hot*", "PackedHeader"))

    def report(self, snapshot: layout_core.Snapshot, name: str) -> layout_core.LayoutReport:
        return layout_core.analyze_layout(snapshot.get(name), self.config)

    def test_no_padding_is_not_reorderable(self) -> None:
        report = self.report(self.simple, "NoPadding")
        self.assertEqual((report.size, report.used_bytes, report.padding_bytes), (12, 12, 0))
        self.assertEqual(report.padding_ratio, 0.0)
        self.assertFalse(report.reorderable)
        self.assertEqual(report.candidate.candidate_size, 12)

    def test_internal_padding_is_reorderable(self) -> None:
        report = self.report(self.simple, "InternalPadding")
        self.assertEqual((report.size, report.used_bytes, report.padding_bytes), (16, 10, 6))
        self.assertAlmostEqual(report.padding_ratio, 0.375)
        self.assertTrue(report.reorderable)
        candidate = report.candidate
        self.assertEqual(candidate.candidate_size, 12)
        self.assertEqual(candidate.savings_bytes, 4)
        self.assertEqual(
            [(m.name, m.offset) for m in candidate.members],
            [("b", 0), ("d", 4), ("a", 8), ("c", 9)],
        )

    def test_candidate_never_mutates_input(self) -> None:
        layout = self.simple.get("InternalPadding")
        before = layout.as_dict()
        layout_core.reorder_candidate(layout)
        self.assertEqual(layout.as_dict(), before)

    def test_candidate_never_has_more_padding_than_original(self) -> None:
        for snapshot in (self.simple, self.network):
            for layout in snapshot:
                candidate = layout_core.reorder_candidate(layout)
                self.assertLessEqual(candidate.candidate_size, layout.size, layout.name)
                self.assertLessEqual(candidate.candidate_size - layout.used_bytes, layout.padding_bytes, layout.name)

    def test_hot_order_fits_a_cache_line(self) -> None:
        report = self.report(self.network, "HotOrder")
        self.assertTrue(report.hot)
        self.assertFalse(report.cache_unfriendly)
        self.assertEqual((report.cache_lines, report.cache_line_density), (1, 1.0))

    def test_hot_type_straddling_lines_is_cache_unfriendly(self) -> None:
        report = self.report(self.network, "PackedHeader")
        self.assertTrue(report.hot)
        self.assertTrue(report.cache_unfriendly)
        cold = self.report(self.network, "UnpackedHeader")
        self.assertFalse(cold.hot)
        self.assertFalse(cold.cache_unfriendly)

    def test_fits_cache_line_rules(self) -> None:
        self.assertTrue(layout_core.fits_cache_line(16, 8, 64))
        self.assertTrue(layout_core.fits_cache_line(128, 64, 64))
        self.assertFalse(layout_core.fits_cache_line(128, 8, 64))
        self.assertFalse(layout_core.fits_cache_line(24, 8, 64))

    def test_packed_header_is_smaller_and_exempt(self) -> None:
        packed = self.report(self.network, "PackedHeader")
        unpacked = self.report(self.network, "UnpackedHeader")
        self.assertLess(packed.size, unpacked.size)
        self.assertEqual(packed.padding_bytes, 0)
        self.assertTrue(packed.is_packed)
        self.assertFalse(packed.reorderable)
        self.assertEqual(packed.candidate.exempt_reason, "packed")
        self.assertGreater(unpacked.padding_bytes, 0)
        self.assertEqual(unpacked.gaps[-1].offset + unpacked.gaps[-1].size, unpacked.size)

    def test_unions_are_exempt_but_report_padding(self) -> None:
        t = DescriptorTable("union.c")
        t.aggregate(
            "Mixed",
            8,
            [("c", t.base("char", 1), 0), ("l", t.base("long int", 8), 0)],
            tag="union",
        )
        t.aggregate("Small", 8, [("c", t.base("char", 1), 0), ("i", t.base("int", 4), 0)], tag="union")
        snapshot = t.snapshot()
        mixed = layout_core.analyze_layout(snapshot.get("Mixed"))
        self.assertEqual((mixed.used_bytes, mixed.padding_bytes), (8, 0))
        small = layout_core.analyze_layout(snapshot.get("Small"))
        self.assertEqual((small.used_bytes, small.padding_bytes), (4, 4))
        self.assertFalse(small.reorderable)
        self.assertEqual(small.candidate.exempt_reason, "union")

    def test_bitfield_units_move_together(self) -> None:
        t = DescriptorTable("bits.c")
        uint_t = t.base("unsigned int", 4)
        t.aggregate(
            "Mixed",
            24,
            [
                ("flag", t.base("char", 1), 0),
                ("ptr", t.pointer(None), 8),
                ("lo", uint_t, None, {"bit_size": 3, "data_bit_offset": 128}),
                ("hi", uint_t, None, {"bit_size": 5, "data_bit_offset": 131}),
            ],
        )
        layout = t.snapshot().get("Mixed")
        self.assertEqual(layout.padding_bytes, 7 + 7)
        candidate = layout_core.reorder_candidate(layout)
        self.assertTrue(candidate.reorderable)
        self.assertEqual(candidate.candidate_size, 16)
        placed = {m.name: m.offset for m in candidate.members}
        self.assertEqual(placed["ptr"], 0)
        self.assertEqual(placed["lo"], placed["hi"])
        self.assertEqual(placed["lo"], 8)
        self.assertEqual(placed["flag"], 12)

    def test_flexible_array_stays_last(self) -> None:
        t = DescriptorTable("flex.c")
        char_t = t.base("char", 1)
        t.aggregate(
            "Packet",
            16,
            [
                ("kind", char_t, 0),
                ("length", t.base("long int", 8), 8),
                ("data", t.array(char_t, None), 16),
            ],
        )
        report = layout_core.analyze_layout(t.snapshot().get("Packet"))
        self.assertEqual(report.padding_bytes, 7)
        self.assertFalse(report.reorderable)
        self.assertEqual(report.candidate.members[-1].name, "data")

    def test_partial_layout_lists_unresolved_members(self) -> None:
        t = DescriptorTable("broken.c")
        opaque = t.declaration("Opaque")
        t.aggregate("Holder", 16, [("value", opaque, 0), ("count", t.base("int", 4), 8)])
        report = layout_core.analyze_layout(t.snapshot().get("Holder"))
        self.assertTrue(report.partial)
        self.assertEqual(report.unresolved_members, ("value",))
        self.assertFalse(report.reorderable)
        self.assertEqual(report.candidate.exempt_reason, "unresolved members")

    def test_max_align_caps_candidate_alignment(self) -> None:
        layout = self.simple.get("WithPointer")
        self.assertEqual(layout_core.reorder_candidate(layout).candidate_size, 16)
        self.assertEqual(layout_core.reorder_candidate(layout, max_align=2).candidate_size, 14)
        packed = layout_core.reorder_candidate(layout, max_align=1)
        self.assertEqual(packed.candidate_size, 13)
        self.assertEqual([(m.name, m.offset) for m in packed.members], [("ptr", 0), ("value", 8), ("tag", 12)])

    def test_padding_threshold(self) -> None:
        config = layout_core.AuditConfig(padding_threshold=0.25)
        self.assertTrue(layout_core.analyze_layout(self.simple.get("InternalPadding"), config).over_threshold)
        self.assertFalse(layout_core.analyze_layout(self.simple.get("NoPadding"), config).over_threshold)
        self.assertFalse(layout_core.analyze_layout(self.simple.get("InternalPadding")).over_threshold)

    def test_atomics_on_one_line_share_it(self) -> None:
        report = self.report(self.network, "Counters")
        sharing = report.false_sharing
        self.assertEqual(sharing.atomic_members, ("produced", "consumed"))
        self.assertEqual(
            [(w.member_a, w.member_b, w.cache_line, w.gap_bytes) for w in sharing.shared_lines],
            [("produced", "consumed", 0, 0)],
        )
        self.assertEqual(sharing.spanning, ())

    def test_atomic_spanning_a_line_boundary(self) -> None:
        t = DescriptorTable("span.c")
        atomic_long = t.qualified("atomic", t.base("long int", 8))
        t.aggregate(
            "Straddle",
            72,
            [("pad", t.array(t.base("char", 1), 60), 0), ("counter", atomic_long, 60), ("other", atomic_long, 64)],
        )
        report = layout_core.analyze_layout(t.snapshot().get("Straddle"))
        self.assertEqual(
            [(w.member, w.start_line, w.end_line) for w in report.false_sharing.spanning],
            [("counter", 0, 1)],
        )
        self.assertEqual(
            [(w.member_a, w.member_b, w.cache_line) for w in report.false_sharing.shared_lines],
            [("counter", "other", 1)],
        )
        self.assertEqual(report.false_sharing.warning_count, 2)

    def test_cache_line_size_is_configurable(self) -> None:
        config = layout_core.AuditConfig(cache_line_size=32, hot_path_tags=("HotOrder",))
        report = layout_core.analyze_layout(self.network.get("HotOrder"), config)
        self.assertEqual(report.cache_lines, 2)
        self.assertTrue(report.cache_unfriendly)

    def test_analyze_snapshot_orders_by_name_and_filters(self) -> None:
        config = layout_core.AuditConfig(include_patterns=("*Padding",), exclude_patterns=("Tail*",))
        reports = layout_core.analyze_snapshot(self.simple, config)
        self.assertEqual([r.name for r in reports], ["InternalPadding", "NoPadding"])

    def test_parallel_analysis_matches_sequential(self) -> None:
        sequential = [r.as_dict() for r in layout_core.analyze_snapshot(self.simple, self.config)]
        parallel = [r.as_dict() for r in layout_core.analyze_snapshot(self.simple, self.config, jobs=4)]
        self.assertEqual(sequential, parallel)

    def test_report_as_dict_is_json_ready(self) -> None:
        payload = self.report(self.simple, "InternalPadding").as_dict()
        self.assertEqual(payload["padding_ratio"], 0.375)
        self.assertEqual(payload["gaps"][0], {"offset": 1, "size": 3, "after_member": "a"})
        self.assertTrue(payload["candidate"]["reorderable"])


class BudgetCheckTests(unittest.TestCase):
    def setUp(self) -> None:
        self.reports = layout_core.analyze_snapshot(simple_table().snapshot())

    def test_exact_budget_beats_glob(self) -> None:
        config = layout_core.AuditConfig(
            budgets=(
                layout_core.Budget(pattern="*Padding", max_padding=3),
                layout_core.Budget(pattern="InternalPadding", max_padding=8),
            )
        )
        result = layout_core.check_budgets(self.reports, config)
        self.assertEqual(result["status"], "pass")
        self.assertEqual(sorted(result["checked_types"]), ["InternalPadding", "NoPadding", "TailPadding"])
        self.assertEqual(result["errors"], [])

    def test_budget_violations_fail(self) -> None:
        config = layout_core.AuditConfig(
            budgets=(
                layout_core.Budget(pattern="InternalPadding", max_size=12, max_padding_percent=25.0),
                layout_core.Budget(pattern="WithAtomics", max_false_sharing_warnings=0),
            )
        )
        result = layout_core.check_budgets(self.reports, config)
        self.assertEqual(result["status"], "fail")
        self.assertEqual(len(result["errors"]), 3)
        self.assertTrue(result["errors"][0].startswith("InternalPadding: size 16 exceeds budget 12"))
        self.assertIn("37.5%", result["errors"][1])
        self.assertIn("WithAtomics: 1 false sharing warnings", result["errors"][2])

    def test_partial_layout_is_not_charged_padding(self) -> None:
        t = DescriptorTable("broken.c")
        opaque = t.declaration("Opaque")
        t.aggregate("Holder", 16, [("value", opaque, 0), ("ptr", t.pointer(opaque), 8)])
        reports = layout_core.analyze_snapshot(t.snapshot())
        self.assertEqual(reports[0].padding_bytes, 0)
        config = layout_core.AuditConfig(budgets=(layout_core.Budget(pattern="Holder", max_padding=0),))
        result = layout_core.check_budgets(reports, config)
        self.assertEqual(result["status"], "pass")
        self.assertEqual(result["warnings"], ["Holder: budget checked on a partial layout (value)"])

    def test_unmatched_budget_warns(self) -> None:
        config = layout_core.AuditConfig(budgets=(layout_core.Budget(pattern="Missing*", max_size=1),))
        result = layout_core.check_budgets(self.reports, config)
        self.assertEqual(result["status"], "pass")
        self.assertEqual(result["warnings"], ["Budget 'Missing*' matched no analyzed type."])


if __name__ == "__main__":
    unittest.main()
