from __future__ import annotations

import argparse
import sys

from .core import DEFAULT_CACHE_LINE_SIZE, TOOL_VERSION, LayoutAuditError
from .commands import (
    SORT_KEYS,
    command_check,
    command_diff,
    command_inspect,
    command_snapshot,
    command_suggest,
)


def _add_jobs(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--jobs",
        type=int,
        default=1,
        help="Worker threads for extraction and analysis (default: 1).",
    )


def _add_analysis_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Path to audit config JSON.")
    parser.add_argument(
        "--cache-line",
        type=int,
        help=f"Override cache line size in bytes (default: config value or {DEFAULT_CACHE_LINE_SIZE}).",
    )
    parser.add_argument("--filter", help="Only report types whose name contains this text or matches this glob.")
    _add_jobs(parser)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="layout-audit",
        description="Struct layout auditor for compiled binaries (snapshot/inspect/suggest/diff/check).",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {TOOL_VERSION}")

    sub = parser.add_subparsers(dest="command", required=True)

    snapshot = sub.add_parser("snapshot", help="Extract type layouts from a binary into a snapshot.")
    snapshot.add_argument("binary", help="Path to an ELF binary or object file with DWARF debug info.")
    snapshot.add_argument("--output", help="Write snapshot JSON to path.")
    snapshot.add_argument("--store", help="Snapshot store directory keyed by binary identity.")
    _add_jobs(snapshot)
    snapshot.set_defaults(func=command_snapshot)

    inspect = sub.add_parser("inspect", help="Report padding, cache fit and false sharing per type.")
    inspect.add_argument("input", help="Binary path or snapshot JSON.")
    inspect.add_argument("--min-padding", type=int, default=0, help="Only report types with at least N padding bytes.")
    inspect.add_argument(
        "--sort-by",
        choices=SORT_KEYS,
        default="name",
        help="Order types by name, or by size, padding or padding ratio (largest first).",
    )
    inspect.add_argument("--top", type=int, help="Only report the first N types after sorting.")
    inspect.add_argument("--output", help="Write inspection report JSON to path.")
    _add_analysis_options(inspect)
    inspect.set_defaults(func=command_inspect)

    suggest = sub.add_parser("suggest", help="Suggest field orders that remove padding.")
    suggest.add_argument("input", help="Binary path or snapshot JSON.")
    suggest.add_argument("--min-savings", type=int, default=1, help="Only suggest reorders saving at least N bytes.")
    suggest.add_argument(
        "--max-align",
        type=int,
        help="Assume no member needs more than N byte alignment (for example a packing pragma).",
    )
    suggest.add_argument("--output", help="Write suggestions JSON to path.")
    _add_analysis_options(suggest)
    suggest.set_defaults(func=command_suggest)

    diff = sub.add_parser("diff", help="Compare type layouts of two binaries or snapshots.")
    diff.add_argument("old", help="Baseline binary path or snapshot JSON.")
    diff.add_argument("new", help="Current binary path or snapshot JSON.")
    diff.add_argument("--report", help="Write diff report JSON to path.")
    diff.add_argument("--fail-on-breaking", action="store_true", help="Exit 1 when a layout change breaks the ABI.")
    diff.add_argument("--fail-on-regression", action="store_true", help="Exit 1 when any type grew in size or padding.")
    diff.add_argument("--filter", help="Only compare types whose name contains this text or matches this glob.")
    _add_jobs(diff)
    diff.set_defaults(func=command_diff)

    check = sub.add_parser("check", help="Enforce size and padding budgets from config.")
    check.add_argument("input", help="Binary path or snapshot JSON.")
    check.add_argument("--config", required=True, help="Path to audit config JSON with budgets.")
    check.add_argument("--cache-line", type=int, help="Override cache line size in bytes.")
    check.add_argument("--report", help="Write budget report JSON to path.")
    _add_jobs(check)
    check.set_defaults(func=command_check)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "jobs", 1) < 1:
        parser.error("--jobs must be at least 1")
    if getattr(args, "cache_line", None) is not None and args.cache_line <= 0:
        parser.error("--cache-line must be positive")
    if getattr(args, "top", None) is not None and args.top < 1:
        parser.error("--top must be at least 1")
    if getattr(args, "max_align", None) is not None and args.max_align < 1:
        parser.error("--max-align must be at least 1")

    try:
        return int(args.func(args))
    except LayoutAuditError as exc:
        print(f"layout-audit error: {exc.describe()}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
