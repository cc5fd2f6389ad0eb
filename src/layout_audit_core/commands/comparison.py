from __future__ import annotations

from ..core import *  # noqa: F401,F403
from .common import emit_json, filter_snapshot, load_input


def command_diff(args: argparse.Namespace) -> int:
    pattern = getattr(args, "filter", None)
    before = filter_snapshot(load_input(args.old, jobs=args.jobs).snapshot, pattern)
    after = filter_snapshot(load_input(args.new, jobs=args.jobs).snapshot, pattern)
    result = diff_snapshots(before, after)

    payload = result.as_dict()
    payload["old_binary"] = dict(before.binary)
    payload["new_binary"] = dict(after.binary)
    emit_json(payload, args.report)

    print(
        f"Layout diff: {len(result.added)} added, {len(result.removed)} removed, "
        f"{len(result.changed)} changed, {result.unchanged_count} unchanged.",
        file=sys.stderr,
    )
    for change in result.changed:
        if change.breaking:
            print(f"breaking: {change.name} ({change.old_size} -> {change.new_size} bytes)", file=sys.stderr)

    exit_code = 0
    if args.fail_on_breaking and result.has_breaking_changes:
        exit_code = 1
    if args.fail_on_regression and result.has_regressions:
        exit_code = 1
    return exit_code
