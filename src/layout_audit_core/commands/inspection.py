from __future__ import annotations

from ..core import *  # noqa: F401,F403
from .common import emit_json, load_input, matches_filter, report_diagnostics, resolve_config

SORT_KEYS = ("name", "size", "padding", "ratio")

_SORT_FIELDS = {
    "size": lambda report: report.size,
    "padding": lambda report: report.padding_bytes,
    "ratio": lambda report: report.padding_ratio,
}


def command_snapshot(args: argparse.Namespace) -> int:
    binary_path = Path(args.binary).resolve()
    if args.store:
        store = SnapshotStore(Path(args.store).resolve())
        result = store.load_or_build(binary_path, jobs=args.jobs)
        report_diagnostics(result.diagnostics)
        print(f"Snapshot stored at {store.path_for(str(result.snapshot.binary.get('identity')))}", file=sys.stderr)
    else:
        result = load_input(str(binary_path), jobs=args.jobs)

    snapshot = result.snapshot
    if args.output:
        write_snapshot(Path(args.output).resolve(), snapshot)
    elif not args.store:
        sys.stdout.write(dump_json(snapshot_payload(snapshot)))

    print(
        f"Snapshot created for '{binary_path.name}' with {len(snapshot)} types "
        f"and {len(result.diagnostics)} diagnostics.",
        file=sys.stderr,
    )
    return 0


def _selected_reports(args: argparse.Namespace, snapshot: Snapshot, config: AuditConfig) -> list[LayoutReport]:
    reports = analyze_snapshot(snapshot, config, jobs=args.jobs)
    return [report for report in reports if matches_filter(report.name, getattr(args, "filter", None))]


def command_inspect(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    result = load_input(args.input, jobs=args.jobs)
    reports = [
        report
        for report in _selected_reports(args, result.snapshot, config)
        if report.padding_bytes >= args.min_padding
    ]
    sort_by = getattr(args, "sort_by", "name")
    if sort_by in _SORT_FIELDS:
        key = _SORT_FIELDS[sort_by]
        reports.sort(key=lambda report: (-key(report), report.name))
    if getattr(args, "top", None):
        reports = reports[: args.top]

    payload = {
        "binary": dict(result.snapshot.binary),
        "config": config.as_dict(),
        "types": [report.as_dict() for report in reports],
        "summary": {
            "type_count": len(reports),
            "total_size": sum(report.size for report in reports),
            "total_padding": sum(report.padding_bytes for report in reports),
            "reorderable": sum(1 for report in reports if report.reorderable),
            "cache_unfriendly": sum(1 for report in reports if report.cache_unfriendly),
            "over_threshold": sum(1 for report in reports if report.over_threshold),
            "partial": sum(1 for report in reports if report.partial),
        },
    }
    emit_json(payload, args.output)
    print(
        f"Inspected {len(reports)} types: {payload['summary']['total_padding']} padding bytes, "
        f"{payload['summary']['reorderable']} reorderable.",
        file=sys.stderr,
    )
    return 0


def command_suggest(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    result = load_input(args.input, jobs=args.jobs)
    suggestions: list[dict[str, Any]] = []
    for report in _selected_reports(args, result.snapshot, config):
        candidate = report.candidate
        max_align = getattr(args, "max_align", None)
        if max_align is not None:
            layout = result.snapshot.get(report.name)
            candidate = reorder_candidate(layout, max_align=max_align) if layout is not None else None
        if candidate is None or not candidate.reorderable:
            continue
        if candidate.savings_bytes < args.min_savings:
            continue
        item = candidate.as_dict()
        item["name"] = report.name
        suggestions.append(item)

    payload = {
        "binary": dict(result.snapshot.binary),
        "suggestions": suggestions,
        "total_savings": sum(item["savings_bytes"] for item in suggestions),
    }
    emit_json(payload, args.output)
    print(f"{len(suggestions)} types can shrink by reordering fields.", file=sys.stderr)
    return 0


def command_check(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    if not config.budgets:
        raise ConfigError(f"No budgets configured in '{args.config}'.")
    result = load_input(args.input, jobs=args.jobs)
    reports = analyze_snapshot(result.snapshot, config, jobs=args.jobs)
    report = check_budgets(reports, config)

    if args.report:
        write_json(Path(args.report).resolve(), report)

    for warning in report["warnings"]:
        print(f"warning: {warning}", file=sys.stderr)
    for error in report["errors"]:
        print(f"error: {error}", file=sys.stderr)
    print(
        f"Budget check {report['status']}: {len(report['checked_types'])} types checked, "
        f"{len(report['errors'])} violations.",
        file=sys.stderr,
    )
    return 1 if report["status"] == "fail" else 0
