from __future__ import annotations

import fnmatch

from ..core import *  # noqa: F401,F403


def load_input(path_text: str, jobs: int = 1) -> BuildResult:
    path = Path(path_text).resolve()
    if not path.exists():
        raise UnsupportedFormat(f"Input does not exist: {path}")
    result = load_any(path, jobs=jobs)
    report_diagnostics(result.diagnostics)
    return result


def report_diagnostics(diagnostics: tuple[Diagnostic, ...]) -> None:
    for item in diagnostics:
        print(f"warning: {item.stage}: {item}", file=sys.stderr)


def resolve_config(args: argparse.Namespace) -> AuditConfig:
    config_path = getattr(args, "config", None)
    config = load_audit_config(Path(config_path).resolve() if config_path else None)
    return config.with_overrides(cache_line_size=getattr(args, "cache_line", None))


def matches_filter(name: str, pattern: str | None) -> bool:
    if not pattern:
        return True
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatchcase(name, pattern)
    return pattern in name


def filter_snapshot(snapshot: Snapshot, pattern: str | None) -> Snapshot:
    if not pattern:
        return snapshot
    types = {name: layout for name, layout in snapshot.types.items() if matches_filter(name, pattern)}
    return Snapshot(types=types, binary=snapshot.binary)


def emit_json(payload: dict[str, Any], output: str | None) -> None:
    if output:
        write_json(Path(output).resolve(), payload)
    else:
        sys.stdout.write(dump_json(payload))
