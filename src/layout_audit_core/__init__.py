from .core import (
    AuditConfig,
    Budget,
    BuildResult,
    ConfigError,
    ConflictingDefinition,
    Diagnostic,
    DiffResult,
    ExtractionResult,
    Gap,
    LayoutAuditError,
    LayoutReport,
    Member,
    MemberChange,
    MemberRecord,
    ReorderCandidate,
    Snapshot,
    SnapshotStore,
    TruncatedInput,
    TypeChange,
    TypeLayout,
    TypeRecord,
    TypeRef,
    UnsupportedFormat,
    analyze_layout,
    analyze_snapshot,
    binary_identity,
    build_snapshot,
    check_budgets,
    diff_snapshots,
    extract_descriptors,
    iter_descriptors,
    load_audit_config,
    load_binary,
    load_snapshot,
    reorder_candidate,
    write_snapshot,
)

__all__ = [
    "AuditConfig",
    "Budget",
    "BuildResult",
    "ConfigError",
    "ConflictingDefinition",
    "Diagnostic",
    "DiffResult",
    "ExtractionResult",
    "Gap",
    "LayoutAuditError",
    "LayoutReport",
    "Member",
    "MemberChange",
    "MemberRecord",
    "ReorderCandidate",
    "Snapshot",
    "SnapshotStore",
    "TruncatedInput",
    "TypeChange",
    "TypeLayout",
    "TypeRecord",
    "TypeRef",
    "UnsupportedFormat",
    "analyze_layout",
    "analyze_snapshot",
    "binary_identity",
    "build_snapshot",
    "check_budgets",
    "diff_snapshots",
    "extract_descriptors",
    "iter_descriptors",
    "load_audit_config",
    "load_binary",
    "load_snapshot",
    "reorder_candidate",
    "write_snapshot",
]
