from __future__ import annotations

import fnmatch
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any

from ._core_base import *  # noqa: F401,F403
from ._core_policy import AuditConfig

SYNC_TYPE_PATTERNS = (
    "std::atomic<",
    "std::__1::atomic<",
    "std::atomic_flag",
    "std::mutex",
    "std::shared_mutex",
    "_Atomic ",
    "atomic_flag",
    "pthread_mutex_t",
    "pthread_spinlock_t",
    "pthread_rwlock_t",
)


@dataclass(frozen=True)
class PlacedMember:
    name: str
    offset: int
    size: int
    align: int

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "offset": self.offset, "size": self.size, "align": self.align}


@dataclass(frozen=True)
class ReorderCandidate:
    name: str
    original_size: int
    candidate_size: int
    members: tuple[PlacedMember, ...] = ()
    reorderable: bool = False
    exempt_reason: str | None = None

    @property
    def savings_bytes(self) -> int:
        return self.original_size - self.candidate_size

    @property
    def savings_percent(self) -> float:
        if self.original_size <= 0:
            return 0.0
        return 100.0 * self.savings_bytes / self.original_size

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "original_size": self.original_size,
            "candidate_size": self.candidate_size,
            "savings_bytes": self.savings_bytes,
            "savings_percent": round(self.savings_percent, 2),
            "reorderable": self.reorderable,
            "members": [member.as_dict() for member in self.members],
        }
        if self.exempt_reason:
            out["exempt_reason"] = self.exempt_reason
        return out


@dataclass(frozen=True)
class FalseSharingWarning:
    member_a: str
    member_b: str
    cache_line: int
    gap_bytes: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "member_a": self.member_a,
            "member_b": self.member_b,
            "cache_line": self.cache_line,
            "gap_bytes": self.gap_bytes,
        }


@dataclass(frozen=True)
class SpanningWarning:
    member: str
    offset: int
    size: int
    start_line: int
    end_line: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "member": self.member,
            "offset": self.offset,
            "size": self.size,
            "start_line": self.start_line,
            "end_line": self.end_line,
        }


@dataclass(frozen=True)
class FalseSharingReport:
    atomic_members: tuple[str, ...] = ()
    shared_lines: tuple[FalseSharingWarning, ...] = ()
    spanning: tuple[SpanningWarning, ...] = ()

    @property
    def warning_count(self) -> int:
        return len(self.shared_lines) + len(self.spanning)

    def as_dict(self) -> dict[str, Any]:
        return {
            "atomic_members": list(self.atomic_members),
            "shared_lines": [item.as_dict() for item in self.shared_lines],
            "spanning": [item.as_dict() for item in self.spanning],
        }


@dataclass(frozen=True)
class LayoutReport:
    name: str
    kind: str
    size: int
    align: int
    used_bytes: int
    padding_bytes: int
    padding_ratio: float
    reorderable: bool
    cache_unfriendly: bool
    over_threshold: bool
    is_packed: bool
    partial: bool
    hot: bool = False
    gaps: tuple[Gap, ...] = ()
    cache_lines: int = 0
    cache_line_density: float = 0.0
    candidate: ReorderCandidate | None = None
    false_sharing: FalseSharingReport = field(default_factory=FalseSharingReport)
    unresolved_members: tuple[str, ...] = ()
    source: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "size": self.size,
            "align": self.align,
            "used_bytes": self.used_bytes,
            "padding_bytes": self.padding_bytes,
            "padding_ratio": round(self.padding_ratio, 4),
            "reorderable": self.reorderable,
            "cache_unfriendly": self.cache_unfriendly,
            "over_threshold": self.over_threshold,
            "is_packed": self.is_packed,
            "partial": self.partial,
            "hot": self.hot,
            "gaps": [gap.as_dict() for gap in self.gaps],
            "cache_lines": self.cache_lines,
            "cache_line_density": round(self.cache_line_density, 4),
            "candidate": None if self.candidate is None else self.candidate.as_dict(),
            "false_sharing": self.false_sharing.as_dict(),
            "unresolved_members": list(self.unresolved_members),
            "source": self.source,
        }


@dataclass
class _Unit:
    members: list[Member]
    start: int
    size: int
    align: int
    index: int


def _reorder_units(layout: TypeLayout) -> tuple[list[_Unit], _Unit | None]:
    units: list[_Unit] = []
    tail: _Unit | None = None
    inherited = [member for member in layout.members if member.base is not None]
    if inherited:
        # Base subobjects keep their place at the front.
        start = min(member.offset for member in inherited)
        end = max(member.offset + member.covered_bytes() for member in inherited)
        units.append(
            _Unit(
                members=inherited,
                start=start,
                size=end - start,
                align=max(member.align for member in inherited),
                index=-1,
            )
        )

    current_bits: _Unit | None = None
    for member in layout.members:
        if member.base is not None:
            continue
        if member.is_flexible:
            tail = _Unit(members=[member], start=member.offset, size=0, align=member.align, index=len(units))
            current_bits = None
            continue
        if member.is_bitfield:
            if current_bits is not None and current_bits.start == member.offset:
                current_bits.members.append(member)
                current_bits.align = max(current_bits.align, member.align)
                current_bits.size = max(current_bits.size, member.size)
                continue
            current_bits = _Unit(
                members=[member], start=member.offset, size=member.size, align=member.align, index=len(units)
            )
            units.append(current_bits)
            continue
        current_bits = None
        units.append(
            _Unit(members=[member], start=member.offset, size=member.size, align=max(1, member.align), index=len(units))
        )
    return units, tail


def _original_placement(layout: TypeLayout) -> tuple[PlacedMember, ...]:
    return tuple(PlacedMember(m.name, m.offset, m.size, m.align) for m in layout.members)


def reorder_candidate(layout: TypeLayout, max_align: int | None = None) -> ReorderCandidate:
    """Greedy field order for ``layout``: largest alignment first, then size.

    Bitfields sharing a storage unit move together, base-class members stay
    in front and a flexible array member stays last. The candidate is never
    larger than the compiled layout; when no smaller order exists the
    original placement is returned with ``reorderable`` unset.

    ``max_align`` caps every alignment, as a packing pragma would.
    """

    def capped(align: int) -> int:
        align = max(1, align)
        return align if max_align is None else min(align, max_align)

    unchanged = ReorderCandidate(
        name=layout.name,
        original_size=layout.size,
        candidate_size=layout.size,
        members=_original_placement(layout),
    )
    if layout.kind == "union":
        return replace(unchanged, exempt_reason="union")
    if layout.kind == "enum":
        return replace(unchanged, exempt_reason="enum")
    if layout.is_packed:
        return replace(unchanged, exempt_reason="packed")
    if layout.unresolved_members:
        return replace(unchanged, exempt_reason="unresolved members")
    if len(layout.members) < 2:
        return unchanged

    units, tail = _reorder_units(layout)
    fixed = [unit for unit in units if unit.index < 0]
    movable = sorted(
        (unit for unit in units if unit.index >= 0),
        key=lambda unit: (-capped(unit.align), -unit.size, unit.index),
    )

    placed: list[PlacedMember] = []
    cursor = 0
    for unit in fixed + movable + ([tail] if tail is not None else []):
        offset = align_up(cursor, capped(unit.align))
        for member in unit.members:
            placed.append(PlacedMember(member.name, offset + member.offset - unit.start, member.size, member.align))
        cursor = offset + unit.size

    candidate_size = align_up(cursor, capped(layout.align))
    if candidate_size >= layout.size:
        return unchanged
    return ReorderCandidate(
        name=layout.name,
        original_size=layout.size,
        candidate_size=candidate_size,
        members=tuple(placed),
        reorderable=True,
    )


def fits_cache_line(size: int, align: int, line_size: int) -> bool:
    if size <= 0 or line_size <= 0:
        return True
    if line_size % size == 0:
        return True
    return align >= line_size and size % line_size == 0


def cache_line_metrics(layout: TypeLayout, line_size: int) -> tuple[int, float]:
    if layout.size <= 0 or line_size <= 0:
        return 0, 0.0
    lines = (layout.size + line_size - 1) // line_size
    return lines, layout.used_bytes / (lines * line_size)


def _is_sync_member(member: Member) -> bool:
    if member.is_atomic:
        return True
    return any(pattern in member.type_ref.name for pattern in SYNC_TYPE_PATTERNS)


def analyze_false_sharing(layout: TypeLayout, line_size: int) -> FalseSharingReport:
    atomics = [m for m in layout.members if _is_sync_member(m) and m.size > 0 and not m.unresolved]
    if not atomics or line_size <= 0:
        return FalseSharingReport()

    spanning: list[SpanningWarning] = []
    by_line: dict[int, list[Member]] = {}
    for member in atomics:
        first = member.offset // line_size
        last = (member.offset + member.size - 1) // line_size
        if last > first:
            spanning.append(SpanningWarning(member.name, member.offset, member.size, first, last))
        for line in range(first, last + 1):
            by_line.setdefault(line, []).append(member)

    shared: list[FalseSharingWarning] = []
    seen: set[tuple[str, str]] = set()
    for line in sorted(by_line):
        group = sorted(by_line[line], key=lambda m: (m.offset, m.name))
        for idx, first in enumerate(group):
            for second in group[idx + 1 :]:
                key = (first.name, second.name)
                if key in seen:
                    continue
                seen.add(key)
                shared.append(
                    FalseSharingWarning(
                        member_a=first.name,
                        member_b=second.name,
                        cache_line=line,
                        gap_bytes=second.offset - (first.offset + first.size),
                    )
                )
    return FalseSharingReport(
        atomic_members=tuple(m.name for m in atomics),
        shared_lines=tuple(shared),
        spanning=tuple(spanning),
    )


def analyze_layout(layout: TypeLayout, config: AuditConfig | None = None) -> LayoutReport:
    config = config or AuditConfig()
    line_size = config.cache_line_size
    padding = layout.padding_bytes
    ratio = padding / layout.size if layout.size > 0 else 0.0
    candidate = reorder_candidate(layout)
    hot = config.is_hot(layout.name)
    lines, density = cache_line_metrics(layout, line_size)
    over = config.padding_threshold is not None and ratio > config.padding_threshold
    return LayoutReport(
        name=layout.name,
        kind=layout.kind,
        size=layout.size,
        align=layout.align,
        used_bytes=layout.used_bytes,
        padding_bytes=padding,
        padding_ratio=ratio,
        reorderable=candidate.reorderable,
        cache_unfriendly=hot and not fits_cache_line(layout.size, layout.align, line_size),
        over_threshold=over,
        is_packed=layout.is_packed,
        partial=bool(layout.unresolved_members),
        hot=hot,
        gaps=layout.gaps,
        cache_lines=lines,
        cache_line_density=density,
        candidate=candidate,
        false_sharing=analyze_false_sharing(layout, line_size),
        unresolved_members=layout.unresolved_members,
        source=layout.source,
    )


def analyze_snapshot(snapshot: Snapshot, config: AuditConfig | None = None, jobs: int = 1) -> list[LayoutReport]:
    config = config or AuditConfig()
    layouts = [layout for layout in snapshot if config.includes(layout.name)]
    if jobs <= 1 or len(layouts) < 2:
        return [analyze_layout(layout, config) for layout in layouts]
    with ThreadPoolExecutor(max_workers=jobs) as pool:
        return list(pool.map(lambda layout: analyze_layout(layout, config), layouts))


def check_budgets(reports: list[LayoutReport], config: AuditConfig) -> dict[str, Any]:
    errors: list[str] = []
    warnings: list[str] = []
    checked: list[str] = []
    for report in reports:
        budget = config.budget_for(report.name)
        if budget is None:
            continue
        checked.append(report.name)
        if budget.max_size is not None and report.size > budget.max_size:
            errors.append(f"{report.name}: size {report.size} exceeds budget {budget.max_size} ({budget.pattern})")
        if budget.max_padding is not None and report.padding_bytes > budget.max_padding:
            errors.append(
                f"{report.name}: padding {report.padding_bytes} bytes exceeds budget "
                f"{budget.max_padding} ({budget.pattern})"
            )
        if budget.max_padding_percent is not None:
            percent = report.padding_ratio * 100.0
            if percent > budget.max_padding_percent:
                errors.append(
                    f"{report.name}: padding {percent:.1f}% exceeds budget "
                    f"{budget.max_padding_percent:.1f}% ({budget.pattern})"
                )
        if budget.max_false_sharing_warnings is not None:
            count = report.false_sharing.warning_count
            if count > budget.max_false_sharing_warnings:
                errors.append(
                    f"{report.name}: {count} false sharing warnings exceed budget "
                    f"{budget.max_false_sharing_warnings} ({budget.pattern})"
                )
        if report.partial:
            missing = ", ".join(report.unresolved_members)
            warnings.append(f"{report.name}: budget checked on a partial layout ({missing})")
    for budget in config.budgets:
        matched = any(
            name == budget.pattern or (budget.is_glob and fnmatch.fnmatchcase(name, budget.pattern)) for name in checked
        )
        if not matched:
            warnings.append(f"Budget '{budget.pattern}' matched no analyzed type.")
    return {
        "status": "fail" if errors else "pass",
        "errors": errors,
        "warnings": warnings,
        "checked_types": checked,
    }
