from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ._core_base import *  # noqa: F401,F403

MEMBER_ADDED = "MemberAdded"
MEMBER_REMOVED = "MemberRemoved"
OFFSET_CHANGED = "OffsetChanged"
SIZE_CHANGED = "SizeChanged"
BITFIELD_CHANGED = "BitfieldChanged"
REORDERED = "Reordered"
TYPE_CHANGED = "TypeChanged"
OPAQUE_LAYOUT_CHANGED = "OpaqueLayoutChanged"

BREAKING_KINDS = {MEMBER_REMOVED, OFFSET_CHANGED, SIZE_CHANGED, BITFIELD_CHANGED, OPAQUE_LAYOUT_CHANGED}


@dataclass(frozen=True)
class MemberChange:
    kind: str
    member: str | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None

    @property
    def breaking(self) -> bool:
        return self.kind in BREAKING_KINDS

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "member": self.member,
            "before": self.before,
            "after": self.after,
            "breaking": self.breaking,
        }


@dataclass(frozen=True)
class TypeChange:
    name: str
    old_size: int
    new_size: int
    old_align: int
    new_align: int
    old_padding: int
    new_padding: int
    changes: tuple[MemberChange, ...] = ()

    @property
    def size_delta(self) -> int:
        return self.new_size - self.old_size

    @property
    def padding_delta(self) -> int:
        return self.new_padding - self.old_padding

    @property
    def breaking(self) -> bool:
        if self.old_size != self.new_size or self.old_align != self.new_align:
            return True
        return any(change.breaking for change in self.changes)

    @property
    def is_regression(self) -> bool:
        return self.size_delta > 0 or self.padding_delta > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "old_size": self.old_size,
            "new_size": self.new_size,
            "size_delta": self.size_delta,
            "old_align": self.old_align,
            "new_align": self.new_align,
            "old_padding": self.old_padding,
            "new_padding": self.new_padding,
            "padding_delta": self.padding_delta,
            "breaking": self.breaking,
            "changes": [change.as_dict() for change in self.changes],
        }


@dataclass(frozen=True)
class DiffResult:
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    changed: tuple[TypeChange, ...] = ()
    unchanged_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed and not self.changed

    @property
    def has_breaking_changes(self) -> bool:
        return bool(self.removed) or any(item.breaking for item in self.changed)

    @property
    def has_regressions(self) -> bool:
        return any(item.is_regression for item in self.changed)

    def change_for(self, name: str) -> TypeChange | None:
        for item in self.changed:
            if item.name == name:
                return item
        return None

    def changes_by_type(self) -> dict[str, list[dict[str, Any]]]:
        return {item.name: [change.as_dict() for change in item.changes] for item in self.changed}

    def as_dict(self) -> dict[str, Any]:
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "changed": {item.name: item.as_dict() for item in self.changed},
            "changes": self.changes_by_type(),
            "summary": {
                "added": len(self.added),
                "removed": len(self.removed),
                "changed": len(self.changed),
                "unchanged": self.unchanged_count,
                "breaking": self.has_breaking_changes,
                "regressions": self.has_regressions,
            },
        }


def _member_view(member: Member) -> dict[str, Any]:
    out: dict[str, Any] = {
        "offset": member.offset,
        "size": member.size,
        "type": member.type_ref.name,
    }
    if member.bit_width is not None:
        out["bit_offset"] = member.bit_offset
        out["bit_width"] = member.bit_width
    return out


def compare_members(before: TypeLayout, after: TypeLayout) -> list[MemberChange]:
    old = {member.name: member for member in before.members}
    new = {member.name: member for member in after.members}
    shared = [name for name in old if name in new]
    old_rank = {name: idx for idx, name in enumerate(shared)}
    new_rank = {name: idx for idx, name in enumerate(name for name in new if name in old)}

    changes: list[MemberChange] = []
    for name, member in old.items():
        if name not in new:
            changes.append(MemberChange(MEMBER_REMOVED, name, before=_member_view(member)))
            continue
        other = new[name]
        if member.offset != other.offset:
            kind = OFFSET_CHANGED
        elif member.size != other.size or member.bit_width != other.bit_width:
            kind = SIZE_CHANGED
        elif member.bit_offset != other.bit_offset:
            kind = BITFIELD_CHANGED
        elif old_rank[name] != new_rank[name]:
            kind = REORDERED
        elif member.type_ref.name != other.type_ref.name:
            kind = TYPE_CHANGED
        else:
            continue
        changes.append(MemberChange(kind, name, before=_member_view(member), after=_member_view(other)))
    for name, member in new.items():
        if name not in old:
            changes.append(MemberChange(MEMBER_ADDED, name, after=_member_view(member)))
    return changes


def compare_layouts(before: TypeLayout, after: TypeLayout) -> TypeChange | None:
    changes = compare_members(before, after)
    shape_changed = (
        before.size != after.size
        or before.align != after.align
        or before.kind != after.kind
        or before.is_packed != after.is_packed
    )
    if not changes and shape_changed:
        changes.append(
            MemberChange(
                OPAQUE_LAYOUT_CHANGED,
                None,
                before={"kind": before.kind, "size": before.size, "align": before.align, "is_packed": before.is_packed},
                after={"kind": after.kind, "size": after.size, "align": after.align, "is_packed": after.is_packed},
            )
        )
    if not changes and before.padding_bytes == after.padding_bytes:
        return None
    return TypeChange(
        name=before.name,
        old_size=before.size,
        new_size=after.size,
        old_align=before.align,
        new_align=after.align,
        old_padding=before.padding_bytes,
        new_padding=after.padding_bytes,
        changes=tuple(changes),
    )


def diff_snapshots(before: Snapshot, after: Snapshot) -> DiffResult:
    removed = tuple(name for name in before.names() if name not in after)
    added = tuple(name for name in after.names() if name not in before)
    changed: list[TypeChange] = []
    unchanged = 0
    for name in before.names():
        new_layout = after.get(name)
        if new_layout is None:
            continue
        change = compare_layouts(before.types[name], new_layout)
        if change is None:
            unchanged += 1
        else:
            changed.append(change)
    return DiffResult(added=added, removed=removed, changed=tuple(changed), unchanged_count=unchanged)
