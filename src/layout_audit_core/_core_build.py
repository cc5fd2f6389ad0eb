from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any

from ._core_base import *  # noqa: F401,F403
from ._core_extract import ExtractionResult, MemberRecord, TypeRecord, extract_descriptors

QUALIFIER_PREFIXES = {"const": "const ", "volatile": "volatile ", "restrict": "restrict ", "atomic": "_Atomic "}
ATOMIC_WRAPPERS = ("std::atomic<", "std::__atomic_base<", "_Atomic ")
DW_ATE_COMPLEX_FLOAT = 0x3


@dataclass(frozen=True)
class BuildResult:
    snapshot: Snapshot
    diagnostics: tuple[Diagnostic, ...] = ()


@dataclass(frozen=True)
class _Resolved:
    name: str
    kind: str
    size: int | None
    align: int = 1
    is_pointer: bool = False
    is_array: bool = False
    array_len: int | str | None = None
    is_atomic: bool = False

    def type_ref(self) -> TypeRef:
        return TypeRef(name=self.name, kind=self.kind, size=self.size, align=self.align)


class _SnapshotBuilder:
    def __init__(self, extraction: ExtractionResult) -> None:
        binary = extraction.binary or {}
        self.binary = binary
        self.address_size = int(binary.get("address_size") or 8)
        self.little_endian = bool(binary.get("little_endian", True))
        self.order: list[TypeRecord] = []
        self.types: dict[int, TypeRecord] = {}
        self.members: dict[int, list[MemberRecord]] = {}
        for record in extraction.records:
            if isinstance(record, TypeRecord):
                self.types[record.offset] = record
                self.order.append(record)
            else:
                self.members.setdefault(record.parent, []).append(record)
        for items in self.members.values():
            items.sort(key=lambda item: item.index)

        self.naming_typedefs: dict[int, int] = {}
        for record in self.order:
            if record.tag == "typedef" and record.name and record.target in self.types:
                target = self.types[record.target]
                if target.name is None and target.tag in TYPE_KINDS:
                    self.naming_typedefs.setdefault(target.offset, record.offset)

        # C compilers emit the type of an anonymous member at unit level; it
        # still belongs to the aggregate holding that member.
        self.owners: dict[int, int] = {}
        for record in extraction.records:
            if not isinstance(record, MemberRecord) or record.name is not None or record.inheritance:
                continue
            target = self.types.get(record.type_offset) if record.type_offset is not None else None
            if (
                target is not None
                and target.tag in TYPE_KINDS
                and target.name is None
                and target.parent is None
                and target.offset not in self.naming_typedefs
            ):
                self.owners.setdefault(target.offset, record.parent)

        self.anon_index: dict[int, int] = {}
        counters: dict[int, int] = {}
        for record in self.order:
            scope = self._scope_of(record)
            if record.tag in TYPE_KINDS and record.name is None and scope is not None:
                counters[scope] = counters.get(scope, 0) + 1
                self.anon_index[record.offset] = counters[scope]

        self._names: dict[int, str] = {}
        self._resolved: dict[int, _Resolved] = {}
        self._layouts: dict[int, TypeLayout | None] = {}
        self._building: set[int] = set()
        self._resolving: set[int] = set()
        self.diagnostics: list[Diagnostic] = []

        self.definitions: dict[str, int] = {}
        for record in self.order:
            if record.tag in TYPE_KINDS and not record.declaration and record.byte_size is not None:
                self.definitions.setdefault(self.qualified_name(record.offset), record.offset)

    def _scope_of(self, record: TypeRecord) -> int | None:
        if record.parent is not None:
            return record.parent
        return self.owners.get(record.offset)

    def qualified_name(self, offset: int) -> str:
        cached = self._names.get(offset)
        if cached is not None:
            return cached
        record = self.types.get(offset)
        if record is None:
            return f"<unknown 0x{offset:x}>"
        # Placeholder so a malformed parent chain cannot recurse forever.
        self._names[offset] = f"<cycle 0x{offset:x}>"
        name = self._compute_name(record)
        self._names[offset] = name
        return name

    def _compute_name(self, record: TypeRecord) -> str:
        parent = self._scope_of(record)
        spec = self.types.get(record.specification) if record.specification is not None else None
        if spec is not None:
            if record.name is None:
                return self.qualified_name(spec.offset)
            parent = spec.parent

        if record.name is not None:
            local = record.name
        elif record.tag == "namespace":
            local = "(anonymous namespace)"
        elif record.offset in self.naming_typedefs:
            return self.qualified_name(self.naming_typedefs[record.offset])
        elif parent is not None:
            local = f"<anonymous {record.tag} #{self.anon_index.get(record.offset, 1)}>"
        elif record.decl_file is not None:
            local = f"<anonymous {record.tag} at {record.decl_file}:{record.decl_line or 0}>"
        else:
            local = f"<anonymous {record.tag} at 0x{record.offset:x}>"

        if parent is not None and parent in self.types:
            return f"{self.qualified_name(parent)}::{local}"
        return local

    def resolve(self, offset: int | None) -> _Resolved:
        if offset is None:
            return _Resolved(name="void", kind="primitive", size=0)
        cached = self._resolved.get(offset)
        if cached is not None:
            return cached
        record = self.types.get(offset)
        if record is None:
            return _Resolved(name=f"<unknown 0x{offset:x}>", kind="unresolved", size=None)
        if offset in self._resolving:
            return _Resolved(name=self.qualified_name(offset), kind="unresolved", size=None)
        self._resolving.add(offset)
        try:
            resolved = self._resolve_record(record)
        finally:
            self._resolving.discard(offset)
        self._resolved[offset] = resolved
        return resolved

    def _pointer_width(self, record: TypeRecord) -> int:
        return record.byte_size or self.address_size

    def _resolve_record(self, record: TypeRecord) -> _Resolved:
        tag = record.tag
        if tag == "base":
            size = record.byte_size or 0
            natural = natural_alignment(size // 2 if record.encoding == DW_ATE_COMPLEX_FLOAT else size)
            return _Resolved(
                name=record.name or "<unnamed base>",
                kind="primitive",
                size=size,
                align=record.alignment or natural,
            )

        if tag == "typedef":
            target = self.resolve(record.target)
            return _Resolved(
                name=self.qualified_name(record.offset),
                kind=target.kind,
                size=target.size,
                align=record.alignment or target.align,
                is_pointer=target.is_pointer,
                is_array=target.is_array,
                array_len=target.array_len,
                is_atomic=target.is_atomic,
            )

        if tag in QUALIFIER_PREFIXES:
            target = self.resolve(record.target)
            return _Resolved(
                name=QUALIFIER_PREFIXES[tag] + target.name,
                kind=target.kind,
                size=target.size,
                align=record.alignment or target.align,
                is_pointer=target.is_pointer,
                is_array=target.is_array,
                array_len=target.array_len,
                is_atomic=target.is_atomic or tag == "atomic",
            )

        if tag in ("pointer", "reference"):
            target_name = self.describe_target(record.target)
            size = self._pointer_width(record)
            return _Resolved(
                name=f"{target_name} {'*' if tag == 'pointer' else '&'}",
                kind="pointer",
                size=size,
                align=natural_alignment(size),
                is_pointer=True,
            )

        if tag == "member_pointer":
            target = self.types.get(record.target) if record.target is not None else None
            width = self.address_size * (2 if target is not None and target.tag == "function" else 1)
            size = record.byte_size or width
            return _Resolved(
                name=f"{self.describe_target(record.target)} ::*",
                kind="pointer",
                size=size,
                align=natural_alignment(min(size, self.address_size)),
                is_pointer=True,
            )

        if tag == "array":
            element = self.resolve(record.target)
            dims = record.counts or (None,)
            suffix = "".join("[]" if count is None else f"[{count}]" for count in dims)
            kind = "unresolved" if element.kind == "unresolved" else element.kind
            if any(count is None for count in dims):
                return _Resolved(
                    name=f"{element.name}{suffix}",
                    kind=kind,
                    size=0,
                    align=element.align,
                    is_array=True,
                    array_len=UNBOUNDED,
                    is_atomic=element.is_atomic,
                )
            total = 1
            for count in dims:
                total *= count or 0
            size = record.byte_size
            if size is None and element.size is not None:
                size = element.size * total
            return _Resolved(
                name=f"{element.name}{suffix}",
                kind=kind,
                size=size,
                align=element.align,
                is_array=True,
                array_len=total,
                is_atomic=element.is_atomic,
            )

        if tag == "function":
            return _Resolved(name="<function>", kind="function", size=None)

        if tag == "enum":
            name = self.qualified_name(record.offset)
            size = record.byte_size
            if size is None:
                size = self.resolve(record.target).size if record.target is not None else None
            if size is None:
                definition = self.definitions.get(name)
                if definition is None:
                    return _Resolved(name=name, kind="unresolved", size=None)
                size = self.types[definition].byte_size
            return _Resolved(name=name, kind="enum", size=size, align=record.alignment or natural_alignment(size))

        if tag in AGGREGATE_KINDS:
            name = self.qualified_name(record.offset)
            definition = record.offset if not record.declaration and record.byte_size is not None else None
            if definition is None:
                definition = self.definitions.get(name)
            if definition is None:
                return _Resolved(name=name, kind="unresolved", size=None)
            layout = self.layout_for(definition)
            atomic = name.startswith(ATOMIC_WRAPPERS)
            if layout is None:
                size = self.types[definition].byte_size
                return _Resolved(name=name, kind="aggregate", size=size, align=natural_alignment(size), is_atomic=atomic)
            return _Resolved(name=name, kind="aggregate", size=layout.size, align=layout.align, is_atomic=atomic)

        return _Resolved(name=record.name or f"<{tag}>", kind="unresolved", size=None)

    def describe_target(self, offset: int | None) -> str:
        if offset is None:
            return "void"
        record = self.types.get(offset)
        if record is None:
            return f"<unknown 0x{offset:x}>"
        if record.tag in TYPE_KINDS or record.tag == "typedef":
            return self.qualified_name(offset)
        if record.tag in QUALIFIER_PREFIXES:
            return QUALIFIER_PREFIXES[record.tag] + self.describe_target(record.target)
        if record.tag in ("pointer", "reference"):
            return f"{self.describe_target(record.target)} {'*' if record.tag == 'pointer' else '&'}"
        return self.resolve(offset).name

    def _diagnose(self, code: str, message: str, type_name: str, member_name: str | None, offset: int | None) -> None:
        self.diagnostics.append(
            Diagnostic(
                code=code,
                stage="build",
                message=message,
                type_name=type_name,
                member_name=member_name,
                offset=offset,
            )
        )

    def layout_for(self, offset: int) -> TypeLayout | None:
        if offset in self._layouts:
            return self._layouts[offset]
        if offset in self._building:
            return None
        record = self.types.get(offset)
        if record is None or record.tag not in TYPE_KINDS or record.declaration or record.byte_size is None:
            return None
        self._building.add(offset)
        try:
            layout = self._build_layout(record)
        finally:
            self._building.discard(offset)
        self._layouts[offset] = layout
        return layout

    def _build_layout(self, record: TypeRecord) -> TypeLayout:
        name = self.qualified_name(record.offset)
        size = record.byte_size or 0
        source = f"{record.decl_file}:{record.decl_line}" if record.decl_file and record.decl_line else None
        if record.tag == "enum":
            return TypeLayout(
                name=name,
                kind="enum",
                size=size,
                align=record.alignment or natural_alignment(size),
                source=source,
                unit=record.unit,
            )

        items = self.members.get(record.offset, [])
        own_names = {item.name for item in items if item.name and not item.inheritance}
        members: list[Member] = []
        taken: set[str] = set()
        anonymous = 0
        for item in items:
            if item.inheritance:
                members.extend(self._base_members(name, item, own_names | taken, taken))
                continue
            if item.name is None:
                anonymous += 1
            member = self._member(name, record.tag, item, item.name or f"<anonymous #{anonymous}>")
            if member is not None:
                members.append(member)
                taken.add(member.name)

        members.sort(key=lambda member: member.offset)
        if record.tag != "union":
            members = self._narrow_bitfields(members)
        natural = max((member.align for member in members if not member.unresolved), default=1)
        misaligned = any(
            member.offset % max(1, member.align) != 0
            for member in members
            if not member.is_bitfield and not member.unresolved
        )
        is_packed = misaligned or (size > 0 and size % natural != 0)
        if record.alignment:
            align = record.alignment
        else:
            align = 1 if is_packed else natural
        ordered = tuple(members)
        return TypeLayout(
            name=name,
            kind=record.tag,
            size=size,
            align=align,
            members=ordered,
            is_packed=is_packed,
            gaps=compute_gaps(size, ordered),
            source=source,
            unit=record.unit,
        )

    def _definition_of(self, offset: int | None) -> int | None:
        seen: set[int] = set()
        while offset is not None and offset not in seen:
            seen.add(offset)
            record = self.types.get(offset)
            if record is None:
                return None
            if record.tag in AGGREGATE_KINDS:
                if not record.declaration and record.byte_size is not None:
                    return record.offset
                return self.definitions.get(self.qualified_name(record.offset))
            if record.tag not in QUALIFIER_PREFIXES and record.tag != "typedef":
                return None
            offset = record.target
        return None

    def _base_members(self, owner: str, item: MemberRecord, reserved: set[str], taken: set[str]) -> list[Member]:
        origin = self.resolve(item.type_offset).name
        shift = item.location or 0
        definition = self._definition_of(item.type_offset)
        layout = self.layout_for(definition) if definition is not None and not item.virtual else None
        if layout is None:
            if item.virtual:
                message = f"Virtual base '{origin}' has no static offset."
            else:
                message = f"Base class '{origin}' has no complete definition."
            self._diagnose(UNRESOLVED_TYPE, message, owner, f"<base: {origin}>", item.offset)
            marker = Member(
                name=f"<base: {origin}>",
                offset=shift,
                size=0,
                align=1,
                type_ref=TypeRef(name=origin, kind="unresolved"),
                base=origin,
                unresolved=True,
            )
            taken.add(marker.name)
            return [marker]

        out: list[Member] = []
        for member in layout.members:
            name = member.name
            if name in reserved:
                name = f"{origin}::{name}"
            taken.add(name)
            out.append(
                Member(
                    name=name,
                    offset=member.offset + shift,
                    size=member.size,
                    align=member.align,
                    type_ref=member.type_ref,
                    bit_offset=member.bit_offset,
                    bit_width=member.bit_width,
                    is_array=member.is_array,
                    array_len=member.array_len,
                    is_pointer=member.is_pointer,
                    is_atomic=member.is_atomic,
                    base=member.base or origin,
                    unresolved=member.unresolved,
                )
            )
        return out

    def _member(self, owner: str, owner_kind: str, item: MemberRecord, name: str) -> Member | None:
        if item.type_offset is None:
            self._diagnose(MALFORMED_RECORD, "Member has no type reference.", owner, name, item.offset)
            return None
        resolved = self.resolve(item.type_offset)
        unresolved = resolved.kind == "unresolved" and not resolved.is_pointer
        if unresolved:
            self._diagnose(
                UNRESOLVED_TYPE,
                f"Type '{resolved.name}' has no complete definition.",
                owner,
                name,
                item.offset,
            )

        offset = item.location
        bit_offset: int | None = None
        bit_width: int | None = None
        size = resolved.size or 0
        if item.bit_size is not None:
            storage = item.byte_size or resolved.size or 0
            offset, bit_offset, size = self._bitfield_position(item, storage)
            bit_width = item.bit_size
        elif offset is None:
            if owner_kind != "union":
                self._diagnose(MALFORMED_RECORD, "Member has no data location.", owner, name, item.offset)
                return None
            offset = 0

        return Member(
            name=name,
            offset=offset or 0,
            size=size,
            align=resolved.align,
            type_ref=resolved.type_ref(),
            bit_offset=bit_offset,
            bit_width=bit_width,
            is_array=resolved.is_array,
            array_len=resolved.array_len,
            is_pointer=resolved.is_pointer,
            is_atomic=resolved.is_atomic,
            unresolved=unresolved,
        )

    def _bitfield_position(self, item: MemberRecord, storage: int) -> tuple[int, int, int]:
        width = item.bit_size or 0
        storage_bits = storage * 8
        if item.data_bit_offset is not None:
            absolute = item.data_bit_offset
        elif item.bit_offset is not None and storage_bits:
            # DWARF 2-4 count from the most significant bit of the storage unit.
            if self.little_endian:
                within = storage_bits - item.bit_offset - width
            else:
                within = item.bit_offset
            absolute = (item.location or 0) * 8 + within
        else:
            absolute = (item.location or 0) * 8

        if storage_bits:
            container = (absolute // storage_bits) * storage
            within = absolute - container * 8
            if within + width <= storage_bits:
                return container, within, storage
        container = absolute // 8
        within = absolute % 8
        return container, within, (within + width + 7) // 8

    def _narrow_bitfields(self, members: list[Member]) -> list[Member]:
        """Shrink bitfield storage units that overlap a plain member to the bytes they claim."""
        plain = [(member.offset, member.end) for member in members if not member.is_bitfield and member.size]
        out: list[Member] = []
        for member in members:
            if member.is_bitfield and any(start < member.end and member.offset < end for start, end in plain):
                member = self._rebase_bitfield(member)
            out.append(member)
        out.sort(key=lambda member: member.offset)
        return out

    @staticmethod
    def _rebase_bitfield(member: Member) -> Member:
        # Bit offsets run in memory order for either byte order.
        width = max(member.bit_width or 0, 1)
        within = member.bit_offset or 0
        first = within // 8
        last = (within + width - 1) // 8
        return replace(member, offset=member.offset + first, bit_offset=within - first * 8, size=last - first + 1)

    def build(self) -> Snapshot:
        types: dict[str, TypeLayout] = {}
        for record in self.order:
            if record.tag not in TYPE_KINDS or record.declaration or record.byte_size is None:
                continue
            layout = self.layout_for(record.offset)
            if layout is None:
                continue
            existing = types.get(layout.name)
            if existing is None:
                types[layout.name] = layout
            elif existing.signature() != layout.signature():
                raise ConflictingDefinition(layout.name, existing, layout)
        return Snapshot(types=types, binary=self.binary)


def _unique(diagnostics: list[Diagnostic]) -> tuple[Diagnostic, ...]:
    seen: set[tuple[Any, ...]] = set()
    out: list[Diagnostic] = []
    for item in diagnostics:
        key = (item.code, item.type_name, item.member_name, item.message)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return tuple(out)


def build_snapshot(extraction: ExtractionResult) -> BuildResult:
    builder = _SnapshotBuilder(extraction)
    snapshot = builder.build()
    return BuildResult(snapshot=snapshot, diagnostics=tuple(extraction.diagnostics) + _unique(builder.diagnostics))


def load_binary(path: str | os.PathLike[str], jobs: int = 1) -> BuildResult:
    return build_snapshot(extract_descriptors(path, jobs=jobs))
