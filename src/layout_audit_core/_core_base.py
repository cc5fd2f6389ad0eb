from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

TOOL_NAME = "layout-audit"
TOOL_VERSION = "1.0.0"
EXTRACTOR_VERSION = "1"
SNAPSHOT_FORMAT_VERSION = 1
DEFAULT_CACHE_LINE_SIZE = 64
UNBOUNDED = "unbounded"

AGGREGATE_KINDS = ("struct", "union", "class")
TYPE_KINDS = AGGREGATE_KINDS + ("enum",)
REF_KINDS = ("primitive", "aggregate", "enum", "pointer", "function", "unresolved")

MALFORMED_RECORD = "MalformedRecord"
UNRESOLVED_TYPE = "UnresolvedType"


class LayoutAuditError(Exception):
    stage = "audit"

    def describe(self) -> str:
        return f"{self.stage}: {self}"


class UnsupportedFormat(LayoutAuditError):
    stage = "extract"


class TruncatedInput(LayoutAuditError):
    stage = "extract"

    def __init__(self, message: str, offset: int | None = None) -> None:
        if offset is not None:
            message = f"{message} (at byte offset 0x{offset:x})"
        super().__init__(message)
        self.offset = offset


class ConflictingDefinition(LayoutAuditError):
    stage = "build"

    def __init__(self, name: str, first: "TypeLayout", second: "TypeLayout") -> None:
        super().__init__(
            f"Type '{name}' has incompatible definitions in units "
            f"'{first.unit or '?'}' (size {first.size}) and '{second.unit or '?'}' (size {second.size})."
        )
        self.name = name
        self.first = first
        self.second = second


class ConfigError(LayoutAuditError):
    stage = "config"


@dataclass(frozen=True)
class Diagnostic:
    code: str
    stage: str
    message: str
    type_name: str | None = None
    member_name: str | None = None
    offset: int | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "code": self.code,
            "stage": self.stage,
            "message": self.message,
        }
        if self.type_name is not None:
            out["type"] = self.type_name
        if self.member_name is not None:
            out["member"] = self.member_name
        if self.offset is not None:
            out["offset"] = self.offset
        return out

    def __str__(self) -> str:
        where = ""
        if self.type_name:
            where = f" [{self.type_name}"
            if self.member_name:
                where += f".{self.member_name}"
            where += "]"
        elif self.offset is not None:
            where = f" [0x{self.offset:x}]"
        return f"{self.code}{where}: {self.message}"


@dataclass(frozen=True)
class TypeRef:
    name: str
    kind: str
    size: int | None = None
    align: int = 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "size": self.size,
            "align": self.align,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TypeRef":
        size = payload.get("size")
        return cls(
            name=str(payload["name"]),
            kind=str(payload["kind"]),
            size=None if size is None else int(size),
            align=int(payload.get("align", 1)),
        )


@dataclass(frozen=True)
class Member:
    name: str
    offset: int
    size: int
    align: int
    type_ref: TypeRef
    bit_offset: int | None = None
    bit_width: int | None = None
    is_array: bool = False
    array_len: int | str | None = None
    is_pointer: bool = False
    is_atomic: bool = False
    base: str | None = None
    unresolved: bool = False

    @property
    def is_bitfield(self) -> bool:
        return self.bit_width is not None

    @property
    def is_flexible(self) -> bool:
        return self.array_len == UNBOUNDED

    @property
    def end(self) -> int:
        return self.offset + self.size

    def covered_bytes(self) -> int:
        """Bytes of the storage unit this member actually claims."""
        if self.unresolved:
            return 0
        if self.bit_width is not None:
            claimed_bits = (self.bit_offset or 0) + self.bit_width
            return min(self.size, (claimed_bits + 7) // 8) if self.size else (claimed_bits + 7) // 8
        return self.size

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "offset": self.offset,
            "size": self.size,
            "align": self.align,
            "type": self.type_ref.as_dict(),
        }
        if self.bit_width is not None:
            out["bit_offset"] = self.bit_offset
            out["bit_width"] = self.bit_width
        if self.is_array:
            out["is_array"] = True
            out["array_len"] = self.array_len
        if self.is_pointer:
            out["is_pointer"] = True
        if self.is_atomic:
            out["is_atomic"] = True
        if self.base is not None:
            out["base"] = self.base
        if self.unresolved:
            out["unresolved"] = True
        return out

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Member":
        array_len = payload.get("array_len")
        if array_len is not None and array_len != UNBOUNDED:
            array_len = int(array_len)
        bit_width = payload.get("bit_width")
        bit_offset = payload.get("bit_offset")
        return cls(
            name=str(payload["name"]),
            offset=int(payload["offset"]),
            size=int(payload["size"]),
            align=int(payload.get("align", 1)),
            type_ref=TypeRef.from_dict(payload["type"]),
            bit_offset=None if bit_offset is None else int(bit_offset),
            bit_width=None if bit_width is None else int(bit_width),
            is_array=bool(payload.get("is_array", False)),
            array_len=array_len,
            is_pointer=bool(payload.get("is_pointer", False)),
            is_atomic=bool(payload.get("is_atomic", False)),
            base=payload.get("base"),
            unresolved=bool(payload.get("unresolved", False)),
        )


@dataclass(frozen=True)
class Gap:
    offset: int
    size: int
    after_member: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "offset": self.offset,
            "size": self.size,
            "after_member": self.after_member,
        }


@dataclass(frozen=True)
class TypeLayout:
    name: str
    kind: str
    size: int
    align: int
    members: tuple[Member, ...] = ()
    is_packed: bool = False
    gaps: tuple[Gap, ...] = ()
    source: str | None = None
    unit: str | None = field(default=None, compare=False)

    @property
    def padding_bytes(self) -> int:
        return sum(gap.size for gap in self.gaps)

    @property
    def used_bytes(self) -> int:
        return self.size - self.padding_bytes

    @property
    def unresolved_members(self) -> tuple[str, ...]:
        return tuple(member.name for member in self.members if member.unresolved)

    def member(self, name: str) -> Member | None:
        for member in self.members:
            if member.name == name:
                return member
        return None

    def signature(self) -> tuple[Any, ...]:
        return (
            self.kind,
            self.size,
            self.align,
            self.is_packed,
            tuple(
                (
                    m.name,
                    m.offset,
                    m.size,
                    m.bit_offset,
                    m.bit_width,
                    m.is_pointer,
                    m.array_len,
                    m.unresolved,
                )
                for m in self.members
            ),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "size": self.size,
            "align": self.align,
            "is_packed": self.is_packed,
            "members": [member.as_dict() for member in self.members],
            "gaps": [gap.as_dict() for gap in self.gaps],
            "source": self.source,
            "unit": self.unit,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TypeLayout":
        return cls(
            name=str(payload["name"]),
            kind=str(payload["kind"]),
            size=int(payload["size"]),
            align=int(payload["align"]),
            members=tuple(Member.from_dict(item) for item in payload.get("members", [])),
            is_packed=bool(payload.get("is_packed", False)),
            gaps=tuple(
                Gap(
                    offset=int(item["offset"]),
                    size=int(item["size"]),
                    after_member=item.get("after_member"),
                )
                for item in payload.get("gaps", [])
            ),
            source=payload.get("source"),
            unit=payload.get("unit"),
        )


@dataclass(frozen=True)
class Snapshot:
    """Immutable set of type layouts taken from one binary.

    ``types`` is exposed as a read-only mapping sorted by qualified name, so a
    snapshot can be handed to any number of threads without copying.
    """

    types: Mapping[str, TypeLayout]
    binary: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ordered = {name: self.types[name] for name in sorted(self.types)}
        object.__setattr__(self, "types", MappingProxyType(ordered))
        object.__setattr__(self, "binary", MappingProxyType(dict(self.binary)))

    def __len__(self) -> int:
        return len(self.types)

    def __iter__(self) -> Iterator[TypeLayout]:
        return iter(self.types.values())

    def __contains__(self, name: object) -> bool:
        return name in self.types

    def get(self, name: str) -> TypeLayout | None:
        return self.types.get(name)

    def names(self) -> list[str]:
        return list(self.types.keys())

    def as_dict(self) -> dict[str, Any]:
        return {
            "format": SNAPSHOT_FORMAT_VERSION,
            "tool": {"name": TOOL_NAME, "version": TOOL_VERSION},
            "binary": dict(self.binary),
            "types": {name: layout.as_dict() for name, layout in self.types.items()},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Snapshot":
        types = payload.get("types")
        if not isinstance(types, dict):
            raise ConfigError("Snapshot is missing required object: 'types'.")
        binary = payload.get("binary")
        return cls(
            types={str(name): TypeLayout.from_dict(item) for name, item in types.items()},
            binary=binary if isinstance(binary, dict) else {},
        )


def normalize_ws(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def align_up(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return ((value + alignment - 1) // alignment) * alignment


def natural_alignment(size: int | None, max_align: int = 16) -> int:
    if not size or size <= 0:
        return 1
    align = 1
    while align < size and align < max_align:
        align *= 2
    return max(1, min(align, max_align))


def compute_gaps(size: int, members: tuple[Member, ...] | list[Member]) -> tuple[Gap, ...]:
    # Storage of an unresolved member is unknown, so no byte can be called padding.
    if any(member.unresolved for member in members):
        return ()
    spans: list[tuple[int, int, str]] = []
    for member in members:
        covered = member.covered_bytes()
        if covered <= 0:
            continue
        spans.append((member.offset, member.offset + covered, member.name))
    spans.sort(key=lambda item: (item[0], item[1]))

    gaps: list[Gap] = []
    cursor = 0
    last_member: str | None = None
    for start, end, name in spans:
        if start > cursor:
            gaps.append(Gap(offset=cursor, size=start - cursor, after_member=last_member))
        if end >= cursor:
            cursor = end
            last_member = name
    if size > cursor:
        gaps.append(Gap(offset=cursor, size=size - cursor, after_member=last_member))
    return tuple(gaps)


def load_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Unable to read JSON file '{path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in '{path}': {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"JSON root in '{path}' must be an object.")
    return payload


def dump_json(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True) + "\n"


def write_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_json(value), encoding="utf-8")
