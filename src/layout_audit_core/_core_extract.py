from __future__ import annotations

import hashlib
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from elftools.common.exceptions import DWARFError, ELFError, ELFParseError
from elftools.dwarf.dwarf_expr import DWARFExprParser
from elftools.elf.elffile import ELFFile

from ._core_base import *  # noqa: F401,F403

SUPPORTED_DWARF_VERSIONS = (2, 3, 4, 5)

TAG_KINDS = {
    "DW_TAG_structure_type": "struct",
    "DW_TAG_class_type": "class",
    "DW_TAG_union_type": "union",
    "DW_TAG_enumeration_type": "enum",
    "DW_TAG_typedef": "typedef",
    "DW_TAG_base_type": "base",
    "DW_TAG_unspecified_type": "base",
    "DW_TAG_pointer_type": "pointer",
    "DW_TAG_reference_type": "reference",
    "DW_TAG_rvalue_reference_type": "reference",
    "DW_TAG_ptr_to_member_type": "member_pointer",
    "DW_TAG_const_type": "const",
    "DW_TAG_volatile_type": "volatile",
    "DW_TAG_restrict_type": "restrict",
    "DW_TAG_atomic_type": "atomic",
    "DW_TAG_array_type": "array",
    "DW_TAG_subroutine_type": "function",
    "DW_TAG_namespace": "namespace",
}

LOCATION_OPS = ("DW_OP_plus_uconst", "DW_OP_constu", "DW_OP_consts")
REF_FORMS = ("DW_FORM_ref1", "DW_FORM_ref2", "DW_FORM_ref4", "DW_FORM_ref8", "DW_FORM_ref_udata")


@dataclass(frozen=True)
class TypeRecord:
    offset: int
    unit: str
    tag: str
    name: str | None = None
    parent: int | None = None
    byte_size: int | None = None
    alignment: int | None = None
    target: int | None = None
    counts: tuple[int | None, ...] = ()
    declaration: bool = False
    specification: int | None = None
    encoding: int | None = None
    decl_file: str | None = None
    decl_line: int | None = None


@dataclass(frozen=True)
class MemberRecord:
    offset: int
    unit: str
    parent: int
    index: int
    name: str | None = None
    type_offset: int | None = None
    location: int | None = None
    byte_size: int | None = None
    bit_size: int | None = None
    bit_offset: int | None = None
    data_bit_offset: int | None = None
    inheritance: bool = False
    virtual: bool = False


@dataclass(frozen=True)
class ExtractionResult:
    records: tuple[TypeRecord | MemberRecord, ...]
    diagnostics: tuple[Diagnostic, ...] = ()
    binary: dict[str, Any] = field(default_factory=dict)


class _MalformedDIE(Exception):
    pass


def _malformed(message: str, offset: int | None) -> Diagnostic:
    return Diagnostic(code=MALFORMED_RECORD, stage="extract", message=message, offset=offset)


@contextmanager
def _open_dwarf(path: str | os.PathLike[str]) -> Iterator[tuple[ELFFile, Any]]:
    try:
        stream = open(path, "rb")
    except OSError as exc:
        raise UnsupportedFormat(f"Unable to read binary '{path}': {exc}") from exc
    with stream:
        try:
            elf = ELFFile(stream)
            has_dwarf = (
                elf.get_section_by_name(".debug_info") is not None
                or elf.get_section_by_name(".zdebug_info") is not None
            )
        except ELFParseError as exc:
            raise _truncated(path, stream, exc) from exc
        except ELFError as exc:
            raise UnsupportedFormat(f"'{path}' is not an ELF file: {exc}") from exc
        if not has_dwarf:
            raise UnsupportedFormat(f"'{path}' carries no DWARF debug information (.debug_info is missing).")
        try:
            dwarf = elf.get_dwarf_info()
        except ELFParseError as exc:
            raise TruncatedInput(f"DWARF sections of '{path}' end early: {exc}") from exc
        except (ELFError, DWARFError) as exc:
            raise UnsupportedFormat(f"Unable to load DWARF sections from '{path}': {exc}") from exc
        yield elf, dwarf


def _truncated(path: str | os.PathLike[str], stream: Any, exc: Exception) -> TruncatedInput:
    size = os.fstat(stream.fileno()).st_size
    return TruncatedInput(f"'{path}' ends before its ELF headers and sections do: {exc}", offset=size)


def _decode_name(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _attr_int(die: Any, name: str) -> int | None:
    attr = die.attributes.get(name)
    if attr is None:
        return None
    if isinstance(attr.value, bool):
        return int(attr.value)
    if not isinstance(attr.value, int):
        raise _MalformedDIE(f"{name} has non-constant form {attr.form}")
    return attr.value


def _attr_name(die: Any) -> str | None:
    attr = die.attributes.get("DW_AT_name")
    if attr is None:
        return None
    return _decode_name(attr.value)


def _attr_flag(die: Any, name: str) -> bool:
    attr = die.attributes.get(name)
    return bool(attr is not None and attr.value)


def _attr_ref(die: Any, name: str) -> int | None:
    attr = die.attributes.get(name)
    if attr is None:
        return None
    if attr.form in REF_FORMS:
        return attr.value + die.cu.cu_offset
    if attr.form == "DW_FORM_ref_addr":
        return attr.value
    # Type units and supplementary files are not followed.
    return None


def _subrange_count(die: Any) -> int | None:
    count = die.attributes.get("DW_AT_count")
    if count is not None:
        if not isinstance(count.value, int):
            return None
        return None if count.value < 0 else count.value
    upper = die.attributes.get("DW_AT_upper_bound")
    if upper is None or not isinstance(upper.value, int):
        return None
    lower = _attr_int(die, "DW_AT_lower_bound") or 0
    bits = die.cu["address_size"] * 8
    if upper.value in (-1, (1 << 32) - 1, (1 << bits) - 1):
        return 0
    return max(0, upper.value - lower + 1)


class _UnitWalker:
    """Flattens the DIE tree of one compilation unit into descriptor records."""

    def __init__(self, dwarf: Any, cu: Any) -> None:
        self.dwarf = dwarf
        self.cu = cu
        self.expr_parser = DWARFExprParser(cu.structs)
        self.records: list[TypeRecord | MemberRecord] = []
        self.diagnostics: list[Diagnostic] = []
        self.unit = ""
        self._files: list[str] | None = None

    def walk(self) -> None:
        top = self.cu.get_top_DIE()
        self.unit = _attr_name(top) or f"<unit at 0x{self.cu.cu_offset:x}>"
        self._walk_scope(top, None)

    def _file_names(self) -> list[str]:
        if self._files is not None:
            return self._files
        self._files = []
        try:
            program = self.dwarf.line_program_for_CU(self.cu)
        except (DWARFError, ELFParseError) as exc:
            self.diagnostics.append(_malformed(f"Unreadable line program: {exc}", self.cu.cu_offset))
            return self._files
        if program is None:
            return self._files
        self._files = [os.path.basename(_decode_name(entry.name)) for entry in program.header["file_entry"]]
        return self._files

    def _decl_file(self, die: Any) -> str | None:
        index = _attr_int(die, "DW_AT_decl_file")
        if index is None:
            return None
        files = self._file_names()
        # DWARF 5 file tables are zero-based.
        slot = index if self.cu["version"] >= 5 else index - 1
        if 0 <= slot < len(files):
            return files[slot]
        return None

    def _walk_scope(self, scope: Any, parent: int | None) -> None:
        for child in scope.iter_children():
            kind = TAG_KINDS.get(child.tag)
            if kind is None:
                continue
            record = self._type_record(child, kind, parent)
            if record is None:
                continue
            self.records.append(record)
            if kind in AGGREGATE_KINDS:
                self._walk_aggregate(child)
            elif kind == "namespace":
                self._walk_scope(child, child.offset)

    def _walk_aggregate(self, die: Any) -> None:
        index = 0
        for child in die.iter_children():
            if child.tag in ("DW_TAG_member", "DW_TAG_inheritance"):
                # Static data members are declarations without storage in the object.
                if child.tag == "DW_TAG_member" and (
                    _attr_flag(child, "DW_AT_external") or _attr_flag(child, "DW_AT_declaration")
                ):
                    continue
                record = self._member_record(child, die, index)
                index += 1
                if record is not None:
                    self.records.append(record)
                continue
            kind = TAG_KINDS.get(child.tag)
            if kind is None or kind == "namespace":
                continue
            record = self._type_record(child, kind, die.offset)
            if record is None:
                continue
            self.records.append(record)
            if kind in AGGREGATE_KINDS:
                self._walk_aggregate(child)

    def _type_record(self, die: Any, kind: str, parent: int | None) -> TypeRecord | None:
        try:
            counts: tuple[int | None, ...] = ()
            if kind == "array":
                counts = tuple(
                    _subrange_count(sub)
                    for sub in die.iter_children()
                    if sub.tag == "DW_TAG_subrange_type"
                )
            name = _attr_name(die)
            return TypeRecord(
                offset=die.offset,
                unit=self.unit,
                tag=kind,
                name=None if name is None else normalize_ws(name),
                parent=parent,
                byte_size=_attr_int(die, "DW_AT_byte_size"),
                alignment=_attr_int(die, "DW_AT_alignment"),
                target=_attr_ref(die, "DW_AT_type"),
                counts=counts,
                declaration=_attr_flag(die, "DW_AT_declaration"),
                specification=_attr_ref(die, "DW_AT_specification"),
                encoding=_attr_int(die, "DW_AT_encoding"),
                decl_file=self._decl_file(die) if kind in AGGREGATE_KINDS else None,
                decl_line=_attr_int(die, "DW_AT_decl_line") if kind in AGGREGATE_KINDS else None,
            )
        except _MalformedDIE as exc:
            self.diagnostics.append(_malformed(f"Skipped {die.tag}: {exc}", die.offset))
            return None

    def _member_location(self, die: Any) -> int | None:
        attr = die.attributes.get("DW_AT_data_member_location")
        if attr is None:
            return None
        if isinstance(attr.value, int):
            return attr.value
        if not isinstance(attr.value, (list, bytes)):
            raise _MalformedDIE(f"DW_AT_data_member_location has unsupported form {attr.form}")
        try:
            ops = self.expr_parser.parse_expr(list(attr.value))
        except (DWARFError, KeyError, IndexError) as exc:
            raise _MalformedDIE(f"undecodable member location: {exc}") from exc
        if len(ops) == 1 and ops[0].op_name in LOCATION_OPS:
            return int(ops[0].args[0])
        names = ", ".join(op.op_name for op in ops) or "empty expression"
        raise _MalformedDIE(f"member location is not a constant offset ({names})")

    def _member_record(self, die: Any, parent: Any, index: int) -> MemberRecord | None:
        inheritance = die.tag == "DW_TAG_inheritance"
        try:
            # A virtual base sits wherever the vtable says at run time.
            virtual = inheritance and _attr_int(die, "DW_AT_virtuality") not in (None, 0)
            return MemberRecord(
                offset=die.offset,
                unit=self.unit,
                parent=parent.offset,
                index=index,
                name=_attr_name(die),
                type_offset=_attr_ref(die, "DW_AT_type"),
                location=None if virtual else self._member_location(die),
                byte_size=_attr_int(die, "DW_AT_byte_size"),
                bit_size=_attr_int(die, "DW_AT_bit_size"),
                bit_offset=_attr_int(die, "DW_AT_bit_offset"),
                data_bit_offset=_attr_int(die, "DW_AT_data_bit_offset"),
                inheritance=inheritance,
                virtual=virtual,
            )
        except _MalformedDIE as exc:
            self.diagnostics.append(_malformed(f"Skipped {die.tag}: {exc}", die.offset))
            return None


def _check_unit(cu: Any, section_size: int) -> None:
    version = cu["version"]
    if version not in SUPPORTED_DWARF_VERSIONS:
        raise UnsupportedFormat(
            f"Compilation unit at 0x{cu.cu_offset:x} uses DWARF version {version}; supported versions are 2..5."
        )
    end = cu.cu_offset + cu["unit_length"] + cu.structs.initial_length_field_size()
    if end > section_size:
        raise TruncatedInput(
            f"Compilation unit header claims {end - cu.cu_offset} bytes but .debug_info holds {section_size}",
            offset=cu.cu_offset,
        )


def _iter_units(dwarf: Any) -> Iterator[Any]:
    section_size = dwarf.debug_info_sec.size
    units = dwarf.iter_CUs()
    offset = 0
    while True:
        try:
            cu = next(units)
        except StopIteration:
            return
        except ELFParseError as exc:
            raise TruncatedInput(f"Unit header is cut short: {exc}", offset=offset) from exc
        _check_unit(cu, section_size)
        offset = cu.cu_offset + cu["unit_length"] + cu.structs.initial_length_field_size()
        yield cu


def _walk_unit(dwarf: Any, cu: Any) -> _UnitWalker:
    walker = _UnitWalker(dwarf, cu)
    try:
        walker.walk()
    except ELFParseError as exc:
        raise TruncatedInput(f"DWARF stream ends early: {exc}", offset=cu.cu_offset) from exc
    return walker


def _walk_shard(path: str | os.PathLike[str], shard: int, shards: int) -> list[tuple[int, _UnitWalker]]:
    out: list[tuple[int, _UnitWalker]] = []
    with _open_dwarf(path) as (_elf, dwarf):
        for index, cu in enumerate(_iter_units(dwarf)):
            if index % shards != shard:
                continue
            out.append((index, _walk_unit(dwarf, cu)))
    return out


def iter_descriptors(path: str | os.PathLike[str], jobs: int = 1) -> Iterator[TypeRecord | MemberRecord | Diagnostic]:
    """Yield raw type and member descriptors in compilation-unit order.

    With ``jobs > 1`` units are walked on a thread pool, each worker holding its
    own file handle; the merged stream is identical to the sequential one.
    """
    if jobs <= 1:
        with _open_dwarf(path) as (_elf, dwarf):
            for cu in _iter_units(dwarf):
                walker = _walk_unit(dwarf, cu)
                yield from walker.records
                yield from walker.diagnostics
        return

    with ThreadPoolExecutor(max_workers=jobs) as pool:
        futures = [pool.submit(_walk_shard, path, shard, jobs) for shard in range(jobs)]
        walked: list[tuple[int, _UnitWalker]] = []
        for future in futures:
            walked.extend(future.result())
    walked.sort(key=lambda item: item[0])
    for _index, walker in walked:
        yield from walker.records
        yield from walker.diagnostics


def binary_identity(path: str | os.PathLike[str]) -> str:
    with _open_elf_only(path) as elf:
        for section in elf.iter_sections():
            if section["sh_type"] != "SHT_NOTE":
                continue
            for note in section.iter_notes():
                if note["n_type"] == "NT_GNU_BUILD_ID":
                    return f"build-id:{note['n_desc']}"
    digest = hashlib.sha256()
    with open(path, "rb") as stream:
        for chunk in iter(lambda: stream.read(1 << 20), b""):
            digest.update(chunk)
    return f"sha256:{digest.hexdigest()}"


@contextmanager
def _open_elf_only(path: str | os.PathLike[str]) -> Iterator[ELFFile]:
    try:
        stream = open(path, "rb")
    except OSError as exc:
        raise UnsupportedFormat(f"Unable to read binary '{path}': {exc}") from exc
    with stream:
        try:
            yield ELFFile(stream)
        except ELFParseError as exc:
            raise _truncated(path, stream, exc) from exc
        except ELFError as exc:
            raise UnsupportedFormat(f"'{path}' is not an ELF file: {exc}") from exc


def describe_binary(path: str | os.PathLike[str]) -> dict[str, Any]:
    with _open_elf_only(path) as elf:
        info = {
            "file": os.path.basename(os.fspath(path)),
            "machine": elf["e_machine"],
            "address_size": elf.elfclass // 8,
            "little_endian": bool(elf.little_endian),
        }
    info["identity"] = binary_identity(path)
    info["extractor_version"] = EXTRACTOR_VERSION
    return info


def extract_descriptors(path: str | os.PathLike[str], jobs: int = 1) -> ExtractionResult:
    binary = describe_binary(path)
    records: list[TypeRecord | MemberRecord] = []
    diagnostics: list[Diagnostic] = []
    for item in iter_descriptors(path, jobs=jobs):
        if isinstance(item, Diagnostic):
            diagnostics.append(item)
        else:
            records.append(item)
    return ExtractionResult(records=tuple(records), diagnostics=tuple(diagnostics), binary=binary)
