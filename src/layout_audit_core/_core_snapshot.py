from __future__ import annotations

import hashlib
import json
import os
import re
from pathlib import Path
from typing import Any, Mapping

from ._core_base import *  # noqa: F401,F403
from ._core_build import BuildResult, load_binary
from ._core_extract import binary_identity


def stable_hash(value: Any) -> str:
    payload = json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def snapshot_payload(snapshot: Snapshot) -> dict[str, Any]:
    payload = snapshot.as_dict()
    payload["content_hash"] = stable_hash(payload["types"])
    return payload


def validate_snapshot_payload(payload: dict[str, Any], label: str) -> None:
    fmt = payload.get("format")
    if fmt != SNAPSHOT_FORMAT_VERSION:
        raise ConfigError(f"{label} has unsupported format {fmt!r}; expected {SNAPSHOT_FORMAT_VERSION}")
    types = payload.get("types")
    if not isinstance(types, dict):
        raise ConfigError(f"{label}.types must be an object")
    for name, item in types.items():
        if not isinstance(item, dict):
            raise ConfigError(f"{label}.types[{name!r}] must be an object")
        missing = [key for key in ("name", "kind", "size", "align") if key not in item]
        if missing:
            raise ConfigError(f"{label}.types[{name!r}] missing required keys: {', '.join(missing)}")
        if item["name"] != name:
            raise ConfigError(f"{label}.types[{name!r}].name does not match its key")
        if not isinstance(item.get("members", []), list):
            raise ConfigError(f"{label}.types[{name!r}].members must be an array")
    expected = payload.get("content_hash")
    if expected is not None and expected != stable_hash(types):
        raise ConfigError(f"{label} content_hash does not match its types; the file was edited or truncated")


def write_snapshot(path: Path, snapshot: Snapshot) -> None:
    write_json(path, snapshot_payload(snapshot))


def load_snapshot(path: Path) -> Snapshot:
    payload = load_json(path)
    label = f"snapshot '{path}'"
    validate_snapshot_payload(payload, label)
    try:
        return Snapshot.from_dict(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"{label} is malformed: {exc}") from exc


class SnapshotStore:
    """Directory of persisted snapshots keyed by binary identity and extractor version."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, identity: str, extractor_version: str = EXTRACTOR_VERSION) -> Path:
        slug = re.sub(r"[^A-Za-z0-9._-]+", "-", identity).strip("-")
        return self.root / f"{slug}.x{extractor_version}.json"

    def load(self, identity: str, extractor_version: str = EXTRACTOR_VERSION) -> Snapshot | None:
        path = self.path_for(identity, extractor_version)
        if not path.exists():
            return None
        return load_snapshot(path)

    def save(self, snapshot: Snapshot) -> Path:
        binary: Mapping[str, Any] = snapshot.binary
        identity = binary.get("identity")
        if not identity:
            raise ConfigError("Snapshot has no binary identity and cannot be stored.")
        path = self.path_for(str(identity), str(binary.get("extractor_version") or EXTRACTOR_VERSION))
        write_snapshot(path, snapshot)
        return path

    def load_or_build(self, binary_path: str | os.PathLike[str], jobs: int = 1) -> BuildResult:
        cached = self.load(binary_identity(binary_path))
        if cached is not None:
            return BuildResult(snapshot=cached)
        result = load_binary(binary_path, jobs=jobs)
        self.save(result.snapshot)
        return result


def load_any(path: Path, jobs: int = 1) -> BuildResult:
    if path.suffix.lower() == ".json":
        return BuildResult(snapshot=load_snapshot(path))
    return load_binary(path, jobs=jobs)
