from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ._core_base import *  # noqa: F401,F403

BUDGET_LIMITS = ("max_size", "max_padding", "max_padding_percent", "max_false_sharing_warnings")


@dataclass(frozen=True)
class Budget:
    pattern: str
    max_size: int | None = None
    max_padding: int | None = None
    max_padding_percent: float | None = None
    max_false_sharing_warnings: int | None = None

    @property
    def is_glob(self) -> bool:
        return any(ch in self.pattern for ch in "*?[")

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"pattern": self.pattern}
        for key in BUDGET_LIMITS:
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass(frozen=True)
class AuditConfig:
    cache_line_size: int = DEFAULT_CACHE_LINE_SIZE
    hot_path_tags: tuple[str, ...] = ()
    padding_threshold: float | None = None
    budgets: tuple[Budget, ...] = ()
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    source: str | None = field(default=None, compare=False)

    def is_hot(self, name: str) -> bool:
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.hot_path_tags)

    def includes(self, name: str) -> bool:
        if self.include_patterns and not any(fnmatch.fnmatchcase(name, p) for p in self.include_patterns):
            return False
        return not any(fnmatch.fnmatchcase(name, p) for p in self.exclude_patterns)

    def budget_for(self, name: str) -> Budget | None:
        for budget in self.budgets:
            if not budget.is_glob and budget.pattern == name:
                return budget
        for budget in self.budgets:
            if budget.is_glob and fnmatch.fnmatchcase(name, budget.pattern):
                return budget
        return None

    def with_overrides(self, **changes: Any) -> "AuditConfig":
        values = {
            "cache_line_size": self.cache_line_size,
            "hot_path_tags": self.hot_path_tags,
            "padding_threshold": self.padding_threshold,
            "budgets": self.budgets,
            "include_patterns": self.include_patterns,
            "exclude_patterns": self.exclude_patterns,
            "source": self.source,
        }
        values.update({key: value for key, value in changes.items() if value is not None})
        return AuditConfig(**values)

    def as_dict(self) -> dict[str, Any]:
        return {
            "cache_line_size": self.cache_line_size,
            "hot_path_tags": list(self.hot_path_tags),
            "padding_threshold": self.padding_threshold,
            "budgets": [budget.as_dict() for budget in self.budgets],
            "include_patterns": list(self.include_patterns),
            "exclude_patterns": list(self.exclude_patterns),
        }


def _pattern_list(raw: Any, label: str, key: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"{label}.{key} must be an array when specified")
    out: list[str] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, str) or not item:
            raise ConfigError(f"{label}.{key}[{idx}] must be a non-empty string")
        out.append(item)
    return tuple(out)


def _int_limit(raw: Any, label: str, key: str) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ConfigError(f"{label}.{key} must be non-negative integer when specified")
    return raw


def _percent_limit(raw: Any, label: str, key: str) -> float | None:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not 0 <= raw <= 100:
        raise ConfigError(f"{label}.{key} must be a number between 0 and 100 when specified")
    return float(raw)


def normalize_budgets(raw_budgets: Any, label: str) -> tuple[Budget, ...]:
    if raw_budgets is None:
        return ()
    if not isinstance(raw_budgets, dict):
        raise ConfigError(f"{label}.budgets must be an object when specified")

    out: list[Budget] = []
    for pattern, item in raw_budgets.items():
        entry = f"{label}.budgets[{pattern!r}]"
        if not pattern:
            raise ConfigError(f"{label}.budgets keys must be non-empty type names or patterns")
        if not isinstance(item, dict):
            raise ConfigError(f"{entry} must be an object")
        unknown = sorted(set(item) - set(BUDGET_LIMITS))
        if unknown:
            raise ConfigError(f"{entry} has unknown keys: {', '.join(unknown)}")
        out.append(
            Budget(
                pattern=str(pattern),
                max_size=_int_limit(item.get("max_size"), entry, "max_size"),
                max_padding=_int_limit(item.get("max_padding"), entry, "max_padding"),
                max_padding_percent=_percent_limit(item.get("max_padding_percent"), entry, "max_padding_percent"),
                max_false_sharing_warnings=_int_limit(
                    item.get("max_false_sharing_warnings"), entry, "max_false_sharing_warnings"
                ),
            )
        )
    return tuple(out)


def parse_audit_config(payload: dict[str, Any], label: str = "config") -> AuditConfig:
    cache_line_size = payload.get("cache_line_size", DEFAULT_CACHE_LINE_SIZE)
    if isinstance(cache_line_size, bool) or not isinstance(cache_line_size, int) or cache_line_size <= 0:
        raise ConfigError(f"{label}.cache_line_size must be a positive integer")

    threshold = payload.get("padding_threshold")
    if threshold is not None:
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or not 0 <= threshold <= 1:
            raise ConfigError(f"{label}.padding_threshold must be a ratio between 0 and 1")
        threshold = float(threshold)

    return AuditConfig(
        cache_line_size=cache_line_size,
        hot_path_tags=_pattern_list(payload.get("hot_path_tags"), label, "hot_path_tags"),
        padding_threshold=threshold,
        budgets=normalize_budgets(payload.get("budgets"), label),
        include_patterns=_pattern_list(payload.get("include_patterns"), label, "include_patterns"),
        exclude_patterns=_pattern_list(payload.get("exclude_patterns"), label, "exclude_patterns"),
    )


def load_audit_config(path: Path | None) -> AuditConfig:
    if path is None:
        return AuditConfig()
    config = parse_audit_config(load_json(path), label=path.name)
    return config.with_overrides(source=str(path))
