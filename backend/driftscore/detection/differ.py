"""
DriftScore - Configuration Differencer
Pure structural diff of two configuration trees.

Values are one of: null, bool, number, string, list, string-keyed map.
  - map vs map   -> recurse over the union of keys      (a.b.c)
  - list vs list -> compare element by index            (a.0.b)
  - key only in baseline -> removed, only in actual -> added
  - anything else that differs -> modified leaf

Lists are order-sensitive: a reordered list shows up as modified elements.
Absent keys and present-null keys are different states.
Numbers compare exactly. Output is sorted by field path.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from driftscore.errors import ValidationError
from driftscore.models import ChangeType, Severity
from driftscore.records import FieldChange

NULL = "null"
BOOL = "bool"
NUMBER = "number"
STRING = "string"
LIST = "list"
MAP = "map"

MAX_DETAIL_CHANGES = 5


def value_kind(value: Any) -> str:
    """Tag a configuration value with its kind. bool is checked before number."""
    if value is None:
        return NULL
    if isinstance(value, bool):
        return BOOL
    if isinstance(value, (int, float)):
        return NUMBER
    if isinstance(value, str):
        return STRING
    if isinstance(value, (list, tuple)):
        return LIST
    if isinstance(value, dict):
        return MAP
    raise ValidationError(
        f"Unsupported configuration value of type {type(value).__name__}"
    )


@dataclass(frozen=True)
class DiffResult:
    """Ordered field-level changes between a baseline and an actual configuration."""

    changes: tuple[FieldChange, ...]

    @property
    def has_drift(self) -> bool:
        return bool(self.changes)

    def __len__(self) -> int:
        return len(self.changes)


def diff_configurations(baseline: Any, actual: Any) -> DiffResult:
    """Compute every leaf-level difference from baseline to actual."""
    changes: list[FieldChange] = []
    _diff_value("", baseline, actual, changes)
    changes.sort(key=lambda c: path_sort_key(c.field_path))
    return DiffResult(changes=tuple(changes))


def path_sort_key(field_path: str) -> tuple:
    """Sort key that orders list indices numerically (a.2 before a.10)."""
    key = []
    for segment in field_path.split("."):
        if segment.isdigit():
            key.append((0, int(segment), ""))
        else:
            key.append((1, 0, segment))
    return tuple(key)


def join_path(path: str, segment: str) -> str:
    return f"{path}.{segment}" if path else segment


def _diff_value(path: str, old: Any, new: Any, out: list[FieldChange]) -> None:
    old_kind = value_kind(old)
    new_kind = value_kind(new)

    if old_kind == MAP and new_kind == MAP:
        _diff_maps(path, old, new, out)
    elif old_kind == LIST and new_kind == LIST:
        _diff_lists(path, old, new, out)
    elif old_kind != new_kind:
        out.append(_change(path, old, new, ChangeType.MODIFIED))
    elif not _scalars_equal(old_kind, old, new):
        out.append(_change(path, old, new, ChangeType.MODIFIED))


def _diff_maps(path: str, old: dict, new: dict, out: list[FieldChange]) -> None:
    for key in sorted(_checked_keys(path, old) | _checked_keys(path, new)):
        child = join_path(path, key)
        if key not in new:
            out.append(_change(child, old[key], None, ChangeType.REMOVED))
        elif key not in old:
            out.append(_change(child, None, new[key], ChangeType.ADDED))
        else:
            _diff_value(child, old[key], new[key], out)


def _diff_lists(path: str, old: list, new: list, out: list[FieldChange]) -> None:
    for index in range(max(len(old), len(new))):
        child = join_path(path, str(index))
        if index >= len(new):
            out.append(_change(child, old[index], None, ChangeType.REMOVED))
        elif index >= len(old):
            out.append(_change(child, None, new[index], ChangeType.ADDED))
        else:
            _diff_value(child, old[index], new[index], out)


def _checked_keys(path: str, mapping: dict) -> set:
    for key in mapping:
        if not isinstance(key, str):
            raise ValidationError(
                f"Configuration map keys must be strings, got {key!r} at '{path or '<root>'}'"
            )
    return set(mapping)


def _scalars_equal(kind: str, old: Any, new: Any) -> bool:
    if kind == NUMBER and old != old and new != new:
        return True  # NaN
    return old == new


def _change(path: str, old: Any, new: Any, change_type: ChangeType) -> FieldChange:
    return FieldChange(
        field_path=path,
        old_value=_snapshot(old),
        new_value=_snapshot(new),
        change_type=change_type,
    )


def _snapshot(value: Any) -> Any:
    """Validate a subtree and detach it from the caller's objects."""
    kind = value_kind(value)
    if kind == MAP:
        _checked_keys("", value)
        return {k: _snapshot(v) for k, v in value.items()}
    if kind == LIST:
        return [_snapshot(v) for v in value]
    return value


def fingerprint_changes(changes) -> str:
    """Stable SHA-256 over a change list, used to recognise a repeated divergence."""
    payload = json.dumps(
        [c.to_dict() for c in changes],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def describe_changes(changes, severity: Severity) -> str:
    """Human-readable summary of the first few changes."""
    if not changes:
        return "No changes detected"

    lines = [f"{len(changes)} configuration change(s) detected with {severity.value} severity:"]
    for change in changes[:MAX_DETAIL_CHANGES]:
        lines.append(
            f"- {change.field_path}: {change.change_type.value} "
            f"(was: {change.old_value!r}, now: {change.new_value!r})"
        )
    if len(changes) > MAX_DETAIL_CHANGES:
        lines.append(f"... and {len(changes) - MAX_DETAIL_CHANGES} more changes")
    return "\n".join(lines)
