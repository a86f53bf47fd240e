"""Query keys: entity type plus filter parameters, hashable and canonical."""

from __future__ import annotations

import json
import math
from typing import Any, Tuple


QueryKey = Tuple[Any, ...]

CHAT = "chat"
PROJECT_MEMBERS = "projectMembers"
PROJECT = "project"
PROJECTS = "projects"


class KeyPartError(TypeError):
    """A key part or filter value with no canonical text form."""


def _check_part(value: Any, path: str) -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: non-finite number {value!r}")
        return
    if isinstance(value, dict):
        for name, item in value.items():
            if not isinstance(name, str):
                raise KeyPartError(f"{path}: field names must be strings, got {type(name).__name__}")
            _check_part(item, f"{path}.{name}")
        return
    if isinstance(value, (list, tuple)):
        for idx, item in enumerate(value):
            _check_part(item, f"{path}[{idx}]")
        return
    raise KeyPartError(f"{path}: unsupported type {type(value).__name__}")


def canonical_text(value: Any) -> str:
    """Compact JSON with sorted fields; equal filters give equal text."""
    _check_part(value, "$")
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def _fold(part: Any) -> Any:
    # dicts and lists are not hashable
    if isinstance(part, (dict, list)):
        return canonical_text(part)
    _check_part(part, "$")
    return part


def make_key(*parts: Any) -> QueryKey:
    if not parts:
        raise ValueError("query key needs at least one part")
    if not isinstance(parts[0], str) or not parts[0]:
        raise ValueError("query key must start with an entity type name")
    return tuple(_fold(p) for p in parts)


def as_key(value: Any) -> QueryKey:
    if isinstance(value, (tuple, list)):
        return make_key(*value)
    return make_key(value)


def key_matches(key: QueryKey, prefix: QueryKey) -> bool:
    if len(prefix) > len(key):
        return False
    return tuple(key[: len(prefix)]) == tuple(prefix)


def format_key(key: QueryKey) -> str:
    return canonical_text(list(key))


def chat_key(project_id: str) -> QueryKey:
    return make_key(CHAT, project_id)


def members_key(project_id: str) -> QueryKey:
    return make_key(PROJECT_MEMBERS, project_id)


def project_key(project_id: str) -> QueryKey:
    return make_key(PROJECT, project_id)


def projects_key() -> QueryKey:
    return make_key(PROJECTS)
