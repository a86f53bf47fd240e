"""teamsync kernel: query keys and entity records."""

from .query_keys import (
    KeyPartError,
    QueryKey,
    as_key,
    canonical_text,
    chat_key,
    format_key,
    key_matches,
    make_key,
    members_key,
    project_key,
    projects_key,
)

__all__ = [
    "KeyPartError",
    "QueryKey",
    "as_key",
    "canonical_text",
    "chat_key",
    "format_key",
    "key_matches",
    "make_key",
    "members_key",
    "project_key",
    "projects_key",
]
