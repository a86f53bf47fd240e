"""Display ordering and authorship helpers for project chat."""

from __future__ import annotations

from typing import Iterable, List

from teamsync.entities import ChatMessage


def newest_first(messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Canonical feed order: ``created_date`` descending, then ``id`` descending.

    The remote store only promises ``created_date`` ordering; equal timestamps
    are broken by id so the feed is total.
    """
    return sorted(messages, key=lambda m: (m.created_date, m.id), reverse=True)


def to_display_order(messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Oldest-first view of a newest-first feed. Pure full reversal."""
    return list(messages)[::-1]


def is_own_message(message: ChatMessage, identity) -> bool:
    if identity is None:
        return False
    return message.user_email == identity.email


def author_label(message: ChatMessage, identity=None) -> str:
    if is_own_message(message, identity):
        return "You"
    return message.user_name or message.user_email.split("@")[0]
