"""
Conversation utilities for turning host history into request messages.

This module maps the host's stored turns onto chat-completion roles and
assembles the ordered message list for one request, with the current user
turn always last.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from deepseek_relay.history.models import HistoryEntry
from deepseek_relay.llm.models import LLMMessage, MessageRole

logger = logging.getLogger(__name__)

ROLE_MAP: dict[str, MessageRole] = {
    "user": MessageRole.USER,
    # Replies produced by this plugin are the assistant's turns
    "plugin": MessageRole.ASSISTANT,
    "assistant": MessageRole.ASSISTANT,
    "system": MessageRole.SYSTEM,
}


def map_role(role: str) -> MessageRole:
    """Map a host role to a chat role; unknown roles are treated as user."""
    mapped = ROLE_MAP.get(role)
    if mapped is None:
        logger.warning(
            f"Unknown role '{role}' in history message, treating as user"
        )
        return MessageRole.USER
    return mapped


def _to_messages(entries: Iterable[HistoryEntry]) -> list[LLMMessage]:
    messages = []
    for entry in entries:
        if not entry.content.strip():
            continue
        role = map_role(entry.role)
        messages.append(LLMMessage(role, entry.content))
        logger.debug(
            f"Added message: role={role.value}, content_length={len(entry.content)}"
        )
    return messages


def extract_completed_messages(history: list[HistoryEntry]) -> list[LLMMessage]:
    """
    Extract completed, non-empty turns in their stored (chronological) order.

    Args:
        history: Entries as returned by the host

    Returns:
        Messages ready to send, oldest first
    """
    completed = [entry for entry in history if entry.is_completed]
    logger.info(
        f"Found {len(completed)} completed messages out of "
        f"{len(history)} total history messages"
    )
    return _to_messages(completed)


def extract_recent_completed_messages(
    history: list[HistoryEntry], limit: int
) -> list[LLMMessage]:
    """
    Extract the ``limit`` most recent completed turns, oldest first.

    Recency is decided by ``created_at``. Entries sharing a timestamp keep
    their stored order, and when the limit falls inside such a group the
    later-stored entries are the ones kept, so the result is always a
    contiguous tail of the conversation. Blank entries are dropped after the
    limit is applied.
    """
    if limit < 0:
        raise ValueError("limit must be non-negative")

    completed = [entry for entry in history if entry.is_completed]
    # Stable sort keeps stored order for equal timestamps
    oldest_first = sorted(completed, key=lambda e: e.created_at)
    recent = oldest_first[-limit:] if limit else []

    logger.info(
        f"Extracted {len(recent)} recent completed messages from "
        f"{len(history)} total history messages"
    )
    return _to_messages(recent)


def build_conversation(
    history: list[HistoryEntry] | None,
    user_message: str,
    history_limit: int | None = None,
) -> list[LLMMessage]:
    """
    Build the request conversation: prior completed turns + current user turn.

    Args:
        history: Host history, or None when the host has none
        user_message: The current user turn (always appended last)
        history_limit: Keep only this many recent completed turns when set

    Returns:
        Ordered message list
    """
    if history is None:
        logger.info("No history available")
        messages: list[LLMMessage] = []
    elif history_limit is not None:
        messages = extract_recent_completed_messages(history, history_limit)
    else:
        messages = extract_completed_messages(history)

    messages.append(LLMMessage.user(user_message))
    logger.info(
        f"Sending {len(messages)} total messages to AI (including current message)"
    )
    return messages
