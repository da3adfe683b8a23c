"""
Thread context from raw messages.

Used when a thread has no stored summaries yet: renders the most recent
messages of the conversation as a compact history block.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from uuid import UUID

from mailsense.domain_models.analysis import ThreadContext
from mailsense.domain_models.message import Message

NO_THREAD_HISTORY = "No thread history available"
MAX_THREAD_CONTEXT_MESSAGES = 5
MAX_BODY_PREVIEW_CHARS = 300

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(message: Message) -> datetime:
    received = message.received_at
    if received is None:
        return _EPOCH
    if received.tzinfo is None:
        return received.replace(tzinfo=timezone.utc)
    return received


def _preview(body: str, limit: int) -> str:
    body = body.strip()
    if len(body) <= limit:
        return body
    return body[:limit] + "..."


def build_thread_context(
    messages: Sequence[Message],
    current_message_id: UUID | None = None,
    max_messages: int = MAX_THREAD_CONTEXT_MESSAGES,
    preview_chars: int = MAX_BODY_PREVIEW_CHARS,
) -> ThreadContext:
    if not messages:
        return ThreadContext(text=NO_THREAD_HISTORY)

    ordered = sorted(messages, key=_sort_key)
    total = len(ordered)
    recent = ordered[-max_messages:]

    if total > len(recent):
        header = f"Thread History (showing {len(recent)} of {total} messages, most recent):\n"
    else:
        header = f"Thread History ({total} messages):\n"

    lines = [header]
    for index, message in enumerate(recent, start=1):
        marker = " [CURRENT]" if message.message_id == current_message_id else ""
        sender = message.from_address
        if sender is None:
            sender_line = "unknown"
        elif sender.name:
            sender_line = f"{sender.name} ({sender.email})"
        else:
            sender_line = sender.email
        date = message.received_at.isoformat() if message.received_at else "unknown"
        lines.append(
            f"\n[Message {index}]{marker}\n"
            f"From: {sender_line}\n"
            f"Subject: {message.subject}\n"
            f"Date: {date}\n"
            f"Body: {_preview(message.body, preview_chars)}\n"
            "---"
        )
    return ThreadContext(text="".join(lines).rstrip())
