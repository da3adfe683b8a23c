"""
Prompt and context builders.

Turns a message (plus optional thread context) into the literal prompt text
sent to the model. Instruction text is kept apart from per-message content so
providers that cache prompt prefixes can reuse it.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from mailsense.analysis.modules import SIGNATURE_INSTRUCTIONS
from mailsense.domain_models.analysis import AnalysisDefinition, ThreadContext
from mailsense.domain_models.message import Message

DEFAULT_USER_PROMPT = "Please analyze the email."
THREAD_CACHE_KEY_CHARS = 50


def _context_text(thread_context: ThreadContext | str | None) -> str | None:
    if thread_context is None:
        return None
    if isinstance(thread_context, ThreadContext):
        return thread_context.text or None
    return thread_context or None


def build_message_context(
    message: Message, thread_context: ThreadContext | str | None = None
) -> str:
    """Shared block describing the message, appended after the instructions."""
    parts = [
        f"Email Subject: {message.subject}\n\n",
        f"Email Body:\n{message.body}\n\n",
    ]
    if message.signature:
        parts.append(f"Email Signature:\n{message.signature}\n\n")
    context = _context_text(thread_context)
    if context:
        parts.append(f"Thread Context:\n{context}\n\n")
    return "".join(parts)


def prompt_builder_for(
    definitions: Sequence[AnalysisDefinition],
    message: Message,
    thread_context: ThreadContext | None = None,
) -> PromptBuilder:
    """Instructions, then the email, then thread history."""
    return (
        PromptBuilder()
        .add_instructions(definitions)
        .add_email(message)
        .add_thread_context(thread_context)
    )


def build_single_prompt(
    definition: AnalysisDefinition,
    message: Message,
    thread_context: ThreadContext | None = None,
) -> str:
    if definition.build_prompt is not None:
        return definition.build_prompt(message, thread_context)
    return prompt_builder_for([definition], message, thread_context).build()


def build_batched_prompt(
    definitions: Sequence[AnalysisDefinition],
    message: Message,
    thread_context: ThreadContext | None = None,
) -> str:
    return prompt_builder_for(definitions, message, thread_context).build()


def build_signature_prompt(
    message: Message, thread_context: ThreadContext | None = None
) -> str:
    """Signature extraction only ever sees the signature block."""
    return (
        f"{SIGNATURE_INSTRUCTIONS}\n\n"
        f"Email Subject: {message.subject}\n\n"
        f"Email Signature:\n{message.signature or ''}\n\n"
    )


# =============================================================================
# Cache-aware sections
# =============================================================================


@dataclass
class PromptSection:
    content: str
    cacheable: bool = False
    cache_key: str | None = None


class PromptBuilder:
    """
    Builds a prompt out of ordered sections.

    Cacheable sections (instructions, thread history) become the system
    message; dynamic sections (the email itself) become the user message.
    """

    def __init__(self) -> None:
        self._sections: list[PromptSection] = []

    def add_section(
        self, content: str, cacheable: bool = False, cache_key: str | None = None
    ) -> PromptBuilder:
        self._sections.append(PromptSection(content, cacheable, cache_key))
        return self

    def add_instructions(self, definitions: Sequence[AnalysisDefinition]) -> PromptBuilder:
        if not definitions:
            return self
        if len(definitions) == 1:
            content = definitions[0].module.instructions
        else:
            content = "\n\n".join(
                f"## {d.display_name}\n{d.module.instructions}" for d in definitions
            )
        kinds = "-".join(sorted(d.kind for d in definitions))
        return self.add_section(content, cacheable=True, cache_key=f"instructions-{kinds}")

    def add_email(self, message: Message) -> PromptBuilder:
        return self.add_section(build_message_context(message).rstrip())

    def add_thread_context(self, thread_context: ThreadContext | str | None) -> PromptBuilder:
        text = _context_text(thread_context)
        if not text:
            return self
        return self.add_section(
            f"Thread Context:\n{text}",
            cacheable=True,
            cache_key=f"thread-{text[:THREAD_CACHE_KEY_CHARS]}",
        )

    @property
    def sections(self) -> list[PromptSection]:
        return list(self._sections)

    def cacheable_sections(self) -> list[PromptSection]:
        return [s for s in self._sections if s.cacheable]

    def dynamic_sections(self) -> list[PromptSection]:
        return [s for s in self._sections if not s.cacheable]

    def build(self) -> str:
        return "\n\n".join(s.content for s in self._sections)

    def build_messages(self) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        cacheable = self.cacheable_sections()
        if cacheable:
            messages.append(
                {"role": "system", "content": "\n\n".join(s.content for s in cacheable)}
            )
        dynamic = self.dynamic_sections()
        user_content = (
            "\n\n".join(s.content for s in dynamic) if dynamic else DEFAULT_USER_PROMPT
        )
        messages.append({"role": "user", "content": user_content})
        return messages

    def clear(self) -> PromptBuilder:
        self._sections.clear()
        return self


def build_cache_key(
    kinds: Iterable[str], message_id: Any = None, thread_id: Any = None
) -> str:
    """Key identifying a prompt for response caching."""
    kind_part = "-".join(sorted(kinds))
    message_part = str(message_id) if message_id else "no-email"
    thread_part = str(thread_id) if thread_id else "no-thread"
    return f"{kind_part}::{message_part}::{thread_part}"
