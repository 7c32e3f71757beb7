"""
Core LLM dataclasses for the chat-completions wire format.

This module provides the records exchanged with the remote endpoint:
- Message roles and immutable messages
- The streaming request body
- Incremental deltas decoded from stream events
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_MODEL = "deepseek-chat"
DEFAULT_API_URL = "https://api.deepseek.com/v1/chat/completions"


class MessageRole(Enum):
    """OpenAI-compatible message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class LLMMessage:
    """OpenAI-compatible message structure."""
    role: MessageRole
    content: str

    @classmethod
    def user(cls, content: str) -> LLMMessage:
        return cls(MessageRole.USER, content)

    @classmethod
    def assistant(cls, content: str) -> LLMMessage:
        return cls(MessageRole.ASSISTANT, content)

    @classmethod
    def system(cls, content: str) -> LLMMessage:
        return cls(MessageRole.SYSTEM, content)

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LLMMessage:
        """Parse a ``{"role", "content"}`` mapping.

        Raises:
            ValueError: If the role is unknown or content is not a string.
        """
        content = data.get("content")
        if not isinstance(content, str):
            raise ValueError(f"Message content must be a string, got {content!r}")
        return cls(MessageRole(data.get("role")), content)


@dataclass(frozen=True)
class Delta:
    """One incremental fragment of assistant text."""
    content: str | None = None


@dataclass
class LLMRequest:
    """Streaming chat-completions request body."""
    messages: list[LLMMessage]
    model: str = DEFAULT_MODEL
    stream: bool = True
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON body, preserving message order."""
        return {
            "model": self.model,
            "messages": [message.to_dict() for message in self.messages],
            "stream": self.stream,
            **self.extra,
        }
