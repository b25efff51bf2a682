"""
Abstract Conversation Store — Interface for conversation history backends.

Implementations:
  - InMemoryConversationStore (dict-based, single-process, no persistence)

A conversation is an append-only, ordered sequence of role-tagged messages.
Insertion order is chronological order and is replayed as-is into the
generation context.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from models.events import ConversationMessage, MessageRole


class BaseConversationStore(ABC):
    """Interface that all conversation store backends must implement."""

    @abstractmethod
    async def append(self, conversation_id: str, message: ConversationMessage) -> None:
        """Append one message. Appends to the same conversation are serialized."""
        ...

    @abstractmethod
    async def read(self, conversation_id: str) -> tuple[ConversationMessage, ...]:
        """Snapshot of the conversation in insertion order; empty when unknown."""
        ...

    @abstractmethod
    async def list_conversations(self) -> list[str]:
        ...

    async def append_user_message(self, conversation_id: str, text: str) -> None:
        await self.append(conversation_id, ConversationMessage(role=MessageRole.USER.value, text=text))

    async def append_assistant_message(self, conversation_id: str, text: str) -> None:
        await self.append(conversation_id, ConversationMessage(role=MessageRole.ASSISTANT.value, text=text))
