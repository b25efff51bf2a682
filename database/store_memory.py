"""
InMemoryConversationStore — Dict-backed history store.

Features:
  - Zero dependencies (no database, no Redis)
  - One asyncio.Lock per conversation id: concurrent appends from
    overlapping utterances land one at a time, in arrival order
  - Reads return immutable snapshots
  - All data lost on process restart
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict

from database.store_base import BaseConversationStore
from models.events import ConversationMessage

logger = structlog.get_logger()


class InMemoryConversationStore(BaseConversationStore):

    def __init__(self):
        self._messages: dict[str, list[ConversationMessage]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = {}
        logger.info("inmemory_conversation_store_initialized")

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    async def append(self, conversation_id: str, message: ConversationMessage) -> None:
        if not conversation_id or not conversation_id.strip():
            return
        async with self._lock_for(conversation_id):
            self._messages[conversation_id].append(message)
        logger.debug("conversation_message_appended",
                     conversation_id=conversation_id, role=message.role,
                     chars=len(message.text))

    async def read(self, conversation_id: str) -> tuple[ConversationMessage, ...]:
        if not conversation_id or conversation_id not in self._messages:
            return ()
        return tuple(self._messages[conversation_id])

    async def list_conversations(self) -> list[str]:
        return list(self._messages.keys())

    def __len__(self) -> int:
        return len(self._messages)
