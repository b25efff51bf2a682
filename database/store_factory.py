"""
Store Factory — Create the conversation store backend.

Only the in-memory backend exists; history lives for the process lifetime.

Usage:
    from database.store_factory import create_store, get_store
    store = create_store()           # Create (or return) the shared instance
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseConversationStore

logger = structlog.get_logger()

_instance: Optional[BaseConversationStore] = None


def create_store(backend: str = "memory") -> BaseConversationStore:
    """Factory: create the conversation store backend (shared per process)."""
    global _instance
    if _instance is not None:
        return _instance

    if backend != "memory":
        logger.warning("unknown_store_backend", backend=backend, fallback="memory")

    from database.store_memory import InMemoryConversationStore
    _instance = InMemoryConversationStore()
    logger.info("store_created", backend="memory")
    return _instance


def get_store() -> BaseConversationStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
