"""
Database layer — conversation history.

Quick start:
  from database import create_store
  store = create_store()
  await store.append_user_message("conv-1", "hello")
  history = await store.read("conv-1")
"""
from database.store_base import BaseConversationStore
from database.store_memory import InMemoryConversationStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "BaseConversationStore",
    "InMemoryConversationStore",
    "create_store", "get_store", "reset_store",
]
