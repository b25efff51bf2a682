"""
Tests for the conversation store backends and factory.
"""
import asyncio
import pytest

from models.events import ConversationMessage, MessageRole


class TestInMemoryConversationStore:
    @pytest.fixture
    def store(self):
        from database.store_memory import InMemoryConversationStore
        return InMemoryConversationStore()

    @pytest.mark.asyncio
    async def test_append_then_read_preserves_order(self, store):
        await store.append_user_message("conv-1", "hello")
        await store.append_assistant_message("conv-1", "Hi there!")

        history = await store.read("conv-1")

        assert [(m.role, m.text) for m in history] == [
            (MessageRole.USER.value, "hello"),
            (MessageRole.ASSISTANT.value, "Hi there!"),
        ]

    @pytest.mark.asyncio
    async def test_unknown_conversation_reads_empty(self, store):
        assert await store.read("missing") == ()

    @pytest.mark.asyncio
    async def test_read_returns_snapshot(self, store):
        await store.append_user_message("conv-1", "one")
        snapshot = await store.read("conv-1")
        await store.append_user_message("conv-1", "two")
        assert len(snapshot) == 1
        assert len(await store.read("conv-1")) == 2

    @pytest.mark.asyncio
    async def test_messages_are_immutable(self, store):
        await store.append_user_message("conv-1", "hello")
        message = (await store.read("conv-1"))[0]
        with pytest.raises(Exception):
            message.text = "changed"

    @pytest.mark.asyncio
    async def test_blank_conversation_id_ignored(self, store):
        await store.append("", ConversationMessage(role="user", text="lost"))
        assert len(store) == 0
        assert await store.list_conversations() == []

    @pytest.mark.asyncio
    async def test_conversations_isolated(self, store):
        await store.append_user_message("a", "for a")
        await store.append_user_message("b", "for b")
        assert [m.text for m in await store.read("a")] == ["for a"]
        assert sorted(await store.list_conversations()) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_concurrent_appends_all_land(self, store):
        await asyncio.gather(*(
            store.append_user_message("conv-1", f"msg {i}") for i in range(50)
        ))
        history = await store.read("conv-1")
        assert len(history) == 50
        assert {m.text for m in history} == {f"msg {i}" for i in range(50)}


class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_create_returns_singleton(self):
        from database.store_factory import create_store, get_store
        store = create_store()
        assert get_store() is store
        assert create_store() is store

    def test_unknown_backend_falls_back_to_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryConversationStore
        assert isinstance(create_store("redis"), InMemoryConversationStore)

    def test_reset_creates_new_instance(self):
        from database.store_factory import get_store, reset_store
        first = get_store()
        reset_store()
        assert get_store() is not first
