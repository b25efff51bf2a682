"""
Generation Client — streaming LLM responses for a voice turn.

Assembles the model context (system prompt, prior turns of the
conversation, the new user utterance) and streams the model's text back
as it is produced. Supports both OpenAI and Anthropic chat APIs; the
provider is picked from settings.

Persistence is not done here: the caller appends the user and assistant
turns once the stream has completed.
"""
from __future__ import annotations

import abc
import structlog
from contextlib import aclosing
from typing import Any, AsyncIterator, Iterable, Optional

from config.settings import GenerationConfig, get_settings
from database.store_base import BaseConversationStore
from models.events import ConversationMessage, MessageRole
from voice.cancellation import CancellationScope
from voice.errors import GenerationError

logger = structlog.get_logger()

_ROLE_MAP = {
    MessageRole.USER.value: "user",
    MessageRole.ASSISTANT.value: "assistant",
}


def build_messages(
    system_prompt: str,
    history: Iterable[ConversationMessage],
    user_text: str,
) -> list[dict[str, str]]:
    """System prompt first (if any), then history in stored order, then the new turn."""
    messages = []
    if system_prompt and system_prompt.strip():
        messages.append({"role": "system", "content": system_prompt})
    for message in history:
        role = _ROLE_MAP.get((message.role or "").lower())
        if role is None:
            continue
        messages.append({"role": role, "content": message.text})
    messages.append({"role": "user", "content": user_text})
    return messages


# ══════════════════════════════════════════════════════════════
#  CHAT BACKENDS
# ══════════════════════════════════════════════════════════════

class ChatBackend(abc.ABC):
    """A streaming chat-completion API."""

    @abc.abstractmethod
    def stream_completion(self, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        ...


class OpenAIChatBackend(ChatBackend):

    def __init__(self, config: GenerationConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.config.api_key)
            logger.info("llm_client_initialized", provider="openai", model=self.config.model)
        return self._client

    async def stream_completion(self, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        client = self._get_client()
        stream = await client.chat.completions.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            messages=messages,
            stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content


class AnthropicChatBackend(ChatBackend):
    """Anthropic takes the system prompt as a separate parameter."""

    def __init__(self, config: GenerationConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
            logger.info("llm_client_initialized", provider="anthropic", model=self.config.model)
        return self._client

    async def stream_completion(self, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        client = self._get_client()
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [m for m in messages if m["role"] != "system"]
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": turns,
        }
        if system:
            kwargs["system"] = system
        async with client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                yield text


def create_chat_backend(config: GenerationConfig) -> ChatBackend:
    if config.provider == "anthropic":
        return AnthropicChatBackend(config)
    if config.provider != "openai":
        logger.warning("unknown_llm_provider", provider=config.provider, fallback="openai")
    return OpenAIChatBackend(config)


# ══════════════════════════════════════════════════════════════
#  GENERATION CLIENT
# ══════════════════════════════════════════════════════════════

class GenerationClient:
    """
    Usage:
        client = GenerationClient(store)
        async for delta in client.stream("conv-1", prompt, "hello", scope):
            ...
    """

    def __init__(
        self,
        store: BaseConversationStore,
        config: GenerationConfig = None,
        backend: ChatBackend = None,
    ):
        self.store = store
        self.config = config or get_settings().generation
        self.backend = backend or create_chat_backend(self.config)

    async def stream(
        self,
        conversation_id: Optional[str],
        system_prompt: str,
        user_text: str,
        scope: CancellationScope,
        history: Optional[Iterable[ConversationMessage]] = None,
    ) -> AsyncIterator[str]:
        """
        Yield non-empty text fragments in production order.

        `history` is the conversation as it stood before this utterance; when
        omitted it is read from the store. Without a conversation id no
        history is used at all.
        """
        scope.raise_if_cancelled()
        if not conversation_id:
            history = ()
        elif history is None:
            history = await self.store.read(conversation_id)

        messages = build_messages(system_prompt, history, user_text)
        logger.debug("generation_context_built",
                     conversation_id=conversation_id, messages=len(messages))

        fragments = 0
        try:
            async with aclosing(self.backend.stream_completion(messages)) as deltas:
                async for delta in deltas:
                    scope.raise_if_cancelled()
                    if not delta:
                        continue
                    fragments += 1
                    yield delta
        except GenerationError:
            raise
        except Exception as e:
            logger.error("llm_generation_failed", conversation_id=conversation_id,
                         fragments=fragments, error=str(e))
            raise GenerationError(f"Generation failed: {e}") from e

        logger.info("generation_stream_completed",
                    conversation_id=conversation_id, fragments=fragments)
