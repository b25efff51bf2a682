"""
Session Manager — one isolated session per client connection.

Each session owns a cancellation scope that parents every operation run on
its behalf. A session processes at most one utterance at a time; each
utterance runs in a child scope so it can be interrupted without ending
the session.

Usage:
    manager = SessionManager()
    session = await manager.create(connection_key, conversation_id="conv-1")
    session.start_utterance(lambda scope: coordinator.run_utterance(session, audio, emit, scope))
    await manager.destroy(connection_key)     # cancels everything, idempotent
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from voice.cancellation import CancellationScope
from voice.errors import (
    SessionAlreadyActiveError, SessionNotInitializedError, UtteranceInProgressError,
)
from voice.latency import AggregateLatencyTracker, SessionLatencyTracker

logger = structlog.get_logger()


class Session:
    """Per-connection state: identity, conversation, scope, running utterance."""

    def __init__(
        self,
        session_id: str,
        connection_key: str,
        scope: CancellationScope,
        conversation_id: Optional[str] = None,
        language: str = "en-US",
        latency: Optional[SessionLatencyTracker] = None,
        interrupt_timeout_s: float = 5.0,
    ):
        self.session_id = session_id
        self.connection_key = connection_key
        self.conversation_id = conversation_id
        self.scope = scope
        self.language = language
        self.latency = latency or SessionLatencyTracker(session_id)
        self.interrupt_timeout_s = interrupt_timeout_s
        self.created_at = datetime.now(timezone.utc)
        self.utterance_count = 0
        self._utterance: Optional[asyncio.Task] = None
        self._utterance_scope: Optional[CancellationScope] = None

    @property
    def is_busy(self) -> bool:
        return self._utterance is not None and not self._utterance.done()

    @property
    def current_utterance(self) -> Optional[asyncio.Task]:
        return self._utterance

    def start_utterance(
        self,
        run: Callable[[CancellationScope], Awaitable[Any]],
    ) -> asyncio.Task:
        """Spawn `run(scope)` in a fresh child scope. Rejects overlapping utterances."""
        if self.is_busy:
            raise UtteranceInProgressError(self.session_id)
        self.utterance_count += 1
        scope = self.scope.child(f"utterance:{self.session_id}:{self.utterance_count}")
        task = scope.spawn(run(scope), name=f"utterance_{self.session_id}_{self.utterance_count}")
        self._utterance = task
        self._utterance_scope = scope
        task.add_done_callback(lambda t: self._on_utterance_done(t, scope))
        return task

    async def interrupt(self) -> bool:
        """
        Cancel the running utterance, if any, and wait for it to unwind so the
        next upload is accepted. The session stays usable.
        """
        task = self._utterance
        if not self.is_busy or self._utterance_scope is None:
            return False
        logger.info("utterance_interrupted", session_id=self.session_id)
        self._utterance_scope.cancel()
        _, pending = await asyncio.wait({task}, timeout=self.interrupt_timeout_s)
        if pending:
            logger.warning("utterance_interrupt_timeout", session_id=self.session_id,
                           timeout_s=self.interrupt_timeout_s)
        return True

    def _on_utterance_done(self, task: asyncio.Task, scope: CancellationScope) -> None:
        scope.close()
        if self._utterance is task:
            self._utterance = None
            self._utterance_scope = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("utterance_crashed", session_id=self.session_id, error=repr(exc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "conversation_id": self.conversation_id,
            "created_at": self.created_at.isoformat(),
            "utterances": self.utterance_count,
            "busy": self.is_busy,
        }


class SessionManager:
    """
    Registry of live sessions keyed by connection identity.

    Instances are independent; the app creates one and tests create their
    own. Create and destroy are serialized with a lock; lookups are plain
    dict reads on the event loop.
    """

    def __init__(
        self,
        latency: AggregateLatencyTracker = None,
        default_language: str = "en-US",
        destroy_timeout_s: float = 5.0,
    ):
        self.latency = latency or AggregateLatencyTracker()
        self.default_language = default_language
        self.destroy_timeout_s = destroy_timeout_s
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._root = CancellationScope("sessions")

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_key: str) -> bool:
        return connection_key in self._sessions

    async def create(self, connection_key: str, conversation_id: Optional[str] = None) -> Session:
        async with self._lock:
            if connection_key in self._sessions:
                raise SessionAlreadyActiveError(connection_key)
            session_id = uuid.uuid4().hex
            if conversation_id is not None and not conversation_id.strip():
                conversation_id = None
            session = Session(
                session_id=session_id,
                connection_key=connection_key,
                scope=self._root.child(f"session:{session_id}"),
                conversation_id=conversation_id,
                language=self.default_language,
                latency=self.latency.create_session_tracker(session_id),
                interrupt_timeout_s=self.destroy_timeout_s,
            )
            self._sessions[connection_key] = session

        logger.info("session_created", session_id=session_id,
                    conversation_id=conversation_id, active=self.active_count)
        return session

    def lookup(self, connection_key: str) -> Session:
        session = self._sessions.get(connection_key)
        if session is None:
            raise SessionNotInitializedError(connection_key)
        return session

    def get(self, connection_key: str) -> Optional[Session]:
        return self._sessions.get(connection_key)

    async def destroy(self, connection_key: str) -> bool:
        """Cancel and release a session. Unknown or already-destroyed keys are a no-op."""
        async with self._lock:
            session = self._sessions.pop(connection_key, None)
        if session is None:
            return False

        session.scope.cancel()
        finished = await session.scope.join(timeout=self.destroy_timeout_s)
        session.scope.close()
        logger.info("session_destroyed", session_id=session.session_id,
                    utterances=session.utterance_count, clean=finished,
                    active=self.active_count)
        return True

    async def shutdown(self) -> None:
        keys = list(self._sessions.keys())
        logger.info("shutting_down_sessions", count=len(keys))
        for key in keys:
            await self.destroy(key)

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._sessions.values()]
