"""
Cancellation Scope — hierarchical, explicit cancellation for pipeline work.

Every session owns a scope; every utterance runs in a child of it. Work
started on behalf of a scope is either spawned through it (so the scope
can cancel the task) or polls it with raise_if_cancelled(). Cancelling a
scope cancels its children and every task it tracks; there is no forced
termination beyond asyncio task cancellation.

    session_scope = CancellationScope("session:abc")
    utterance = session_scope.child("utterance:1")
    task = utterance.spawn(run())
    session_scope.cancel()           # cancels `utterance` and `task`
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Coroutine, Optional

logger = structlog.get_logger()


class CancellationScope:

    def __init__(self, name: str = "", parent: Optional[CancellationScope] = None):
        self.name = name
        self._parent = parent
        self._children: set[CancellationScope] = set()
        self._tasks: set[asyncio.Task] = set()
        self._cancelled = False
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active_tasks(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def child(self, name: str = "") -> CancellationScope:
        """Create a nested scope. A child of a cancelled scope starts cancelled."""
        child = CancellationScope(name, parent=self)
        if self._cancelled:
            child.cancel()
        else:
            self._children.add(child)
        return child

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = None) -> asyncio.Task:
        """Run `coro` as a task owned by this scope."""
        if self._cancelled:
            coro.close()
            raise asyncio.CancelledError(f"scope {self.name} is cancelled")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self) -> None:
        """Trigger cancellation. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        for child in list(self._children):
            child.cancel()
        for task in list(self._tasks):
            task.cancel()
        logger.debug("scope_cancelled", scope=self.name)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError(f"scope {self.name} is cancelled")

    async def wait_cancelled(self) -> None:
        await self._event.wait()

    async def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every task of this scope and its children to finish.
        Returns False if some were still running after `timeout` seconds.
        """
        tasks = self._collect_tasks()
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("scope_join_timeout", scope=self.name, pending=len(pending))
        return not pending

    def close(self) -> None:
        """Cancel anything still running and detach from the parent scope."""
        self.cancel()
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    def _collect_tasks(self) -> set[asyncio.Task]:
        tasks = {t for t in self._tasks if not t.done()}
        for child in self._children:
            tasks |= child._collect_tasks()
        return tasks

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"<CancellationScope {self.name!r} {state} tasks={self.active_tasks}>"
