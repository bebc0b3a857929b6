"""Tracked background tasks (startup outbox drain and similar one-offs).

Tasks started here log their failures instead of failing silently, show up
in the admin status endpoint and are cancelled on shutdown.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Awaitable

logger = logging.getLogger(__name__)


def _outcome(task: asyncio.Task) -> str:
    if not task.done():
        return "running"
    if task.cancelled():
        return "cancelled"
    return "failed" if task.exception() is not None else "completed"


class TaskManager:
    """
    Usage:
        TaskManager.get_instance().create_task(run_outbox_drain(), name="startup_outbox_drain")
        ...
        await TaskManager.get_instance().cancel_all()
    """

    _instance: "TaskManager | None" = None

    def __init__(self):
        # The event loop only keeps weak references to tasks
        self._running: set[asyncio.Task] = set()
        self._finished: Counter = Counter()

    @classmethod
    def get_instance(cls) -> "TaskManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Forget every tracked task (tests)."""
        cls._instance = None

    def create_task(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        async def tracked():
            try:
                return await coro
            except asyncio.CancelledError:
                logger.info(f"Background task {name} cancelled")
                raise
            except Exception as e:
                logger.error(f"Background task {name} failed: {type(e).__name__}: {e}")
                raise

        task = asyncio.create_task(tracked(), name=name)
        self._running.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        self._finished[_outcome(task)] += 1

    def running(self) -> list[asyncio.Task]:
        return [task for task in self._running if not task.done()]

    def get_task_stats(self) -> dict:
        running = self.running()
        stats = {"running": len(running), "completed": 0, "failed": 0, "cancelled": 0}
        stats.update(self._finished)
        stats["tracked"] = len(running) + sum(self._finished.values())
        stats["running_names"] = sorted(task.get_name() for task in running)
        return stats

    async def cancel_all(self, timeout: float = 5.0) -> int:
        """Cancel running tasks and wait up to ``timeout``; returns how many were still running."""
        running = self.running()
        if not running:
            return 0

        logger.info(f"Cancelling {len(running)} background tasks")
        for task in running:
            task.cancel()
        _, pending = await asyncio.wait(running, timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} background tasks did not stop within {timeout}s")
        return len(running)
