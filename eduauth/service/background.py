from __future__ import annotations

import asyncio
from typing import Awaitable, Dict, Set

from eduauth.logging import get_logger

logger = get_logger(__name__)


class BackgroundRunner:
    """Fire-and-forget tasks whose failures are logged, never raised."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, *, event: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, event))
        # Keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(coro: Awaitable, event: str) -> None:
        try:
            await coro
        except Exception as exc:
            logger.warning(
                f"{event}_failed", error_type=type(exc).__name__, error=str(exc)
            )

    async def drain(self) -> None:
        """Wait for tasks spawned on the running loop."""
        loop = asyncio.get_running_loop()
        while True:
            pending = [t for t in self._tasks if t.get_loop() is loop and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)


async def gather_side_effects(effects: Dict[str, Awaitable]) -> Dict[str, bool]:
    """Run best-effort side operations in parallel.

    Returns a map of effect name to success; failures are logged and swallowed
    so they never fail the primary operation.
    """
    names = list(effects)
    results = await asyncio.gather(*effects.values(), return_exceptions=True)
    outcome: Dict[str, bool] = {}
    for name, result in zip(names, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.warning(
                "side_effect_failed",
                effect=name,
                error_type=type(result).__name__,
                error=str(result),
            )
            outcome[name] = False
        else:
            outcome[name] = result is not False
    return outcome
