"""At most one in-flight operation per key."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable

log = logging.getLogger(__name__)


class SingleFlight:
    """Collapse concurrent calls for the same key into one shared task.

    The first caller for a key starts the work; callers that arrive while it
    is running await the same task instead of starting their own. Once the
    task finishes, the key is forgotten, so a later call starts fresh work
    (for transfers, that later call normally finds the blob already present).

    Cancelling the caller that started the work cancels the work. Other
    callers that were not cancelled themselves then retry, and one of them
    becomes the new leader.
    """

    def __init__(self):
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def do(self, key: Hashable, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``func`` for ``key`` or join the run already in progress.

        Returns:
            The shared result. Exceptions raised by ``func`` propagate to
            every caller.
        """
        while True:
            task = self._tasks.get(key)
            if task is None:
                return await self._lead(key, func)

            log.debug(f"Joining in-flight operation for {key}")
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                current = asyncio.current_task()
                leader_gone = task.cancelled()
                if leader_gone and current is not None and not current.cancelling():
                    # The leader was cancelled but this caller was not: take over
                    if self._tasks.get(key) is task:
                        del self._tasks[key]
                    continue
                raise

    async def _lead(self, key: Hashable, func: Callable[[], Awaitable[Any]]) -> Any:
        task = asyncio.ensure_future(func())
        self._tasks[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return await task

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        # Mark the exception retrieved; it is re-raised to every awaiting caller
        if not task.cancelled():
            task.exception()
