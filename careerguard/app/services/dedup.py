"""Single-flight execution of identical concurrent operations.

The first caller for a key starts the operation as its own task; every
caller, the first included, awaits a shielded view of the same future.
A caller that gives up (client disconnect, cancellation) stops waiting
without cancelling the shared execution.
"""

import asyncio
import functools
from typing import Awaitable, Callable, Dict, Optional, Set, TypeVar

from careerguard.app.core.logging import get_logger
from careerguard.app.exceptions import DeduplicationTimeoutError

logger = get_logger(__name__)

T = TypeVar("T")


def _mark_retrieved(future: asyncio.Future) -> None:
    # Waiters may all be gone; keep asyncio from reporting the error as unhandled
    if not future.cancelled():
        future.exception()


class DeduplicationCoordinator:
    """Coalesces concurrent calls that share a key into one execution."""

    def __init__(self, execution_timeout: Optional[float] = None):
        """Initialize coordinator.

        Args:
            execution_timeout: Seconds after which a shared execution fails
                every waiter with DeduplicationTimeoutError (None = no limit)
        """
        if execution_timeout is not None and execution_timeout <= 0:
            raise ValueError("execution_timeout must be positive")
        self.execution_timeout = execution_timeout
        self._pending: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._executions = 0
        self._coalesced = 0

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    async def run(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` once for all concurrent callers of ``key``.

        Every caller receives the same result or the same exception.
        """
        future = self._pending.get(key)
        if future is None:
            future = self._start(key, func)
        else:
            self._coalesced += 1
            logger.debug(f"Coalescing request onto in-flight execution: {key}")
        return await asyncio.shield(future)

    def _start(self, key: str, func: Callable[[], Awaitable[T]]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(_mark_retrieved)
        self._pending[key] = future
        self._executions += 1

        task = loop.create_task(self._execute(key, func, future))
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._settle, key, future))
        return future

    def _settle(self, key: str, future: asyncio.Future, task: asyncio.Task) -> None:
        # Also covers a task cancelled before it ever started running
        self._tasks.discard(task)
        if not future.done():
            future.cancel()
        if self._pending.get(key) is future:
            del self._pending[key]

    async def _call(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        if self.execution_timeout is None:
            return await func()
        deadline = asyncio.timeout(self.execution_timeout)
        try:
            async with deadline:
                return await func()
        except TimeoutError as e:
            if deadline.expired():
                raise DeduplicationTimeoutError(key, self.execution_timeout) from e
            raise

    async def _execute(self, key: str, func: Callable[[], Awaitable[T]], future: asyncio.Future) -> None:
        try:
            result = await self._call(key, func)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if isinstance(e, DeduplicationTimeoutError):
                logger.warning(f"Deduplicated execution timed out: {key}")
            future.set_exception(e)
        else:
            future.set_result(result)
        finally:
            # Release the key in the same step the future resolves
            if self._pending.get(key) is future:
                del self._pending[key]

    def get_stats(self) -> Dict[str, int]:
        return {
            "in_flight": self.in_flight,
            "executions": self._executions,
            "coalesced": self._coalesced,
        }

    async def shutdown(self) -> None:
        """Cancel executions still running; their waiters see CancelledError."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
