"""
Trailing-edge debouncer on the asyncio event loop.

Each trigger() cancels the pending call and starts the delay again, so only
the last call in a burst runs.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)


class Debouncer:
    def __init__(self, delay_seconds: float, callback: Callable[..., Any]):
        if delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")
        self._delay = delay_seconds
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._args: Tuple[Any, ...] = ()

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self, *args: Any) -> None:
        """Schedule callback(*args) after the delay, replacing any pending call. Needs a running loop."""
        self.cancel()
        self._args = args
        self._task = asyncio.get_running_loop().create_task(self._run_later())

    async def _run_later(self) -> None:
        await asyncio.sleep(self._delay)
        # Detach first so the callback may trigger again
        self._task = None
        await self._invoke(self._args)

    async def _invoke(self, args: Tuple[Any, ...]) -> None:
        result = self._callback(*args)
        if inspect.isawaitable(result):
            await result

    async def flush(self) -> bool:
        """Run the pending call now. Returns False when nothing was pending."""
        if not self.pending:
            return False
        self._task.cancel()
        self._task = None
        await self._invoke(self._args)
        return True

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
