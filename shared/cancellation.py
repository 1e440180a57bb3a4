"""Cooperative cancellation for long-running imports."""

import asyncio


class CancellationToken:
    """
    Flag shared between the job coordinator and a running import.

    Backed by an asyncio.Event so sleeps inside the fetcher can wake up as
    soon as cancellation is requested.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    async def wait(self):
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for ``delay`` seconds or until cancelled.

        Returns:
            True if the sleep ended because of cancellation
        """
        if delay <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
