"""
Status polling loop.

Fetches a job's status immediately, then every `interval` seconds, until
the status is completed or failed. A failed fetch ends the loop with
PollingError; nothing is retried. cancel() (or leaving the `async with`
block) stops the loop, and no task is left running afterwards.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from bgflip.core.logging import get_logger

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed"})

DEFAULT_INTERVAL_SECONDS = 2.0

FetchStatus = Callable[[str], Awaitable[Dict[str, Any]]]
OnUpdate = Callable[[Dict[str, Any]], None]


class PollingError(Exception):
    """Raised when a status fetch fails; the loop stops at the first failure."""

    def __init__(self, job_id: str, cause: BaseException):
        self.job_id = job_id
        self.cause = cause
        super().__init__(f"Failed to fetch status of {job_id}: {cause}")


class StatusPoller:
    def __init__(
        self,
        fetch_status: FetchStatus,
        job_id: str,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        on_update: Optional[OnUpdate] = None,
    ):
        self.fetch_status = fetch_status
        self.job_id = job_id
        self.interval = interval
        self.on_update = on_update
        self.last_status: Optional[Dict[str, Any]] = None
        self.fetch_count = 0
        self._stopped = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()

    async def run(self) -> Optional[Dict[str, Any]]:
        """
        Poll until a terminal status or cancel().

        Returns:
            The last status observed (terminal unless cancelled)

        Raises:
            PollingError: the first fetch that fails
        """
        while not self._stopped.is_set():
            try:
                status = await self.fetch_status(self.job_id)
            except Exception as e:
                logger.warning("status_poll_failed", job_id=self.job_id, error=str(e))
                raise PollingError(self.job_id, e) from e

            self.fetch_count += 1
            self.last_status = status
            if self.on_update is not None:
                self.on_update(status)

            if status.get("status") in TERMINAL_STATUSES:
                return status

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

        return self.last_status

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"poll-{self.job_id}")
        return self._task

    async def wait(self) -> Optional[Dict[str, Any]]:
        """Run the loop to completion; after cancel() this returns the last status seen."""
        try:
            return await self.start()
        except asyncio.CancelledError:
            if self.cancelled:
                return self.last_status
            raise

    def cancel(self):
        """Stop scheduling fetches; an in-flight fetch is cancelled too."""
        self._stopped.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def __aenter__(self) -> "StatusPoller":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        return False
