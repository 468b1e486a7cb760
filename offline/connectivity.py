"""Server reachability by polling the health endpoint.

The monitor starts out optimistic (online) and only changes its mind after a
health check. Registered callbacks fire on every online/offline flip; coroutine
callbacks run as tasks so a slow drain never holds up the polling loop.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable

from offline.client import ApiClient
from offline.models import ConnectivityState, utcnow


logger = logging.getLogger(__name__)


HEALTH_INTERVAL = 30


type ConnectivityCallback = Callable[[ConnectivityState], Awaitable[None] | None]


class ConnectivityMonitor:
    def __init__(
        self,
        api: ApiClient,
        *,
        interval: float = HEALTH_INTERVAL,
    ) -> None:
        self.api = api
        self.interval = interval
        self.state = ConnectivityState(is_online=True)
        self._callbacks: list[ConnectivityCallback] = []
        self._loop_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._first_check = asyncio.Event()

    @property
    def is_online(self) -> bool:
        return self.state.is_online

    def on_change(self, callback: ConnectivityCallback) -> None:
        self._callbacks.append(callback)

    async def check(self) -> bool:
        """Check once and fire callbacks if the status flipped."""
        online = await self.api.health()
        was_online = self.state.is_online
        self.state = ConnectivityState(is_online=online, last_checked_at=utcnow())
        self._first_check.set()
        if online != was_online:
            logger.info("Connectivity changed: %s", "online" if online else "offline")
            self._fire(self.state)
        return online

    def _fire(self, state: ConnectivityState) -> None:
        for callback in self._callbacks:
            try:
                result = callback(state)
            except Exception:
                logger.exception("Connectivity callback failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Connectivity callback task failed", exc_info=task.exception()
            )

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except Exception:
                logger.exception("Connectivity check crashed")
            await asyncio.sleep(self.interval)

    async def start(self) -> None:
        if self._loop_task is not None:
            return
        self._loop_task = asyncio.create_task(self._run())
        logger.info("Connectivity monitor started (interval=%.0fs)", self.interval)

    async def wait_first_check(self) -> bool:
        await self._first_check.wait()
        return self.is_online

    async def wait_idle(self) -> None:
        """Wait for the callback tasks scheduled so far."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        await self.wait_idle()
