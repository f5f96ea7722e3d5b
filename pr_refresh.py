from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from event_broadcaster import EVENT_PR_UPDATE, EventBroadcaster

logger = structlog.get_logger()

FetchPR = Callable[[str, int], Awaitable[Optional[Dict[str, Any]]]]


def correlation_key(repo: str, number: int) -> str:
    return f"{repo}#{number}"


class Correlator:
    """Refresh a PR record once, shortly after an agent finishes with it.

    One pending refresh per correlation key; scheduling the same key again
    replaces the pending task, so a session exit and a job report arriving
    together cost a single fetch. Failures are logged and dropped.
    """

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        fetch_pr: Optional[FetchPR] = None,
        delay_seconds: float = 3.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.broadcaster = broadcaster
        self.fetch_pr = fetch_pr
        self.delay_seconds = delay_seconds
        self._sleep = sleep
        self._pending: Dict[str, asyncio.Task] = {}

    @property
    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def schedule(self, repo: str, number: int) -> Optional[asyncio.Task]:
        if self.fetch_pr is None:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        key = correlation_key(repo, number)
        self.cancel(key)
        task = loop.create_task(self._refresh(key, repo, number), name=f"refresh-{key}")
        self._pending[key] = task
        return task

    def cancel(self, key: str) -> bool:
        task = self._pending.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def stop(self) -> None:
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _refresh(self, key: str, repo: str, number: int) -> None:
        assert self.fetch_pr is not None
        try:
            await self._sleep(self.delay_seconds)
            try:
                record = await self.fetch_pr(repo, number)
            except Exception as exc:
                logger.warning("pr_refresh_failed", key=key, error=str(exc))
                record = None
            if record:
                logger.info("pr_refresh_published", key=key)
                self.broadcaster.publish(EVENT_PR_UPDATE, {"pr": record})
            else:
                logger.info("pr_refresh_empty", key=key)
        except asyncio.CancelledError:
            return
        finally:
            if self._pending.get(key) is asyncio.current_task():
                self._pending.pop(key, None)
