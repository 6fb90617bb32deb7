"""In-memory renewal deadlines.

The durable deadline is ``renewal_due_at`` on the grant row; these tasks only
make the timeout fire on time instead of at the next scan.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Iterable

from .infra.logging import get_logger
from .models import Grant, utcnow

log = get_logger(__name__)


class RenewalTimers:
    def __init__(
        self,
        on_timeout: Callable[[int], Awaitable[Any]],
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._on_timeout = on_timeout
        self._clock = clock
        self._sleep = sleep
        self._tasks: dict[int, asyncio.Task] = {}
        self._firing: set[int] = set()
        self._closed = False

    def arm(self, grant_id: int, due_at: datetime | None) -> bool:
        """Schedule a timeout for *grant_id*, replacing any earlier one."""
        if self._closed:
            log.debug("Not arming timer for grant %s during shutdown", grant_id)
            return False
        self.cancel(grant_id)
        delay = 0.0 if due_at is None else max(0.0, (due_at - self._clock()).total_seconds())
        task = asyncio.create_task(self._run(grant_id, delay), name=f"renewal-timeout-{grant_id}")
        self._tasks[grant_id] = task
        task.add_done_callback(partial(self._forget, grant_id))
        return True

    def _forget(self, grant_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(grant_id) is task:
            del self._tasks[grant_id]

    async def _run(self, grant_id: int, delay: float) -> None:
        await self._sleep(delay)
        self._firing.add(grant_id)
        try:
            await self._on_timeout(grant_id)
        except Exception:
            log.exception("Renewal timeout for grant %s failed", grant_id)
        finally:
            self._firing.discard(grant_id)

    def cancel(self, grant_id: int) -> bool:
        """Stop a sleeping timer. A timer that is already firing runs to the end."""
        task = self._tasks.get(grant_id)
        if task is None or task.done() or grant_id in self._firing:
            return False
        del self._tasks[grant_id]
        task.cancel()
        return True

    def rearm(self, grants: Iterable[Grant]) -> int:
        """Arm a timer for every prompted awaiting grant from its stored deadline.

        A claim without a recorded prompt never reached the member, so it gets
        no timer.
        """
        count = 0
        for grant in grants:
            if grant.renewal_prompt_id is None:
                continue
            if grant.awaiting_response and self.arm(grant.id, grant.renewal_due_at):
                count += 1
        if count:
            log.info("Re-armed %d renewal timers", count)
        return count

    def pending(self) -> list[int]:
        return sorted(gid for gid, task in self._tasks.items() if not task.done())

    async def shutdown(self) -> None:
        self._closed = True
        tasks = list(self._tasks.values())
        for grant_id, task in list(self._tasks.items()):
            if grant_id not in self._firing:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
