"""Periodic sweep for expired grants and overdue renewal answers."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .commands import renewal_actions, renewal_prompt_text
from .errors import PlatformError
from .infra.config import TimedRoleConfig
from .infra.logging import get_logger, structured_log
from .lifecycle import LifecycleEngine
from .models import Grant, utcnow
from .platform import Platform
from .store import GrantStore
from .timers import RenewalTimers

log = get_logger(__name__)


@dataclass
class ScanReport:
    prompted: int = 0
    released: int = 0
    skipped: int = 0
    timed_out: int = 0
    failed: int = 0


class ExpiryScanner:
    """Prompts members whose grant ran out and times out ignored prompts.

    Each grant is claimed with a guarded update before its prompt is posted,
    so overlapping ticks never prompt the same grant twice.
    """

    def __init__(
        self,
        engine: LifecycleEngine,
        store: GrantStore,
        platform: Platform,
        timers: RenewalTimers,
        config: TimedRoleConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.store = store
        self.platform = platform
        self.timers = timers
        self.config = config
        self._clock = clock

    async def recover(self, due_before: datetime | None = None) -> int:
        """Release claims whose renewal prompt was never recorded.

        Such a claim was interrupted between being marked and being prompted,
        so the member was never asked. Putting it back to pending lets the
        next scan prompt it. Without *due_before* every such claim is
        released, which is only safe before the first tick of this process.
        """
        stuck = await asyncio.to_thread(self.store.find_unprompted_claims, due_before)
        released = 0
        for grant in stuck:
            try:
                outcome = await self.engine.release(grant.id)
            except Exception:
                log.exception("Releasing unprompted claim %s failed", grant.id)
                continue
            if outcome.changed:
                released += 1
                structured_log(
                    log,
                    logging.WARNING,
                    "Released renewal claim that was never prompted",
                    grant_id=grant.id,
                    subject_id=grant.subject_id,
                )
        return released

    async def tick(self) -> ScanReport:
        report = ScanReport()
        now = self._clock()
        # a claim still unprompted after its whole window was abandoned
        report.released += await self.recover(due_before=now)
        expired = await asyncio.to_thread(self.store.find_expired_pending, now)
        for grant in expired:
            try:
                await self._prompt(grant, report)
            except Exception:
                report.failed += 1
                log.exception("Renewal prompt for grant %s failed", grant.id)

        overdue = await asyncio.to_thread(self.store.find_overdue_renewals, now)
        for grant in overdue:
            try:
                outcome = await self.engine.renewal_timeout(grant.id)
            except Exception:
                report.failed += 1
                log.exception("Overdue renewal for grant %s failed", grant.id)
                continue
            if outcome.changed:
                report.timed_out += 1

        if expired or overdue:
            log.info(
                "Scan done: %d prompted, %d released, %d skipped, %d timed out, %d failed",
                report.prompted,
                report.released,
                report.skipped,
                report.timed_out,
                report.failed,
            )
        return report

    async def _prompt(self, grant: Grant, report: ScanReport) -> None:
        claimed = await self.engine.expire(grant.id)
        if not claimed.changed:
            report.skipped += 1
            return

        channel_id = self.config.notification_channel_id
        try:
            prompt_id = await self.platform.post_message(
                channel_id,
                renewal_prompt_text(claimed.grant, self.config.renewal_window),
                renewal_actions(grant.id),
            )
        except PlatformError as exc:
            structured_log(
                log,
                logging.WARNING,
                f"Could not post renewal prompt: {exc}",
                grant_id=grant.id,
                subject_id=grant.subject_id,
            )
            await self.engine.release(grant.id)
            report.released += 1
            return

        attached = await self.engine.attach_prompt(grant.id, prompt_id)
        if not attached.changed:
            # Answered or removed before we could record the prompt.
            try:
                await self.platform.delete_message(channel_id, prompt_id)
            except PlatformError as exc:
                log.warning("Could not delete orphan prompt %s: %s", prompt_id, exc)
            report.skipped += 1
            return

        self.timers.arm(grant.id, attached.grant.renewal_due_at)
        report.prompted += 1
