"""Single status message listing every active grant."""
from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from .errors import PlatformError
from .infra.logging import get_logger
from .models import Grant
from .platform import Platform, find_own_message
from .store import GrantStore

log = get_logger(__name__)

MARKER = "Active roles"
HEADER = f"**📊 {MARKER}:**"
EMPTY = "No active roles"


def render_status(rows: Iterable[tuple[str, str]]) -> str:
    """Render ``(display name, role name)`` rows sorted by role, then name."""
    ordered = sorted(rows, key=lambda row: (row[1], row[0]))
    if not ordered:
        return f"{HEADER}\n{EMPTY}"
    lines = "\n".join(f"{name} - {role}" for name, role in ordered)
    return f"{HEADER}\n```\n{lines}\n```"


class StatusProjector:
    """Keeps the status message in sync with the store.

    :meth:`notify` never blocks. Triggers that arrive while a refresh is
    running collapse into exactly one follow-up refresh.
    """

    def __init__(
        self,
        store: GrantStore,
        platform: Platform,
        channel_id: int,
        *,
        history_limit: int = 10,
    ) -> None:
        self.store = store
        self.platform = platform
        self.channel_id = channel_id
        self.history_limit = history_limit
        self._message_id: Optional[int] = None
        self._discovered = False
        self._lock = asyncio.Lock()
        self._dirty = False
        self._worker: Optional[asyncio.Task] = None

    @property
    def message_id(self) -> Optional[int]:
        return self._message_id

    def notify(self) -> None:
        if not self.channel_id:
            return
        self._dirty = True
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name="status-projector")

    async def _drain(self) -> None:
        while self._dirty:
            self._dirty = False
            try:
                await self.refresh()
            except Exception:
                log.exception("Status refresh failed")

    async def flush(self) -> None:
        """Wait until pending refreshes are done."""
        if self._worker is not None:
            await self._worker

    async def _display_name(self, grant: Grant) -> str:
        try:
            name = await self.platform.lookup_display_name(grant.subject_id)
        except PlatformError:
            name = None
        return name or grant.subject_display_name

    async def _discover(self) -> None:
        self._discovered = True
        try:
            self._message_id = await find_own_message(
                self.platform, self.channel_id, MARKER, self.history_limit
            )
        except PlatformError as exc:
            log.warning("Status message discovery failed: %s", exc)
            return
        if self._message_id:
            log.info("Reusing status message %s", self._message_id)

    async def refresh(self) -> Optional[int]:
        async with self._lock:
            grants = await asyncio.to_thread(self.store.list_active)
            rows = [(await self._display_name(g), g.role_name) for g in grants]
            text = render_status(rows)
            if not self._discovered:
                await self._discover()
            if self._message_id is not None:
                try:
                    await self.platform.edit_message(self.channel_id, self._message_id, text)
                    return self._message_id
                except PlatformError as exc:
                    log.warning("Editing status message %s failed: %s", self._message_id, exc)
                    self._message_id = None
            self._message_id = await self.platform.post_message(self.channel_id, text)
            return self._message_id
