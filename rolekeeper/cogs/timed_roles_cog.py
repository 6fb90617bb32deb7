"""Time-limited roles with renewal prompts.

Members pick a role from a panel of buttons. When the role runs out they are
asked whether to keep it; no answer within the renewal window removes it. A
status message lists everyone currently holding a timed role.
"""
from __future__ import annotations

import asyncio
from typing import Optional

import discord
from discord.ext import commands, tasks

from ..commands import (
    PANEL_MARKER,
    PANEL_TEXT,
    dispatch,
    panel_actions,
    parse_custom_id,
    reply_for,
)
from ..db import create_engine_from_env, create_session_factory, init_schema
from ..errors import (
    MalformedCommand,
    PersistenceError,
    PlatformError,
    TimedRoleError,
    UserError,
)
from ..infra import BotConfig, get_config, get_logger, log_errors
from ..lifecycle import LifecycleEngine
from ..platform import DiscordPlatform, Platform, find_own_message
from ..scanner import ExpiryScanner
from ..status import StatusProjector
from ..store import GrantStore
from ..timers import RenewalTimers
from ..util import user_name

log = get_logger(__name__)


def build_store(config: BotConfig) -> GrantStore:
    engine = create_engine_from_env(url=config.storage.database_url)
    if config.storage.auto_create_schema:
        init_schema(engine)
    return GrantStore(create_session_factory(engine))


class TimedRolesCog(commands.Cog):
    """Claim, renewal and expiry of timed roles."""

    def __init__(
        self,
        bot: commands.Bot,
        config: Optional[BotConfig] = None,
        *,
        store: Optional[GrantStore] = None,
        platform: Optional[Platform] = None,
    ) -> None:
        self.bot = bot
        self.config = config or get_config()
        roles = self.config.timed_roles
        self.store = store or build_store(self.config)
        self.platform = platform or DiscordPlatform(bot, roles.guild_id)
        self.projector = StatusProjector(self.store, self.platform, roles.stats_channel_id)
        self.timers = RenewalTimers(self._renewal_timeout)
        self.engine = LifecycleEngine(
            self.store,
            self.platform,
            roles,
            on_change=self.projector.notify,
            on_resolved=self.timers.cancel,
        )
        self.scanner = ExpiryScanner(self.engine, self.store, self.platform, self.timers, roles)
        self._started = False
        self._scan_task: Optional[asyncio.Task] = None

    async def cog_load(self) -> None:
        for problem in self.config.timed_roles.problems():
            log.warning("Timed roles config: %s", problem)
        self.scan_loop.change_interval(
            seconds=self.config.timed_roles.scan_interval.total_seconds()
        )
        self.scan_loop.start()

    async def cog_unload(self) -> None:
        self.scan_loop.cancel()
        # the loop is gone but a tick it started still finishes
        scan = self._scan_task
        if scan is not None and not scan.done():
            log.info("Waiting for the running expiry scan to finish")
            await asyncio.gather(scan, return_exceptions=True)
        await self.timers.shutdown()
        await self.projector.flush()

    async def _renewal_timeout(self, grant_id: int) -> None:
        await self.engine.renewal_timeout(grant_id)

    # ── background scan ─────────────────────────────────────────────────────
    @tasks.loop(hours=1)
    @log_errors("Expiry scan failed")
    async def scan_loop(self) -> None:
        # Shielded: cancelling the loop must not stop a tick between marking a
        # grant and recording its prompt.
        self._scan_task = asyncio.create_task(self.scanner.tick(), name="expiry-scan")
        await asyncio.shield(self._scan_task)

    @scan_loop.before_loop
    async def _before_scan(self) -> None:
        await self.bot.wait_until_ready()
        try:
            released = await self.scanner.recover()
        except PersistenceError as exc:
            log.error("Could not release unprompted renewal claims: %s", exc)
            return
        if released:
            log.info("Released %d renewal claims left unprompted by the last run", released)

    # ── startup ─────────────────────────────────────────────────────────────
    @commands.Cog.listener()
    @log_errors("Timed roles startup failed")
    async def on_ready(self) -> None:
        if self._started:
            return
        self._started = True
        await self.ensure_panel()
        awaiting = await asyncio.to_thread(self.store.find_awaiting_response)
        self.timers.rearm(awaiting)
        self.projector.notify()

    async def ensure_panel(self) -> Optional[int]:
        """Post the role panel once; refresh its buttons if it already exists."""
        roles = self.config.timed_roles
        if not roles.role_channel_id or not roles.roles:
            return None
        actions = panel_actions(roles)
        try:
            existing = await find_own_message(self.platform, roles.role_channel_id, PANEL_MARKER)
            if existing:
                await self.platform.edit_message(roles.role_channel_id, existing, PANEL_TEXT, actions)
                log.info("Reusing role panel %s", existing)
                return existing
            panel_id = await self.platform.post_message(roles.role_channel_id, PANEL_TEXT, actions)
        except PlatformError as exc:
            log.warning("Could not set up role panel: %s", exc)
            return None
        log.info("Posted role panel %s", panel_id)
        return panel_id

    # ── buttons ─────────────────────────────────────────────────────────────
    @commands.Cog.listener()
    @log_errors("Timed roles interaction failed")
    async def on_interaction(self, interaction: discord.Interaction) -> None:
        if interaction.type is not discord.InteractionType.component:
            return
        guild_id = self.config.timed_roles.guild_id
        if guild_id and interaction.guild_id != guild_id:
            return
        custom_id = (interaction.data or {}).get("custom_id")
        try:
            command = parse_custom_id(custom_id, interaction.user.id, user_name(interaction.user))
        except MalformedCommand as exc:
            log.warning("Malformed button id %r from %s", custom_id, user_name(interaction.user))
            await self._reply(interaction, exc.user_message)
            return
        if command is None:
            return

        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            outcome = await dispatch(self.engine, command)
            text = reply_for(command, outcome)
        except UserError as exc:
            text = exc.user_message
        except TimedRoleError as exc:
            log.exception("Handling %s for %s failed", custom_id, user_name(interaction.user))
            text = exc.user_message
        except Exception:
            log.exception("Unexpected error handling %s for %s", custom_id, user_name(interaction.user))
            text = TimedRoleError.user_message
        await self._reply(interaction, text)

    async def _reply(self, interaction: discord.Interaction, text: str) -> None:
        try:
            if interaction.response.is_done():
                await interaction.followup.send(text, ephemeral=True)
            else:
                await interaction.response.send_message(text, ephemeral=True)
        except discord.HTTPException as exc:
            log.warning("Could not answer interaction: %s", exc)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(TimedRolesCog(bot))
