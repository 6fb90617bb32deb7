"""Chat platform capabilities used by the role lifecycle."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Sequence, TypeVar

import discord
from discord.ext import commands

from .errors import PlatformError
from .infra.logging import get_logger
from .infra.retries import call_with_backoff

log = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Action:
    """A button attached to a posted message."""

    custom_id: str
    label: str
    style: str = "secondary"


@dataclass(frozen=True)
class PostedMessage:
    id: int
    content: str
    from_self: bool


class Platform(Protocol):
    async def grant_role(self, subject_id: int, role_id: int) -> None: ...

    async def revoke_role(self, subject_id: int, role_id: int) -> None: ...

    async def post_message(
        self, channel_id: int, content: str, actions: Sequence[Action] = ()
    ) -> int: ...

    async def edit_message(
        self,
        channel_id: int,
        message_id: int,
        content: Optional[str] = None,
        actions: Optional[Sequence[Action]] = None,
    ) -> None: ...

    async def delete_message(self, channel_id: int, message_id: int) -> None: ...

    async def lookup_display_name(self, subject_id: int) -> Optional[str]: ...

    async def recent_messages(self, channel_id: int, limit: int = 10) -> list[PostedMessage]: ...


async def find_own_message(
    platform: Platform, channel_id: int, marker: str, limit: int = 10
) -> Optional[int]:
    """Return the newest message we posted in *channel_id* containing *marker*."""
    for message in await platform.recent_messages(channel_id, limit):
        if message.from_self and marker in message.content:
            return message.id
    return None


def build_view(actions: Sequence[Action]) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    for action in actions:
        view.add_item(
            discord.ui.Button(
                label=action.label,
                custom_id=action.custom_id,
                style=discord.ButtonStyle[action.style],
            )
        )
    return view


class DiscordPlatform:
    """:class:`Platform` backed by a discord.py bot in a single guild.

    Idempotent calls retry transient HTTP failures. Posting does not, since a
    retried post could leave a duplicate behind.
    """

    def __init__(self, bot: commands.Bot, guild_id: int) -> None:
        self.bot = bot
        self.guild_id = guild_id

    async def _call(
        self, operation: str, fn: Callable[[], Awaitable[T]], *, retries: int = 3
    ) -> T:
        try:
            return await call_with_backoff(fn, retries=retries)
        except discord.HTTPException as exc:
            raise PlatformError(operation, exc.text or str(exc), exc.status) from exc

    def _guild(self) -> discord.Guild:
        guild = self.bot.get_guild(self.guild_id)
        if guild is None:
            raise PlatformError("guild lookup", f"guild {self.guild_id} unavailable")
        return guild

    async def _member(self, guild: discord.Guild, subject_id: int) -> Optional[discord.Member]:
        member = guild.get_member(subject_id)
        if member is not None:
            return member
        try:
            return await self._call("member lookup", lambda: guild.fetch_member(subject_id))
        except PlatformError as exc:
            if exc.status == 404:
                return None
            raise

    def _role(self, guild: discord.Guild, role_id: int) -> discord.Role:
        role = guild.get_role(role_id)
        if role is None:
            raise PlatformError("role lookup", f"role {role_id} not found")
        return role

    async def _channel(self, channel_id: int) -> discord.abc.Messageable:
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            channel = await self._call("channel lookup", lambda: self.bot.fetch_channel(channel_id))
        return channel

    async def grant_role(self, subject_id: int, role_id: int) -> None:
        guild = self._guild()
        member = await self._member(guild, subject_id)
        if member is None:
            raise PlatformError("grant_role", f"member {subject_id} not in guild", 404)
        role = self._role(guild, role_id)
        if role in member.roles:
            return
        await self._call("grant_role", lambda: member.add_roles(role, reason="Timed role claimed"))

    async def revoke_role(self, subject_id: int, role_id: int) -> None:
        guild = self._guild()
        member = await self._member(guild, subject_id)
        if member is None:
            log.info("Member %s left; nothing to revoke", subject_id)
            return
        role = self._role(guild, role_id)
        if role not in member.roles:
            return
        await self._call("revoke_role", lambda: member.remove_roles(role, reason="Timed role ended"))

    async def post_message(
        self, channel_id: int, content: str, actions: Sequence[Action] = ()
    ) -> int:
        channel = await self._channel(channel_id)
        view = build_view(actions) if actions else None
        kwargs = {"view": view} if view is not None else {}
        message = await self._call("post_message", lambda: channel.send(content, **kwargs), retries=0)
        return message.id

    async def edit_message(
        self,
        channel_id: int,
        message_id: int,
        content: Optional[str] = None,
        actions: Optional[Sequence[Action]] = None,
    ) -> None:
        channel = await self._channel(channel_id)
        message = channel.get_partial_message(message_id)
        kwargs: dict = {}
        if content is not None:
            kwargs["content"] = content
        if actions is not None:
            kwargs["view"] = build_view(actions)
        await self._call("edit_message", lambda: message.edit(**kwargs))

    async def delete_message(self, channel_id: int, message_id: int) -> None:
        channel = await self._channel(channel_id)
        message = channel.get_partial_message(message_id)
        try:
            await self._call("delete_message", message.delete)
        except PlatformError as exc:
            if exc.status != 404:
                raise
            log.debug("Message %s already deleted", message_id)

    async def lookup_display_name(self, subject_id: int) -> Optional[str]:
        guild = self.bot.get_guild(self.guild_id)
        member = guild.get_member(subject_id) if guild else None
        return member.display_name if member else None

    async def recent_messages(self, channel_id: int, limit: int = 10) -> list[PostedMessage]:
        channel = await self._channel(channel_id)
        own_id = self.bot.user.id if self.bot.user else None

        async def fetch() -> list[PostedMessage]:
            return [
                PostedMessage(m.id, m.content, m.author.id == own_id)
                async for m in channel.history(limit=limit)
            ]

        return await self._call("history", fetch)


__all__ = [
    "Action",
    "DiscordPlatform",
    "Platform",
    "PostedMessage",
    "build_view",
    "find_own_message",
]
