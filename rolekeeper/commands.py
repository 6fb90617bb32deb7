"""Button custom ids to lifecycle operations and back to reply text."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from .errors import MalformedCommand
from .infra.config import TimedRoleConfig
from .lifecycle import LifecycleEngine, Outcome
from .models import Grant
from .platform import Action

SELECT_PREFIX = "select_role_"
REMOVE_ID = "remove_role"
RENEW_YES_PREFIX = "renew_yes_"
RENEW_NO_PREFIX = "renew_no_"

PANEL_MARKER = "Choose your role"
PANEL_TEXT = (
    f"**{PANEL_MARKER}**\n"
    "Pick a role below. It lasts for a limited time and you will be asked "
    "whether to keep it when it runs out."
)

DATE_FORMAT = "%d.%m.%Y %H:%M UTC"


def format_expiry(when: datetime) -> str:
    return when.astimezone(timezone.utc).strftime(DATE_FORMAT)


@dataclass(frozen=True)
class ClaimRole:
    subject_id: int
    display_name: str
    choice_key: str


@dataclass(frozen=True)
class RemoveRole:
    subject_id: int


@dataclass(frozen=True)
class RenewalResponse:
    grant_id: int
    subject_id: int
    accept: bool


Command = Union[ClaimRole, RemoveRole, RenewalResponse]


def parse_custom_id(custom_id: str | None, subject_id: int, display_name: str) -> Optional[Command]:
    """Turn a component custom id into a command.

    Returns ``None`` for ids that belong to someone else. A renewal id without
    a numeric grant id raises :class:`MalformedCommand`.
    """
    if not custom_id:
        return None
    if custom_id == REMOVE_ID:
        return RemoveRole(subject_id)
    if custom_id.startswith(SELECT_PREFIX):
        return ClaimRole(subject_id, display_name, custom_id[len(SELECT_PREFIX):])
    for prefix, accept in ((RENEW_YES_PREFIX, True), (RENEW_NO_PREFIX, False)):
        if custom_id.startswith(prefix):
            raw = custom_id[len(prefix):]
            if not raw.isdigit():
                raise MalformedCommand(custom_id)
            return RenewalResponse(int(raw), subject_id, accept)
    return None


def panel_actions(config: TimedRoleConfig) -> list[Action]:
    actions = [Action(f"{SELECT_PREFIX}{choice.key}", choice.name, "primary") for choice in config.roles]
    actions.append(Action(REMOVE_ID, "Remove role", "danger"))
    return actions


def renewal_actions(grant_id: int) -> list[Action]:
    return [
        Action(f"{RENEW_YES_PREFIX}{grant_id}", "Yes, renew", "success"),
        Action(f"{RENEW_NO_PREFIX}{grant_id}", "No, remove", "danger"),
    ]


def renewal_prompt_text(grant: Grant, window: timedelta) -> str:
    minutes = int(window.total_seconds() // 60)
    return (
        f"<@{grant.subject_id}>, are you still **{grant.role_name}**? "
        f"Answer within {minutes} minutes."
    )


async def dispatch(engine: LifecycleEngine, command: Command) -> Outcome:
    if isinstance(command, ClaimRole):
        return await engine.claim(command.subject_id, command.display_name, command.choice_key)
    if isinstance(command, RemoveRole):
        return await engine.remove(command.subject_id)
    if command.accept:
        return await engine.confirm_renewal(command.grant_id, command.subject_id)
    return await engine.decline_renewal(command.grant_id, command.subject_id)


def reply_for(command: Command, outcome: Outcome) -> str:
    grant = outcome.grant
    if isinstance(command, ClaimRole):
        return f"You now hold **{grant.role_name}** until {format_expiry(grant.expires_at)}."
    if isinstance(command, RemoveRole):
        return f"Role **{grant.role_name}** removed."
    if command.accept:
        return f"Role **{grant.role_name}** renewed until {format_expiry(grant.expires_at)}."
    return f"Role **{grant.role_name}** removed."


__all__ = [
    "ClaimRole",
    "Command",
    "PANEL_MARKER",
    "PANEL_TEXT",
    "RemoveRole",
    "RenewalResponse",
    "dispatch",
    "format_expiry",
    "panel_actions",
    "parse_custom_id",
    "renewal_actions",
    "renewal_prompt_text",
    "reply_for",
]
