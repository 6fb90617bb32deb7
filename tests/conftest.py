from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rolekeeper.db import create_engine_from_env, create_session_factory, init_schema
from rolekeeper.errors import PlatformError
from rolekeeper.infra.config import RoleChoice, TimedRoleConfig
from rolekeeper.platform import PostedMessage
from rolekeeper.store import GrantStore

START = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)
WEEK = timedelta(days=7)
WINDOW = timedelta(minutes=10)

NOTIFY_CHANNEL = 20
STATS_CHANNEL = 30
ROLE_CHANNEL = 10


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakePlatform:
    """In-memory stand-in for the chat platform."""

    def __init__(self) -> None:
        self.roles: dict[int, set[int]] = {}
        self.messages: dict[int, dict] = {}
        self.calls: list[tuple] = []
        self.fail: dict[str, PlatformError] = {}
        self.display_names: dict[int, str] = {}
        self._next_id = 1000

    def _check(self, op: str) -> None:
        exc = self.fail.get(op)
        if exc is not None:
            raise exc

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def in_channel(self, channel_id: int) -> list[dict]:
        return [m for m in self.messages.values() if m["channel"] == channel_id]

    async def grant_role(self, subject_id, role_id):
        self.calls.append(("grant_role", subject_id, role_id))
        self._check("grant_role")
        self.roles.setdefault(subject_id, set()).add(role_id)

    async def revoke_role(self, subject_id, role_id):
        self.calls.append(("revoke_role", subject_id, role_id))
        self._check("revoke_role")
        self.roles.get(subject_id, set()).discard(role_id)

    async def post_message(self, channel_id, content, actions=()):
        self.calls.append(("post_message", channel_id, content))
        self._check("post_message")
        self._next_id += 1
        self.messages[self._next_id] = {
            "id": self._next_id,
            "channel": channel_id,
            "content": content,
            "actions": list(actions),
            "from_self": True,
        }
        return self._next_id

    async def edit_message(self, channel_id, message_id, content=None, actions=None):
        self.calls.append(("edit_message", channel_id, message_id))
        self._check("edit_message")
        message = self.messages.get(message_id)
        if message is None:
            raise PlatformError("edit_message", "Unknown Message", 404)
        if content is not None:
            message["content"] = content
        if actions is not None:
            message["actions"] = list(actions)

    async def delete_message(self, channel_id, message_id):
        self.calls.append(("delete_message", channel_id, message_id))
        self._check("delete_message")
        self.messages.pop(message_id, None)

    async def lookup_display_name(self, subject_id):
        return self.display_names.get(subject_id)

    async def recent_messages(self, channel_id, limit=10):
        newest = sorted(self.in_channel(channel_id), key=lambda m: m["id"], reverse=True)
        return [PostedMessage(m["id"], m["content"], m["from_self"]) for m in newest[:limit]]


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine_from_env(url=f"sqlite+pysqlite:///{tmp_path / 'grants.db'}")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine):
    return GrantStore(create_session_factory(engine))


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def platform():
    return FakePlatform()


@pytest.fixture()
def role_config():
    return TimedRoleConfig(
        guild_id=1,
        role_channel_id=ROLE_CHANNEL,
        notification_channel_id=NOTIFY_CHANNEL,
        stats_channel_id=STATS_CHANNEL,
        role_duration=WEEK,
        renewal_window=WINDOW,
        roles=(RoleChoice("1", 501, "Captain"), RoleChoice("2", 502, "Navigator")),
    )
