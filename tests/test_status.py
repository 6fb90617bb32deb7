import asyncio

from conftest import START, STATS_CHANNEL
from rolekeeper.errors import PlatformError
from rolekeeper.status import StatusProjector, render_status


def _claim(store, subject_id, name, role_id, role_name):
    return store.insert_grant(subject_id, name, role_id, role_name, START)


def test_render_empty():
    assert render_status([]) == "**📊 Active roles:**\nNo active roles"


def test_render_sorted_by_role_then_name():
    text = render_status([("Zed", "Navigator"), ("Bob", "Captain"), ("Amy", "Navigator")])
    assert text == (
        "**📊 Active roles:**\n```\n"
        "Bob - Captain\n"
        "Amy - Navigator\n"
        "Zed - Navigator\n"
        "```"
    )


def test_refresh_posts_then_edits(store, platform):
    async def run_test():
        projector = StatusProjector(store, platform, STATS_CHANNEL)
        _claim(store, 1, "Bob", 501, "Captain")
        first = await projector.refresh()
        assert platform.messages[first]["content"].endswith("Bob - Captain\n```")

        _claim(store, 2, "Amy", 502, "Navigator")
        second = await projector.refresh()
        assert second == first
        assert platform.count("post_message") == 1
        assert "Amy - Navigator" in platform.messages[first]["content"]

    asyncio.run(run_test())


def test_lists_exactly_the_active_grants(store, platform):
    async def run_test():
        _claim(store, 1, "Bob", 501, "Captain")
        gone = _claim(store, 2, "Amy", 502, "Navigator")
        store.deactivate(gone.id)
        projector = StatusProjector(store, platform, STATS_CHANNEL)
        message_id = await projector.refresh()
        assert "Amy" not in platform.messages[message_id]["content"]

    asyncio.run(run_test())


def test_reuses_existing_message_after_restart(store, platform):
    async def run_test():
        old = await platform.post_message(STATS_CHANNEL, "**📊 Active roles:**\nNo active roles")
        await platform.post_message(STATS_CHANNEL, "unrelated chatter")
        foreign = await platform.post_message(STATS_CHANNEL, "Active roles by someone else")
        platform.messages[foreign]["from_self"] = False

        projector = StatusProjector(store, platform, STATS_CHANNEL)
        _claim(store, 1, "Bob", 501, "Captain")
        assert await projector.refresh() == old
        assert len(platform.in_channel(STATS_CHANNEL)) == 3
        assert "Bob - Captain" in platform.messages[old]["content"]

    asyncio.run(run_test())


def test_failed_edit_reposts(store, platform):
    async def run_test():
        projector = StatusProjector(store, platform, STATS_CHANNEL)
        first = await projector.refresh()
        platform.messages.pop(first)
        second = await projector.refresh()
        assert second != first
        assert projector.message_id == second

    asyncio.run(run_test())


def test_display_names_come_from_platform(store, platform):
    async def run_test():
        _claim(store, 1, "Bob", 501, "Captain")
        platform.display_names[1] = "Captain Bob"
        projector = StatusProjector(store, platform, STATS_CHANNEL)
        message_id = await projector.refresh()
        assert "Captain Bob - Captain" in platform.messages[message_id]["content"]

    asyncio.run(run_test())


def test_discovery_failure_falls_back_to_posting(store, platform):
    async def run_test():
        async def broken_history(channel_id, limit=10):
            raise PlatformError("history", "Missing Access", 403)

        platform.recent_messages = broken_history
        projector = StatusProjector(store, platform, STATS_CHANNEL)
        assert await projector.refresh() is not None
        assert platform.count("post_message") == 1

    asyncio.run(run_test())


def test_notify_coalesces_bursts(store, platform, monkeypatch):
    async def run_test():
        projector = StatusProjector(store, platform, STATS_CHANNEL)
        gate = asyncio.Event()
        calls = []

        async def slow_refresh():
            calls.append(len(calls))
            if len(calls) == 1:
                await gate.wait()

        monkeypatch.setattr(projector, "refresh", slow_refresh)
        projector.notify()
        await asyncio.sleep(0)
        for _ in range(5):
            projector.notify()
        gate.set()
        await projector.flush()
        assert len(calls) == 2

    asyncio.run(run_test())


def test_notify_without_channel_is_ignored(store, platform):
    async def run_test():
        projector = StatusProjector(store, platform, 0)
        projector.notify()
        await projector.flush()
        assert platform.calls == []

    asyncio.run(run_test())
