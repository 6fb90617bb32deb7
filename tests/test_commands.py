import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from conftest import START, WINDOW
from rolekeeper.commands import (
    ClaimRole,
    RemoveRole,
    RenewalResponse,
    dispatch,
    format_expiry,
    panel_actions,
    parse_custom_id,
    renewal_actions,
    renewal_prompt_text,
    reply_for,
)
from rolekeeper.errors import MalformedCommand
from rolekeeper.lifecycle import Outcome


def test_parse_claim_and_remove():
    assert parse_custom_id("select_role_2", 7, "Ann") == ClaimRole(7, "Ann", "2")
    assert parse_custom_id("remove_role", 7, "Ann") == RemoveRole(7)


def test_parse_renewal_answers():
    assert parse_custom_id("renew_yes_15", 7, "Ann") == RenewalResponse(15, 7, True)
    assert parse_custom_id("renew_no_15", 7, "Ann") == RenewalResponse(15, 7, False)


@pytest.mark.parametrize("custom_id", ["renew_yes_", "renew_no_abc", "renew_yes_-3"])
def test_parse_malformed_renewal(custom_id):
    with pytest.raises(MalformedCommand):
        parse_custom_id(custom_id, 7, "Ann")


@pytest.mark.parametrize("custom_id", [None, "", "hof_vote", "renewal"])
def test_parse_ignores_foreign_ids(custom_id):
    assert parse_custom_id(custom_id, 7, "Ann") is None


def test_panel_actions(role_config):
    ids = [(a.custom_id, a.label) for a in panel_actions(role_config)]
    assert ids == [
        ("select_role_1", "Captain"),
        ("select_role_2", "Navigator"),
        ("remove_role", "Remove role"),
    ]


def test_renewal_actions_and_text():
    assert [a.custom_id for a in renewal_actions(3)] == ["renew_yes_3", "renew_no_3"]
    grant = SimpleNamespace(subject_id=7, role_name="Captain")
    assert renewal_prompt_text(grant, WINDOW) == (
        "<@7>, are you still **Captain**? Answer within 10 minutes."
    )


def test_reply_text_uses_day_first_utc_dates():
    grant = SimpleNamespace(role_name="Captain", expires_at=START)
    outcome = Outcome(grant, True)
    assert reply_for(ClaimRole(7, "Ann", "1"), outcome) == (
        "You now hold **Captain** until 06.01.2025 12:00 UTC."
    )
    assert reply_for(RenewalResponse(1, 7, True), outcome) == (
        "Role **Captain** renewed until 06.01.2025 12:00 UTC."
    )
    assert reply_for(RenewalResponse(1, 7, False), outcome) == "Role **Captain** removed."
    assert reply_for(RemoveRole(7), outcome) == "Role **Captain** removed."


def test_dispatch_routes_each_command():
    calls = []

    def recorder(name):
        async def call(*args):
            calls.append((name, *args))
            return Outcome(None, True)

        return call

    engine = SimpleNamespace(
        claim=recorder("claim"),
        remove=recorder("remove"),
        confirm_renewal=recorder("confirm"),
        decline_renewal=recorder("decline"),
    )

    async def run_test():
        await dispatch(engine, ClaimRole(7, "Ann", "1"))
        await dispatch(engine, RemoveRole(7))
        await dispatch(engine, RenewalResponse(3, 7, True))
        await dispatch(engine, RenewalResponse(3, 7, False))

    asyncio.run(run_test())
    assert calls == [
        ("claim", 7, "Ann", "1"),
        ("remove", 7),
        ("confirm", 3, 7),
        ("decline", 3, 7),
    ]


def test_expiry_shown_in_utc_whatever_the_offset():
    cest = timezone(timedelta(hours=2))
    assert format_expiry(datetime(2025, 6, 1, 14, 30, tzinfo=cest)) == "01.06.2025 12:30 UTC"
