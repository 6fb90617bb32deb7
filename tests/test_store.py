from datetime import timedelta

import pytest

from conftest import START, WEEK, WINDOW
from rolekeeper.errors import AlreadyActive, GrantNotFound, PersistenceError
from rolekeeper.models import GrantAction, RenewalState


def _grant(store, subject_id=7, name="Ann", role_id=501, role_name="Captain", expires_at=START):
    return store.insert_grant(subject_id, name, role_id, role_name, expires_at)


def _awaiting(store, **kwargs):
    grant = _grant(store, **kwargs)
    return store.claim_expired(grant.id, START, START + WINDOW)


def test_insert_and_find(store):
    grant = _grant(store)
    assert grant.active
    assert grant.renewal_state == RenewalState.PENDING
    assert grant.expires_at == START
    assert store.find_active_by_subject(7) == grant
    assert store.find_latest_by_subject(7).id == grant.id
    assert store.find_active_by_subject(8) is None


def test_find_by_id_missing(store):
    with pytest.raises(GrantNotFound):
        store.find_by_id(404)


def test_second_active_grant_rejected(store):
    _grant(store)
    with pytest.raises(AlreadyActive):
        _grant(store, role_id=502, role_name="Navigator")
    assert len(store.list_active()) == 1


def test_reactivate_reuses_row(store):
    grant = _grant(store)
    store.deactivate(grant.id)
    again = store.reactivate(grant.id, "Ann B", 502, "Navigator", START + WEEK)
    assert again.id == grant.id
    assert again.active and again.role_name == "Navigator"
    assert again.subject_display_name == "Ann B"
    assert [e.action for e in store.history(grant.id)] == [
        GrantAction.CLAIMED,
        GrantAction.REMOVED,
        GrantAction.CLAIMED,
    ]


def test_reactivate_active_row_rejected(store):
    grant = _grant(store)
    with pytest.raises(AlreadyActive):
        store.reactivate(grant.id, "Ann", 502, "Navigator", START + WEEK)


def test_claim_expired_only_once(store):
    grant = _grant(store)
    first = store.claim_expired(grant.id, START, START + WINDOW)
    assert first.renewal_state == RenewalState.AWAITING_RESPONSE
    assert first.renewal_due_at == START + WINDOW
    assert store.claim_expired(grant.id, START, START + WINDOW) is None


def test_claim_expired_requires_expiry(store):
    grant = _grant(store, expires_at=START + timedelta(minutes=1))
    assert store.claim_expired(grant.id, START, START + WINDOW) is None
    assert store.find_expired_pending(START) == []
    assert [g.id for g in store.find_expired_pending(START + timedelta(minutes=1))] == [grant.id]


def test_release_claim(store):
    grant = _awaiting(store)
    released = store.release_claim(grant.id)
    assert released.renewal_state == RenewalState.PENDING
    assert released.renewal_due_at is None
    assert store.history(grant.id)[-1].action == GrantAction.PROMPT_RELEASED


def test_release_claim_refused_once_prompted(store):
    grant = _awaiting(store)
    store.set_renewal_prompt(grant.id, 99)
    assert store.release_claim(grant.id) is None
    assert store.get_renewal_prompt(grant.id) == 99


def test_set_renewal_prompt_requires_awaiting(store):
    grant = _grant(store)
    assert store.set_renewal_prompt(grant.id, 99) is None
    assert store.get_renewal_prompt(grant.id) is None


def test_extend_and_reactivate(store):
    grant = _awaiting(store)
    store.set_renewal_prompt(grant.id, 99)
    renewed = store.extend_and_reactivate(grant.id, START + WEEK)
    assert renewed.expires_at == START + WEEK
    assert renewed.renewal_state == RenewalState.PENDING
    assert renewed.renewal_prompt_id is None
    assert renewed.renewal_due_at is None
    # only from awaiting_response
    assert store.extend_and_reactivate(grant.id, START + 2 * WEEK) is None


def test_extend_never_shortens(store):
    grant = _awaiting(store)
    assert store.extend_and_reactivate(grant.id, START - timedelta(days=1)) is None
    assert store.find_by_id(grant.id).expires_at == START


def test_deactivate_with_expected_state(store):
    grant = _grant(store)
    assert store.deactivate(grant.id, expected=RenewalState.AWAITING_RESPONSE) is None
    done = store.deactivate(
        grant.id, RenewalState.REJECTED, expected=RenewalState.PENDING, action=GrantAction.DECLINED
    )
    assert not done.active
    assert done.renewal_state == RenewalState.REJECTED
    assert store.deactivate(grant.id) is None
    assert store.find_active_by_subject(7) is None
    assert store.find_latest_by_subject(7).id == grant.id


def test_update_renewal_state(store):
    grant = _awaiting(store)
    store.set_renewal_prompt(grant.id, 99)
    with pytest.raises(ValueError):
        store.update_renewal_state(grant.id, "bogus")
    assert store.update_renewal_state(grant.id, RenewalState.PENDING, expected=RenewalState.REJECTED) is None
    updated = store.update_renewal_state(grant.id, RenewalState.CONFIRMED)
    assert updated.renewal_state == RenewalState.CONFIRMED
    assert updated.renewal_prompt_id is None


def test_list_active_sorted(store):
    _grant(store, subject_id=1, name="Zed", role_id=502, role_name="Navigator")
    _grant(store, subject_id=2, name="Bob", role_id=501, role_name="Captain")
    _grant(store, subject_id=3, name="Amy", role_id=502, role_name="Navigator")
    gone = _grant(store, subject_id=4, name="Al", role_id=501, role_name="Captain")
    store.deactivate(gone.id)
    rows = [(g.role_name, g.subject_display_name) for g in store.list_active()]
    assert rows == [("Captain", "Bob"), ("Navigator", "Amy"), ("Navigator", "Zed")]


def test_awaiting_and_overdue_queries(store):
    grant = _awaiting(store)
    _grant(store, subject_id=8)
    assert [g.id for g in store.find_awaiting_response()] == [grant.id]
    # a claim without a recorded prompt is never overdue
    assert store.find_overdue_renewals(START + WINDOW) == []
    store.set_renewal_prompt(grant.id, 4242)
    assert store.find_overdue_renewals(START) == []
    assert [g.id for g in store.find_overdue_renewals(START + WINDOW)] == [grant.id]


def test_unprompted_claims(store):
    grant = _awaiting(store)
    prompted = _awaiting(store, subject_id=8)
    store.set_renewal_prompt(prompted.id, 4242)
    assert [g.id for g in store.find_unprompted_claims()] == [grant.id]
    assert store.find_unprompted_claims(START) == []
    assert [g.id for g in store.find_unprompted_claims(START + WINDOW)] == [grant.id]


def test_conflict_names_the_held_role(store):
    _grant(store)
    with pytest.raises(AlreadyActive) as info:
        _grant(store, role_id=502, role_name="Navigator")
    assert info.value.role_name == "Captain"


def test_reactivate_conflict_names_the_held_role(store):
    old = _grant(store)
    store.deactivate(old.id)
    _grant(store, role_id=502, role_name="Navigator")
    with pytest.raises(AlreadyActive) as info:
        store.reactivate(old.id, "Ann", 501, "Captain", START + WEEK)
    assert info.value.role_name == "Navigator"


def test_check_violation_on_held_row_is_not_a_conflict(store):
    grant = _grant(store)
    with pytest.raises(PersistenceError):
        store._transition(grant.id, [], {"renewal_state": "bogus"}, None, subject_id=7)
    assert store.find_by_id(grant.id).renewal_state == RenewalState.PENDING
