"""Durable record of role grants.

Every public method runs in its own transaction. State transitions are single
guarded ``UPDATE`` statements, so two callers racing on the same grant can
never both succeed: the loser sees ``None`` and knows the grant moved on.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import session_scope
from .errors import AlreadyActive, GrantNotFound, PersistenceError
from .infra.logging import get_logger
from .models import (
    Grant,
    GrantAction,
    GrantEvent,
    GrantEventRecord,
    RenewalState,
    RoleGrant,
    as_utc,
)

log = get_logger(__name__)


class GrantStore:
    """Persistence operations for :class:`~rolekeeper.models.RoleGrant`."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _transaction(
        self, subject_id: int | None = None, grant_id: int | None = None
    ) -> Iterator[Session]:
        """Run one transaction.

        When *subject_id* is given and the member holds an active grant other
        than *grant_id*, a constraint violation is the one-active-grant index
        and surfaces as :class:`AlreadyActive` naming the role they hold.
        """
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except IntegrityError as exc:
            holder = self.find_active_by_subject(subject_id) if subject_id is not None else None
            if holder is not None and holder.id != grant_id:
                raise AlreadyActive(holder.role_name) from exc
            log.error("Grant store constraint violated: %s", exc.orig)
            raise PersistenceError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            log.error("Grant store operation failed: %s", exc)
            raise PersistenceError(str(exc)) from exc

    @staticmethod
    def _record(
        session: Session,
        grant_id: int,
        subject_id: int,
        action: str,
        detail: str | None = None,
    ) -> None:
        session.add(GrantEvent(grant_id=grant_id, subject_id=subject_id, action=action, detail=detail))

    def _transition(
        self,
        grant_id: int,
        conditions: Sequence[Any],
        values: dict[str, Any],
        action: str | None,
        detail: str | None = None,
        *,
        subject_id: int | None = None,
    ) -> Optional[Grant]:
        """Apply *values* only if every condition holds; return the new snapshot."""
        with self._transaction(subject_id, grant_id) as session:
            stmt = (
                update(RoleGrant)
                .where(RoleGrant.id == grant_id, *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            if not result.rowcount:
                return None
            row = session.get(RoleGrant, grant_id, populate_existing=True)
            if action:
                self._record(session, grant_id, row.subject_id, action, detail)
            return Grant.from_row(row)

    # ── creation ────────────────────────────────────────────────────────────
    def insert_grant(
        self,
        subject_id: int,
        display_name: str,
        role_id: int,
        role_name: str,
        expires_at: datetime,
    ) -> Grant:
        """Create the first grant row for a member."""
        with self._transaction(subject_id) as session:
            row = RoleGrant(
                subject_id=subject_id,
                subject_display_name=display_name,
                role_id=role_id,
                role_name=role_name,
                expires_at=expires_at,
                active=True,
                renewal_state=RenewalState.PENDING,
            )
            session.add(row)
            session.flush()
            self._record(session, row.id, subject_id, GrantAction.CLAIMED, role_name)
            return Grant.from_row(row)

    def reactivate(
        self,
        grant_id: int,
        display_name: str,
        role_id: int,
        role_name: str,
        expires_at: datetime,
    ) -> Grant:
        """Reuse an inactive row for a fresh claim."""
        subject_id = self.find_by_id(grant_id).subject_id
        grant = self._transition(
            grant_id,
            [RoleGrant.active.is_(False)],
            {
                "subject_display_name": display_name,
                "role_id": role_id,
                "role_name": role_name,
                "expires_at": expires_at,
                "active": True,
                "renewal_state": RenewalState.PENDING,
                "renewal_prompt_id": None,
                "renewal_due_at": None,
            },
            GrantAction.CLAIMED,
            role_name,
            subject_id=subject_id,
        )
        if grant is None:
            # The row itself is still active.
            raise AlreadyActive(self.find_by_id(grant_id).role_name)
        return grant

    # ── queries ─────────────────────────────────────────────────────────────
    def _fetch(self, stmt) -> list[Grant]:
        with self._transaction() as session:
            return [Grant.from_row(row) for row in session.scalars(stmt).all()]

    def find_by_id(self, grant_id: int) -> Grant:
        with self._transaction() as session:
            row = session.get(RoleGrant, grant_id)
            if row is None:
                raise GrantNotFound(grant_id)
            return Grant.from_row(row)

    def find_active_by_subject(self, subject_id: int) -> Optional[Grant]:
        rows = self._fetch(
            select(RoleGrant).where(RoleGrant.subject_id == subject_id, RoleGrant.active.is_(True))
        )
        return rows[0] if rows else None

    def find_latest_by_subject(self, subject_id: int) -> Optional[Grant]:
        rows = self._fetch(
            select(RoleGrant)
            .where(RoleGrant.subject_id == subject_id)
            .order_by(RoleGrant.created_at.desc(), RoleGrant.id.desc())
            .limit(1)
        )
        return rows[0] if rows else None

    def find_expired_pending(self, now: datetime) -> list[Grant]:
        return self._fetch(
            select(RoleGrant)
            .where(
                RoleGrant.active.is_(True),
                RoleGrant.renewal_state == RenewalState.PENDING,
                RoleGrant.expires_at <= now,
            )
            .order_by(RoleGrant.expires_at, RoleGrant.id)
        )

    def find_awaiting_response(self) -> list[Grant]:
        return self._fetch(
            select(RoleGrant)
            .where(
                RoleGrant.active.is_(True),
                RoleGrant.renewal_state == RenewalState.AWAITING_RESPONSE,
            )
            .order_by(RoleGrant.id)
        )

    def find_overdue_renewals(self, now: datetime) -> list[Grant]:
        return self._fetch(
            select(RoleGrant)
            .where(
                RoleGrant.active.is_(True),
                RoleGrant.renewal_state == RenewalState.AWAITING_RESPONSE,
                RoleGrant.renewal_prompt_id.is_not(None),
                RoleGrant.renewal_due_at.is_not(None),
                RoleGrant.renewal_due_at <= now,
            )
            .order_by(RoleGrant.renewal_due_at, RoleGrant.id)
        )

    def find_unprompted_claims(self, due_before: datetime | None = None) -> list[Grant]:
        """Awaiting grants whose prompt was never recorded.

        With *due_before*, only claims whose answer window already closed.
        """
        conditions = [
            RoleGrant.active.is_(True),
            RoleGrant.renewal_state == RenewalState.AWAITING_RESPONSE,
            RoleGrant.renewal_prompt_id.is_(None),
        ]
        if due_before is not None:
            conditions.append(RoleGrant.renewal_due_at <= due_before)
        return self._fetch(select(RoleGrant).where(*conditions).order_by(RoleGrant.id))

    def list_active(self) -> list[Grant]:
        return self._fetch(
            select(RoleGrant)
            .where(RoleGrant.active.is_(True))
            .order_by(RoleGrant.role_name, RoleGrant.subject_display_name, RoleGrant.id)
        )

    def get_renewal_prompt(self, grant_id: int) -> Optional[int]:
        with self._transaction() as session:
            return session.scalar(
                select(RoleGrant.renewal_prompt_id).where(RoleGrant.id == grant_id)
            )

    def history(self, grant_id: int) -> list[GrantEventRecord]:
        with self._transaction() as session:
            events = session.scalars(
                select(GrantEvent)
                .where(GrantEvent.grant_id == grant_id)
                .order_by(GrantEvent.created_at, GrantEvent.id)
            ).all()
            return [
                GrantEventRecord(
                    action=e.action, subject_id=e.subject_id, at=as_utc(e.created_at), detail=e.detail
                )
                for e in events
            ]

    # ── transitions ─────────────────────────────────────────────────────────
    def claim_expired(self, grant_id: int, now: datetime, due_at: datetime) -> Optional[Grant]:
        """Mark an expired pending grant as awaiting a renewal answer.

        Only one caller can win this for a given expiry.
        """
        return self._transition(
            grant_id,
            [
                RoleGrant.active.is_(True),
                RoleGrant.renewal_state == RenewalState.PENDING,
                RoleGrant.expires_at <= now,
            ],
            {
                "renewal_state": RenewalState.AWAITING_RESPONSE,
                "renewal_prompt_id": None,
                "renewal_due_at": due_at,
            },
            None,
        )

    def release_claim(self, grant_id: int) -> Optional[Grant]:
        """Undo :meth:`claim_expired` when no prompt could be posted."""
        return self._transition(
            grant_id,
            [
                RoleGrant.active.is_(True),
                RoleGrant.renewal_state == RenewalState.AWAITING_RESPONSE,
                RoleGrant.renewal_prompt_id.is_(None),
            ],
            {"renewal_state": RenewalState.PENDING, "renewal_due_at": None},
            GrantAction.PROMPT_RELEASED,
        )

    def set_renewal_prompt(self, grant_id: int, prompt_id: int) -> Optional[Grant]:
        return self._transition(
            grant_id,
            [
                RoleGrant.active.is_(True),
                RoleGrant.renewal_state == RenewalState.AWAITING_RESPONSE,
            ],
            {"renewal_prompt_id": prompt_id},
            GrantAction.PROMPTED,
            str(prompt_id),
        )

    def update_renewal_state(
        self,
        grant_id: int,
        state: str,
        *,
        expected: str | None = None,
        action: str | None = None,
    ) -> Optional[Grant]:
        """Set ``renewal_state``; leaving awaiting_response clears the prompt."""
        if state not in RenewalState.ALL:
            raise ValueError(f"invalid renewal state: {state}")
        conditions = [] if expected is None else [RoleGrant.renewal_state == expected]
        values: dict[str, Any] = {"renewal_state": state}
        if state != RenewalState.AWAITING_RESPONSE:
            values.update(renewal_prompt_id=None, renewal_due_at=None)
        return self._transition(grant_id, conditions, values, action)

    def extend_and_reactivate(self, grant_id: int, new_expiry: datetime) -> Optional[Grant]:
        """Renew a grant that is awaiting an answer; expiry only moves forward."""
        return self._transition(
            grant_id,
            [
                RoleGrant.renewal_state == RenewalState.AWAITING_RESPONSE,
                RoleGrant.expires_at < new_expiry,
            ],
            {
                "expires_at": new_expiry,
                "active": True,
                "renewal_state": RenewalState.PENDING,
                "renewal_prompt_id": None,
                "renewal_due_at": None,
            },
            GrantAction.RENEWED,
        )

    def deactivate(
        self,
        grant_id: int,
        state: str = RenewalState.SUPERSEDED,
        *,
        expected: str | None = None,
        action: str = GrantAction.REMOVED,
    ) -> Optional[Grant]:
        """Turn an active grant off; the row stays for a later claim."""
        conditions = [RoleGrant.active.is_(True)]
        if expected is not None:
            conditions.append(RoleGrant.renewal_state == expected)
        return self._transition(
            grant_id,
            conditions,
            {
                "active": False,
                "renewal_state": state,
                "renewal_prompt_id": None,
                "renewal_due_at": None,
            },
            action,
        )


__all__ = ["GrantStore"]
