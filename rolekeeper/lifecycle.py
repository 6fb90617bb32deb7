"""Role lifecycle: claim, expire, renew, decline, time out, remove.

The engine holds no grant state of its own. Every operation reads the store,
performs one guarded transition and carries out the platform side effects
that go with it. Operations for the same member run one at a time through
:class:`~rolekeeper.infra.lanes.SubjectLanes`.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from .errors import (
    AlreadyActive,
    NoActiveGrant,
    NotOwner,
    PersistenceError,
    PlatformError,
    StaleRequest,
    TimedRoleError,
    UnknownRoleChoice,
)
from .infra.config import TimedRoleConfig
from .infra.lanes import SubjectLanes
from .infra.logging import get_logger, structured_log
from .models import Grant, GrantAction, RenewalState, utcnow
from .store import GrantStore

log = get_logger(__name__)


class Intent:
    GRANT_ROLE = "grant_role"
    REVOKE_ROLE = "revoke_role"
    DELETE_PROMPT = "delete_prompt"


@dataclass(frozen=True)
class EffectResult:
    """What happened when a side effect was carried out."""

    intent: str
    ok: bool
    error: Optional[Exception] = None


@dataclass(frozen=True)
class Outcome:
    grant: Optional[Grant]
    changed: bool
    effects: tuple[EffectResult, ...] = field(default_factory=tuple)

    @property
    def failed_effects(self) -> list[EffectResult]:
        return [effect for effect in self.effects if not effect.ok]


def next_expiry(current: datetime, duration: timedelta, now: datetime) -> datetime:
    """Extend *current* by one duration, or by as many as needed to pass *now*."""
    expiry = current + duration
    if expiry <= now:
        expiry += duration * ((now - expiry) // duration + 1)
    return expiry


class LifecycleEngine:
    def __init__(
        self,
        store: GrantStore,
        platform: Any,
        config: TimedRoleConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
        on_change: Callable[[], None] | None = None,
        on_resolved: Callable[[int], None] | None = None,
        lanes: SubjectLanes | None = None,
    ) -> None:
        self._store = store
        self._platform = platform
        self._config = config
        self._clock = clock
        self._on_change = on_change
        self._on_resolved = on_resolved
        self._lanes = lanes or SubjectLanes()

    # ── plumbing ────────────────────────────────────────────────────────────
    async def _db(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def _in_lane(self, grant_id: int, op: Callable[[], Awaitable[Outcome]]) -> Outcome:
        grant = await self._db(self._store.find_by_id, grant_id)
        return await self._lanes.run(grant.subject_id, op)

    async def _effect(
        self, intent: str, grant: Grant, call: Callable[..., Awaitable[Any]], *args: Any
    ) -> EffectResult:
        try:
            await call(*args)
        except PlatformError as exc:
            structured_log(
                log,
                logging.WARNING,
                f"{intent} failed: {exc}",
                grant_id=grant.id,
                subject_id=grant.subject_id,
                action=intent,
            )
            return EffectResult(intent, False, exc)
        return EffectResult(intent, True)

    async def _delete_prompt(self, grant: Grant) -> list[EffectResult]:
        if not grant.renewal_prompt_id:
            return []
        result = await self._effect(
            Intent.DELETE_PROMPT,
            grant,
            self._platform.delete_message,
            self._config.notification_channel_id,
            grant.renewal_prompt_id,
        )
        return [result]

    def _logged(self, grant: Grant, action: str, message: str) -> None:
        structured_log(
            log,
            logging.INFO,
            message,
            grant_id=grant.id,
            subject_id=grant.subject_id,
            role_id=grant.role_id,
            action=action,
        )

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _resolved(self, grant_id: int) -> None:
        if self._on_resolved is not None:
            self._on_resolved(grant_id)

    async def _retire(
        self, grant: Grant, state: str, action: str, expected: str | None = None
    ) -> Optional[Outcome]:
        """Deactivate *grant*, revoke its role and drop its prompt.

        Returns ``None`` when the guarded update lost to another transition.
        The revoke is still attempted when the store fails, and the store
        error is raised afterwards.
        """
        failure: PersistenceError | None = None
        updated: Grant | None = None
        try:
            updated = await self._db(
                self._store.deactivate, grant.id, state, expected=expected, action=action
            )
        except PersistenceError as exc:
            failure = exc
        if updated is None and failure is None:
            return None
        effects = [
            await self._effect(
                Intent.REVOKE_ROLE, grant, self._platform.revoke_role, grant.subject_id, grant.role_id
            )
        ]
        effects.extend(await self._delete_prompt(grant))
        if failure is not None:
            raise failure
        self._logged(updated, action, f"Grant {action}")
        if grant.renewal_state == RenewalState.AWAITING_RESPONSE:
            self._resolved(grant.id)
        self._changed()
        return Outcome(updated, True, tuple(effects))

    # ── member actions ──────────────────────────────────────────────────────
    async def claim(self, subject_id: int, display_name: str, choice_key: str) -> Outcome:
        """Give *subject_id* the role behind *choice_key* for one role duration."""
        choice = self._config.role_for(choice_key)
        if choice is None:
            raise UnknownRoleChoice(choice_key)

        async def op() -> Outcome:
            current = await self._db(self._store.find_active_by_subject, subject_id)
            if current is not None:
                raise AlreadyActive(current.role_name)
            await self._platform.grant_role(subject_id, choice.role_id)
            expires_at = self._clock() + self._config.role_duration
            try:
                latest = await self._db(self._store.find_latest_by_subject, subject_id)
                if latest is None:
                    grant = await self._db(
                        self._store.insert_grant,
                        subject_id,
                        display_name,
                        choice.role_id,
                        choice.name,
                        expires_at,
                    )
                else:
                    grant = await self._db(
                        self._store.reactivate,
                        latest.id,
                        display_name,
                        choice.role_id,
                        choice.name,
                        expires_at,
                    )
            except TimedRoleError as exc:
                await self._compensate(subject_id, choice.role_id, exc)
                raise
            self._logged(grant, GrantAction.CLAIMED, "Grant claimed")
            self._changed()
            return Outcome(grant, True, (EffectResult(Intent.GRANT_ROLE, True),))

        return await self._lanes.run(subject_id, op)

    async def _compensate(self, subject_id: int, role_id: int, cause: Exception) -> None:
        # Another writer may have recorded this exact role already; keep it then.
        if isinstance(cause, AlreadyActive):
            winner = await self._db(self._store.find_active_by_subject, subject_id)
            if winner is not None and winner.role_id == role_id:
                return
        log.warning("Claim for %s not recorded (%s); revoking role %s", subject_id, cause, role_id)
        try:
            await self._platform.revoke_role(subject_id, role_id)
        except PlatformError as exc:
            log.error("Compensating revoke for %s failed: %s", subject_id, exc)

    async def remove(self, subject_id: int) -> Outcome:
        """Drop the member's active grant, whatever its renewal state."""

        async def op() -> Outcome:
            grant = await self._db(self._store.find_active_by_subject, subject_id)
            if grant is None:
                raise NoActiveGrant()
            outcome = await self._retire(grant, RenewalState.SUPERSEDED, GrantAction.REMOVED)
            if outcome is None:
                raise NoActiveGrant()
            return outcome

        return await self._lanes.run(subject_id, op)

    async def confirm_renewal(self, grant_id: int, acting_subject_id: int) -> Outcome:
        """Extend the grant by one role duration and keep the role."""
        owner = await self._db(self._store.find_by_id, grant_id)
        if owner.subject_id != acting_subject_id:
            raise NotOwner()

        async def op() -> Outcome:
            grant = await self._db(self._store.find_by_id, grant_id)
            if not grant.awaiting_response:
                raise StaleRequest()
            new_expiry = next_expiry(grant.expires_at, self._config.role_duration, self._clock())
            updated = await self._db(self._store.extend_and_reactivate, grant_id, new_expiry)
            if updated is None:
                raise StaleRequest()
            effects = [
                await self._effect(
                    Intent.GRANT_ROLE, grant, self._platform.grant_role, grant.subject_id, grant.role_id
                )
            ]
            effects.extend(await self._delete_prompt(grant))
            self._logged(updated, GrantAction.RENEWED, "Grant renewed")
            self._resolved(grant_id)
            self._changed()
            return Outcome(updated, True, tuple(effects))

        return await self._lanes.run(owner.subject_id, op)

    async def decline_renewal(self, grant_id: int, acting_subject_id: int) -> Outcome:
        owner = await self._db(self._store.find_by_id, grant_id)
        if owner.subject_id != acting_subject_id:
            raise NotOwner()

        async def op() -> Outcome:
            grant = await self._db(self._store.find_by_id, grant_id)
            if not grant.awaiting_response:
                raise StaleRequest()
            outcome = await self._retire(
                grant,
                RenewalState.REJECTED,
                GrantAction.DECLINED,
                expected=RenewalState.AWAITING_RESPONSE,
            )
            if outcome is None:
                raise StaleRequest()
            return outcome

        return await self._lanes.run(owner.subject_id, op)

    # ── system actions ──────────────────────────────────────────────────────
    async def renewal_timeout(self, grant_id: int) -> Outcome:
        """Revoke a grant nobody answered for; a no-op once it was resolved."""

        async def op() -> Outcome:
            grant = await self._db(self._store.find_by_id, grant_id)
            if not grant.awaiting_response:
                return Outcome(grant, False)
            if grant.renewal_prompt_id is None:
                # Nobody was asked yet; the scanner releases this claim instead.
                log.warning("Grant %s has no renewal prompt; not timing it out", grant_id)
                return Outcome(grant, False)
            outcome = await self._retire(
                grant,
                RenewalState.REJECTED,
                GrantAction.TIMED_OUT,
                expected=RenewalState.AWAITING_RESPONSE,
            )
            return outcome or Outcome(grant, False)

        return await self._in_lane(grant_id, op)

    async def expire(self, grant_id: int) -> Outcome:
        """Claim an expired grant for a renewal prompt.

        ``changed`` is False when the grant was not expired and pending, which
        covers a second scan racing the first one.
        """

        async def op() -> Outcome:
            now = self._clock()
            claimed = await self._db(
                self._store.claim_expired, grant_id, now, now + self._config.renewal_window
            )
            if claimed is None:
                return Outcome(None, False)
            self._logged(claimed, "expired", "Grant expired; awaiting renewal")
            return Outcome(claimed, True)

        return await self._in_lane(grant_id, op)

    async def attach_prompt(self, grant_id: int, prompt_id: int) -> Outcome:
        """Record the posted renewal prompt; unchanged if the grant moved on."""

        async def op() -> Outcome:
            grant = await self._db(self._store.set_renewal_prompt, grant_id, prompt_id)
            if grant is None:
                return Outcome(None, False)
            self._logged(grant, GrantAction.PROMPTED, "Renewal prompt posted")
            return Outcome(grant, True)

        return await self._in_lane(grant_id, op)

    async def release(self, grant_id: int) -> Outcome:
        """Put a claimed grant back to pending so the next scan retries it."""

        async def op() -> Outcome:
            grant = await self._db(self._store.release_claim, grant_id)
            if grant is None:
                return Outcome(None, False)
            self._logged(grant, GrantAction.PROMPT_RELEASED, "Renewal prompt released")
            return Outcome(grant, True)

        return await self._in_lane(grant_id, op)


__all__ = ["EffectResult", "Intent", "LifecycleEngine", "Outcome", "next_expiry"]
