"""Progressive lockout shared by the login, second-step and recovery flows.

Each flow keeps its own counters on the user row (``LockoutScope``). A lock
lasts ``schedule[min(total_lockouts, len(schedule) - 1)]`` minutes, so a
single account walks 15 → 30 → 60 → 60 … for login and for the second
login step, and 15 → 30 → 60 → 120 … for recovery. Expired locks are
cleared lazily on the next check; nothing depends on a background job.

The engine only stages UPDATEs on the caller's session; the caller commits.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from nubstudio.core.logging import get_logger, security_event
from nubstudio.core.security import utcnow
from nubstudio.models import User
from nubstudio.repositories import UserRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutScope:
    """Column names holding one flow's counters."""

    counter: str
    locked_until: str
    total_lockouts: str
    last_attempt: str


LOGIN_SCOPE = LockoutScope("failed_login_count", "locked_until", "total_lockouts", "last_failed_login_at")
RECOVERY_SCOPE = LockoutScope(
    "recovery_attempts", "recovery_locked_until", "recovery_total_lockouts", "last_recovery_attempt_at"
)
TWO_FACTOR_SCOPE = LockoutScope(
    "failed_2fa_count", "two_factor_locked_until", "two_factor_total_lockouts", "last_failed_2fa_at"
)


@dataclass(frozen=True)
class LockoutPolicy:
    name: str
    scope: LockoutScope
    threshold: int
    schedule_minutes: tuple[int, ...]
    window: timedelta | None = None

    def lock_minutes(self, total_lockouts: int) -> int:
        index = min(max(total_lockouts, 0), len(self.schedule_minutes) - 1)
        return self.schedule_minutes[index]


LOGIN_POLICY = LockoutPolicy("login", LOGIN_SCOPE, threshold=3, schedule_minutes=(15, 30, 60))
# un password correcto no limpia este contador; solo un segundo paso válido o un reset
TWO_FACTOR_POLICY = LockoutPolicy("2fa", TWO_FACTOR_SCOPE, threshold=3, schedule_minutes=(15, 30, 60))
RECOVERY_POLICY = LockoutPolicy(
    "recovery", RECOVERY_SCOPE, threshold=3, schedule_minutes=(15, 30, 60, 120),
    window=timedelta(minutes=15),
)


class AttemptOutcome(str, enum.Enum):
    success = "success"
    failure = "failure"


@dataclass
class LockoutDecision:
    allowed: bool
    attempts: int = 0
    attempts_remaining: int | None = None
    locked_until: datetime | None = None
    minutes_remaining: int | None = None
    minutes_blocked: int | None = None
    just_locked: bool = False


class LockoutEngine:
    def __init__(
        self,
        users: UserRepository,
        policy: LockoutPolicy,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.policy = policy
        self.clock = clock

    # ---------- lectura ----------
    async def check(self, user: User) -> LockoutDecision:
        """Lazy-clear an expired lock (and a stale window), then report the state."""
        now = self.clock()
        scope = self.policy.scope

        locked_until: datetime | None = getattr(user, scope.locked_until)
        if locked_until is not None:
            if now < locked_until:
                return self._blocked(user, locked_until, now)
            await self.users.update_fields(user, **{scope.locked_until: None, scope.counter: 0})
            security_event(logger, "AUTO_UNLOCK", user.id, flow=self.policy.name)

        count = getattr(user, scope.counter) or 0
        if self.policy.window is not None and count > 0:
            last: datetime | None = getattr(user, scope.last_attempt)
            if last is None or last < now - self.policy.window:
                await self.users.update_fields(user, **{scope.counter: 0})
                count = 0

        return LockoutDecision(
            allowed=True,
            attempts=count,
            attempts_remaining=max(self.policy.threshold - count, 0),
        )

    def _blocked(self, user: User, locked_until: datetime, now: datetime) -> LockoutDecision:
        remaining = math.ceil((locked_until - now).total_seconds() / 60)
        total = getattr(user, self.policy.scope.total_lockouts) or 0
        return LockoutDecision(
            allowed=False,
            attempts=getattr(user, self.policy.scope.counter) or 0,
            attempts_remaining=0,
            locked_until=locked_until,
            minutes_remaining=max(remaining, 1),
            # duración del bloqueo vigente (el último escalón aplicado)
            minutes_blocked=self.policy.lock_minutes(total - 1),
        )

    # ---------- escritura ----------
    async def record_attempt(self, user: User, outcome: AttemptOutcome) -> LockoutDecision:
        """Check the lock, then count the attempt.

        An attempt made while locked is rejected without consuming a slot.
        """
        decision = await self.check(user)
        if not decision.allowed:
            return decision
        if outcome is AttemptOutcome.success:
            await self.record_success(user)
            return LockoutDecision(allowed=True, attempts=0, attempts_remaining=self.policy.threshold)
        return await self.register_failure(user)

    async def register_failure(self, user: User) -> LockoutDecision:
        now = self.clock()
        scope = self.policy.scope
        count = await self.users.increment(user, scope.counter, **{scope.last_attempt: now})
        if count >= self.policy.threshold:
            minutes, until = await self._engage(user, now)
            return LockoutDecision(
                allowed=True,
                attempts=count,
                attempts_remaining=0,
                locked_until=until,
                minutes_remaining=minutes,
                minutes_blocked=minutes,
                just_locked=True,
            )
        return LockoutDecision(
            allowed=True,
            attempts=count,
            attempts_remaining=self.policy.threshold - count,
        )

    async def consume(self, user: User) -> LockoutDecision:
        """Take one slot for a rate-limited action (recovery requests).

        When the window already holds ``threshold`` attempts the lock is
        engaged and the action is denied.
        """
        now = self.clock()
        scope = self.policy.scope
        count = getattr(user, scope.counter) or 0
        if count >= self.policy.threshold:
            minutes, until = await self._engage(user, now, attempts=count + 1)
            return LockoutDecision(
                allowed=False,
                attempts=count + 1,
                attempts_remaining=0,
                locked_until=until,
                minutes_remaining=minutes,
                minutes_blocked=minutes,
                just_locked=True,
            )
        new_count = await self.users.increment(user, scope.counter, **{scope.last_attempt: now})
        return LockoutDecision(
            allowed=True,
            attempts=new_count,
            attempts_remaining=self.policy.threshold - new_count,
        )

    async def _engage(self, user: User, now: datetime, attempts: int | None = None) -> tuple[int, datetime]:
        scope = self.policy.scope
        total = getattr(user, scope.total_lockouts) or 0
        minutes = self.policy.lock_minutes(total)
        until = now + timedelta(minutes=minutes)
        values = {scope.locked_until: until, scope.last_attempt: now}
        if attempts is not None:
            values[scope.counter] = attempts
        await self.users.increment(user, scope.total_lockouts, **values)
        security_event(
            logger, "ACCOUNT_LOCKED", user.id,
            flow=self.policy.name, minutes=minutes, total_lockouts=total + 1,
        )
        return minutes, until

    async def record_success(self, user: User) -> None:
        await self.users.update_fields(user, **{self.policy.scope.counter: 0})

    async def reset(self, user: User) -> None:
        """Full reset of this scope (total_lockouts is never decremented)."""
        scope = self.policy.scope
        await self.users.update_fields(
            user, **{scope.counter: 0, scope.locked_until: None, scope.last_attempt: None}
        )
