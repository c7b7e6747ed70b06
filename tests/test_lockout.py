from datetime import timedelta

from nubstudio.repositories import UserRepository
from nubstudio.services.lockout import (
    LOGIN_POLICY,
    RECOVERY_POLICY,
    TWO_FACTOR_POLICY,
    AttemptOutcome,
    LockoutEngine,
)


def test_lock_schedules():
    assert [LOGIN_POLICY.lock_minutes(i) for i in range(5)] == [15, 30, 60, 60, 60]
    assert [RECOVERY_POLICY.lock_minutes(i) for i in range(6)] == [15, 30, 60, 120, 120, 120]
    assert [TWO_FACTOR_POLICY.lock_minutes(i) for i in range(4)] == [15, 30, 60, 60]
    assert TWO_FACTOR_POLICY.scope.counter != LOGIN_POLICY.scope.counter


async def test_third_failure_locks_and_fourth_attempt_is_rejected(db, make_user, clock):
    user = await make_user()
    engine = LockoutEngine(UserRepository(db), LOGIN_POLICY, clock)

    first = await engine.record_attempt(user, AttemptOutcome.failure)
    second = await engine.record_attempt(user, AttemptOutcome.failure)
    third = await engine.record_attempt(user, AttemptOutcome.failure)
    await db.commit()

    assert (first.attempts_remaining, second.attempts_remaining) == (2, 1)
    assert third.just_locked and third.attempts_remaining == 0
    assert third.locked_until == clock.now + timedelta(minutes=15)

    # aun con la contraseña correcta
    fourth = await engine.record_attempt(user, AttemptOutcome.success)
    assert not fourth.allowed
    assert fourth.minutes_blocked == 15
    assert fourth.minutes_remaining == 15
    assert user.failed_login_count == 3
    assert user.total_lockouts == 1


async def test_counters_are_persisted(db, database, make_user, clock):
    user = await make_user()
    engine = LockoutEngine(UserRepository(db), LOGIN_POLICY, clock)
    await engine.register_failure(user)
    await engine.register_failure(user)
    await db.commit()

    async with database.sessionmaker() as other:
        fresh = await UserRepository(other).get_by_id(user.id)
        assert fresh.failed_login_count == 2
        assert fresh.last_failed_login_at == clock.now


async def test_expired_lock_is_cleared_on_next_check(db, make_user, clock):
    user = await make_user()
    engine = LockoutEngine(UserRepository(db), LOGIN_POLICY, clock)
    for _ in range(3):
        await engine.register_failure(user)

    clock.advance(minutes=14, seconds=30)
    still_locked = await engine.check(user)
    assert not still_locked.allowed
    assert still_locked.minutes_remaining == 1

    clock.advance(minutes=1)
    decision = await engine.check(user)
    assert decision.allowed
    assert decision.attempts == 0
    assert user.locked_until is None
    assert user.failed_login_count == 0
    assert user.total_lockouts == 1


async def test_success_resets_failure_counter(db, make_user, clock):
    user = await make_user()
    engine = LockoutEngine(UserRepository(db), LOGIN_POLICY, clock)
    await engine.record_attempt(user, AttemptOutcome.failure)
    await engine.record_attempt(user, AttemptOutcome.failure)

    decision = await engine.record_attempt(user, AttemptOutcome.success)
    assert decision.allowed
    assert user.failed_login_count == 0


async def test_login_lock_durations_escalate(db, make_user, clock):
    user = await make_user()
    engine = LockoutEngine(UserRepository(db), LOGIN_POLICY, clock)

    durations = []
    for _ in range(5):
        for _ in range(3):
            decision = await engine.record_attempt(user, AttemptOutcome.failure)
        assert decision.just_locked
        durations.append(decision.minutes_blocked)
        clock.advance(minutes=decision.minutes_blocked, seconds=1)

    assert durations == [15, 30, 60, 60, 60]


async def test_recovery_lock_durations_escalate(db, make_user, clock):
    user = await make_user()
    engine = LockoutEngine(UserRepository(db), RECOVERY_POLICY, clock)

    durations = []
    for _ in range(5):
        assert (await engine.check(user)).allowed
        for _ in range(3):
            assert (await engine.consume(user)).allowed
        denied = await engine.consume(user)
        assert not denied.allowed
        durations.append(denied.minutes_blocked)
        clock.advance(minutes=denied.minutes_blocked, seconds=1)

    assert durations == [15, 30, 60, 120, 120]


async def test_recovery_window_resets_stale_counter(db, make_user, clock):
    user = await make_user()
    engine = LockoutEngine(UserRepository(db), RECOVERY_POLICY, clock)
    await engine.consume(user)
    await engine.consume(user)

    clock.advance(minutes=16)
    decision = await engine.check(user)
    assert decision.allowed
    assert decision.attempts == 0
    assert user.recovery_attempts == 0


async def test_login_and_recovery_counters_are_independent(db, make_user, clock):
    user = await make_user()
    users = UserRepository(db)
    login = LockoutEngine(users, LOGIN_POLICY, clock)
    recovery = LockoutEngine(users, RECOVERY_POLICY, clock)

    for _ in range(3):
        await login.register_failure(user)

    assert not (await login.check(user)).allowed
    assert (await recovery.check(user)).allowed
    assert user.recovery_attempts == 0
