import asyncio
import time
from datetime import timedelta

import pytest
from sqlalchemy import select

from nubstudio.core.errors import AuthenticationError, LockedError, ValidationError
from nubstudio.models import RecoveryCode
from nubstudio.repositories import UserRepository
from nubstudio.services.lockout import LOGIN_POLICY, TWO_FACTOR_POLICY, LockoutEngine
from nubstudio.services.mail import drain_background
from nubstudio.services.sessions import ClientMeta

from conftest import PASSWORD

NEW_PASSWORD = "Lienzo#2025nuevo"
META = ClientMeta()


async def test_unknown_email_gets_the_same_response(recovery_service, make_user, mailer):
    await make_user()
    known = await recovery_service.request("ana@galeria.mx")
    unknown = await recovery_service.request("nadie@galeria.mx")
    await drain_background()

    assert known.keys() == unknown.keys()
    assert known["message"] == unknown["message"]
    assert [to for to, _, _ in mailer.codes] == ["ana@galeria.mx"]


async def test_unknown_email_does_no_bookkeeping(recovery_service, db):
    for _ in range(5):
        await recovery_service.request("nadie@galeria.mx")
    assert (await db.execute(select(RecoveryCode))).scalars().all() == []


async def test_code_is_stored_as_fingerprint(recovery_service, make_user, mailer, db):
    await make_user()
    await recovery_service.request("ana@galeria.mx")
    await drain_background()
    raw = mailer.last_code("ana@galeria.mx", "recovery")

    stored = (await db.execute(select(RecoveryCode))).scalar_one()
    assert stored.code_hash != raw
    assert len(stored.code_hash) == 64


async def test_new_request_invalidates_previous_code(recovery_service, make_user, mailer):
    await make_user()
    await recovery_service.request("ana@galeria.mx")
    await drain_background()
    first = mailer.last_code("ana@galeria.mx", "recovery")
    await recovery_service.request("ana@galeria.mx")
    await drain_background()
    second = mailer.last_code("ana@galeria.mx", "recovery")

    if first != second:
        assert not await recovery_service.validate("ana@galeria.mx", first)
    assert await recovery_service.validate("ana@galeria.mx", second)


async def test_fourth_request_in_window_is_locked(recovery_service, make_user):
    await make_user()
    for _ in range(3):
        await recovery_service.request("ana@galeria.mx")

    with pytest.raises(LockedError) as exc:
        await recovery_service.request("ana@galeria.mx")
    assert exc.value.status_code == 429
    assert exc.value.to_body()["minutesBlocked"] == 15

    with pytest.raises(LockedError) as exc:
        await recovery_service.request("ana@galeria.mx")
    assert exc.value.to_body()["minutesRemaining"] == 15


async def test_mail_failure_is_not_surfaced(recovery_service, make_user, mailer):
    await make_user()
    mailer.fail = True
    response = await recovery_service.request("ana@galeria.mx")
    assert response["message"].startswith("Si el correo existe")
    await drain_background()
    assert mailer.codes == []


async def test_slow_mail_does_not_delay_known_address(recovery_service, make_user, mailer, monkeypatch):
    await make_user()
    sent = []

    async def slow_send(to, code, purpose):
        await asyncio.sleep(0.5)
        sent.append(to)

    monkeypatch.setattr(mailer, "send_code", slow_send)

    started = time.perf_counter()
    await recovery_service.request("ana@galeria.mx")
    known = time.perf_counter() - started

    started = time.perf_counter()
    await recovery_service.request("nadie@galeria.mx")
    unknown = time.perf_counter() - started

    assert sent == []
    assert abs(known - unknown) < 0.1

    await drain_background()
    assert sent == ["ana@galeria.mx"]


async def test_validate_is_read_only_and_respects_expiry(recovery_service, make_user, mailer, clock):
    await make_user()
    await recovery_service.request("ana@galeria.mx")
    await drain_background()
    raw = mailer.last_code("ana@galeria.mx", "recovery")

    assert await recovery_service.validate("ana@galeria.mx", raw)
    assert await recovery_service.validate("ana@galeria.mx", raw)
    assert not await recovery_service.validate("nadie@galeria.mx", raw)

    clock.advance(minutes=15, seconds=1)
    assert not await recovery_service.validate("ana@galeria.mx", raw)


async def test_reset_rejects_current_password(recovery_service, make_user, mailer, hasher):
    user = await make_user()
    user_id = user.id
    await recovery_service.request("ana@galeria.mx")
    await drain_background()
    raw = mailer.last_code("ana@galeria.mx", "recovery")

    with pytest.raises(ValidationError):
        await recovery_service.reset("ana@galeria.mx", raw, PASSWORD)

    # nada cambió: el código sigue sirviendo
    assert await recovery_service.validate("ana@galeria.mx", raw)
    fresh = await UserRepository(recovery_service.db).get_by_id(user_id)
    assert hasher.verify(PASSWORD, fresh.hashed_password)


async def test_reset_with_bad_code(recovery_service, make_user):
    await make_user()
    with pytest.raises(AuthenticationError):
        await recovery_service.reset("ana@galeria.mx", "123456", NEW_PASSWORD)


async def test_successful_reset(recovery_service, auth_service, make_user, mailer, registry, hasher, clock, db):
    user = await make_user()
    users = UserRepository(db)
    login_lockout = LockoutEngine(users, LOGIN_POLICY, clock)
    second_step = LockoutEngine(users, TWO_FACTOR_POLICY, clock)
    for _ in range(3):
        await login_lockout.register_failure(user)
        await second_step.register_failure(user)
    await registry.save(user.id, "old-session", META, clock.now + timedelta(hours=1))
    await db.commit()

    await recovery_service.request("ana@galeria.mx")
    await drain_background()
    raw = mailer.last_code("ana@galeria.mx", "recovery")
    await recovery_service.reset("ana@galeria.mx", raw, NEW_PASSWORD)

    fresh = await users.get_by_id(user.id)
    assert hasher.verify(NEW_PASSWORD, fresh.hashed_password)
    assert fresh.failed_login_count == 0
    assert fresh.locked_until is None
    assert fresh.recovery_attempts == 0
    assert fresh.failed_2fa_count == 0
    assert fresh.two_factor_locked_until is None
    assert not await registry.is_valid("old-session")
    assert not await recovery_service.validate("ana@galeria.mx", raw)

    # la cuenta desbloqueada entra con la nueva contraseña
    await auth_service.login("ana@galeria.mx", NEW_PASSWORD, META)


async def test_reset_rolls_back_on_failure(recovery_service, make_user, mailer, hasher, monkeypatch):
    user = await make_user()
    user_id = user.id
    await recovery_service.request("ana@galeria.mx")
    await drain_background()
    raw = mailer.last_code("ana@galeria.mx", "recovery")

    async def broken(_user_id):
        raise RuntimeError("fallo a mitad de la transacción")

    monkeypatch.setattr(recovery_service.sessions, "revoke_all", broken)
    with pytest.raises(RuntimeError):
        await recovery_service.reset("ana@galeria.mx", raw, NEW_PASSWORD)

    fresh = await UserRepository(recovery_service.db).get_by_id(user_id)
    assert hasher.verify(PASSWORD, fresh.hashed_password)
    assert await recovery_service.validate("ana@galeria.mx", raw)


async def test_cleanup_removes_expired_and_used_codes(recovery_service, make_user, mailer, clock):
    await make_user()
    await recovery_service.request("ana@galeria.mx")
    await recovery_service.request("ana@galeria.mx")  # el primero queda usado
    clock.advance(minutes=20)
    assert await recovery_service.cleanup_expired_codes() == 2
