import asyncio

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from nubstudio.core.errors import InternalError, LockedError
from nubstudio.core.logging import REDACTED, mask_email, redact_secrets
from nubstudio.core.retry import is_transient, with_retry


def test_redaction_covers_passwords_codes_tokens_and_secrets():
    event = {
        "event": "login",
        "contrasena": "Galeria#2024x",
        "codigo": "123456",
        "access_token": "eyJ...",
        "totp_secret": "ABCDEF",
        "status_code": 401,
        "nested": {"password": "x", "user_id": "u1"},
    }
    out = redact_secrets(None, "info", event)

    assert out["contrasena"] == REDACTED
    assert out["codigo"] == REDACTED
    assert out["access_token"] == REDACTED
    assert out["totp_secret"] == REDACTED
    assert out["status_code"] == 401
    assert out["nested"] == {"password": REDACTED, "user_id": "u1"}


def test_mask_email():
    assert mask_email("ana.torres@galeria.mx") == "an***es@g***.mx"
    assert mask_email("ana@galeria.mx") == "***@g***.mx"
    assert mask_email(None) == "correo oculto"


def test_locked_error_body():
    from datetime import datetime

    err = LockedError("bloqueada", minutes_remaining=3, minutes_blocked=15, unlock_at=datetime(2026, 1, 1, 9, 5))
    assert err.to_body() == {
        "message": "bloqueada",
        "blocked": True,
        "minutesRemaining": 3,
        "minutesBlocked": 15,
        "unlockTime": "09:05",
    }
    assert LockedError(status_code=429).status_code == 429


def _operational():
    return OperationalError("SELECT 1", {}, Exception("Lost connection"))


def test_is_transient():
    assert is_transient(_operational())
    assert is_transient(asyncio.TimeoutError())
    assert not is_transient(IntegrityError("INSERT", {}, Exception("dup")))
    assert not is_transient(ValueError())


async def test_retry_recovers_from_transient_errors():
    calls = []
    rollbacks = []

    async def operation():
        calls.append(1)
        if len(calls) < 3:
            raise _operational()
        return "ok"

    async def on_retry():
        rollbacks.append(1)

    result = await with_retry(operation, base_delay=0, on_retry=on_retry)
    assert result == "ok"
    assert len(calls) == 3
    assert len(rollbacks) == 2


async def test_retry_gives_up_with_internal_error():
    async def operation():
        raise _operational()

    with pytest.raises(InternalError):
        await with_retry(operation, attempts=2, base_delay=0)


async def test_retry_does_not_retry_domain_errors():
    calls = []

    async def operation():
        calls.append(1)
        raise LockedError()

    with pytest.raises(LockedError):
        await with_retry(operation, base_delay=0)
    assert len(calls) == 1
