from datetime import timezone

import pyotp

from nubstudio.models import AccountStatus, CodePurpose
from nubstudio.repositories import UserRepository
from nubstudio.services.mail import drain_background

from conftest import PASSWORD

EMAIL = "ana@galeria.mx"


async def _register_and_verify(client, mailer, email=EMAIL):
    resp = await client.post("/auth/register", json={"nombre": "Ana Torres", "correo": email, "contrasena": PASSWORD})
    assert resp.status_code == 201, resp.text
    code = mailer.last_code(email, CodePurpose.registration.value)
    resp = await client.post("/auth/verify-email", json={"correo": email, "codigo": code})
    assert resp.status_code == 200, resp.text


async def _login(client, email=EMAIL, password=PASSWORD):
    return await client.post("/auth/login", json={"correo": email, "contrasena": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok"}
    assert resp.headers["X-Request-ID"]


async def test_register_response_shape(client, mailer):
    resp = await client.post(
        "/auth/register", json={"nombre": "Ana Torres", "correo": EMAIL, "contrasena": PASSWORD}
    )
    body = resp.json()
    assert resp.status_code == 201
    assert body["requiresVerification"] is True
    assert body["user"]["correo"] == EMAIL
    assert "hashed_password" not in str(body)

    dup = await client.post("/auth/register", json={"nombre": "Ana Torres", "correo": EMAIL, "contrasena": PASSWORD})
    assert dup.status_code == 400
    assert dup.json()["message"] == "El correo ya está registrado."


async def test_weak_password_is_rejected_without_echoing_it(client):
    resp = await client.post("/auth/register", json={"nombre": "Ana", "correo": EMAIL, "contrasena": "password"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["errors"][0]["field"] == "contrasena"
    assert "password" not in [e.get("input") for e in body["errors"]]


async def test_login_before_verification_is_forbidden(client, mailer):
    await client.post("/auth/register", json={"nombre": "Ana Torres", "correo": EMAIL, "contrasena": PASSWORD})
    resp = await _login(client)
    assert resp.status_code == 403
    assert resp.json()["requiresVerification"] is True


async def test_login_me_logout(client, mailer):
    await _register_and_verify(client, mailer)

    resp = await _login(client)
    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "bearer"
    assert body["usuario"]["estado"] == "active"
    token = body["access_token"]

    me = await client.get("/auth/me", headers=_bearer(token))
    assert me.status_code == 200
    assert me.json()["correo"] == EMAIL

    check = await client.get("/auth/check-session", headers=_bearer(token))
    assert check.json() == {"valid": True, "message": "Sesión válida"}

    out = await client.post("/auth/logout", headers=_bearer(token))
    assert out.status_code == 200

    # firma válida pero ya no está en la whitelist
    revoked = await client.get("/auth/me", headers=_bearer(token))
    assert revoked.status_code == 401
    assert revoked.json()["code"] == "SESSION_REVOKED"


async def test_missing_and_invalid_tokens(client):
    missing = await client.get("/auth/me")
    assert missing.status_code == 401
    assert missing.json()["code"] == "NO_TOKEN"

    bad = await client.get("/auth/me", headers=_bearer("no.es.valido"))
    assert bad.status_code == 401
    assert bad.json()["code"] == "INVALID_TOKEN"


async def test_lockout_over_http(client, mailer, clock):
    await _register_and_verify(client, mailer)

    for expected in (2, 1, 0):
        resp = await _login(client, password="Incorrecta#999")
        assert resp.status_code == 401
        assert resp.json()["attemptsRemaining"] == expected
        assert resp.json()["totalAttempts"] == 3

    locked = await _login(client)
    assert locked.status_code == 403
    body = locked.json()
    assert body["blocked"] is True
    assert body["minutesBlocked"] == 15
    assert 1 <= body["minutesRemaining"] <= 15
    assert "unlockTime" in body

    clock.advance(minutes=16)
    assert (await _login(client)).status_code == 200


async def test_close_other_sessions(client, mailer):
    await _register_and_verify(client, mailer)
    tokens = [(await _login(client)).json()["access_token"] for _ in range(3)]

    resp = await client.post("/auth/close-other-sessions", headers=_bearer(tokens[0]))
    assert resp.json()["sessionsRevoked"] == 2
    assert (await client.get("/auth/me", headers=_bearer(tokens[0]))).status_code == 200
    assert (await client.get("/auth/me", headers=_bearer(tokens[1]))).status_code == 401


async def test_email_2fa_over_http(client, mailer):
    await _register_and_verify(client, mailer)
    token = (await _login(client)).json()["access_token"]

    await client.post("/2fa/email/configure", headers=_bearer(token))
    code = mailer.last_code(EMAIL, CodePurpose.enable_email_2fa.value)
    resp = await client.post("/2fa/email/verify", json={"codigo": code}, headers=_bearer(token))
    assert resp.status_code == 200

    challenge = await _login(client)
    assert challenge.json()["requires2FA"] is True
    assert challenge.json()["metodo_2fa"] == "EMAIL"
    assert "access_token" not in challenge.json()

    login_code = mailer.last_code(EMAIL, CodePurpose.login_2fa.value)
    resp = await client.post("/auth/verify-login-code", json={"correo": EMAIL, "codigo": login_code})
    assert resp.status_code == 200
    assert resp.json()["access_token"]

    replay = await client.post("/auth/verify-login-code", json={"correo": EMAIL, "codigo": login_code})
    assert replay.status_code == 401


async def test_totp_2fa_over_http(client, mailer, clock):
    await _register_and_verify(client, mailer)
    token = (await _login(client)).json()["access_token"]

    setup = await client.post("/2fa/setup-totp", headers=_bearer(token))
    assert setup.status_code == 200
    secret = setup.json()["secret"]
    code = pyotp.TOTP(secret).at(clock.now.replace(tzinfo=timezone.utc))

    resp = await client.post("/2fa/verify-totp", json={"codigo": code}, headers=_bearer(token))
    assert resp.status_code == 200

    challenge = await _login(client)
    assert challenge.json()["metodo_2fa"] == "TOTP"
    resp = await client.post("/auth/login-2fa", json={"correo": EMAIL, "codigo2fa": code})
    assert resp.status_code == 200

    disable = await client.post(
        "/2fa/disable", json={"contrasena": PASSWORD, "codigo": code}, headers=_bearer(token)
    )
    assert disable.status_code == 200
    assert "access_token" in (await _login(client)).json()


async def test_recovery_over_http(client, mailer):
    await _register_and_verify(client, mailer)
    token = (await _login(client)).json()["access_token"]

    known = await client.post("/auth/request-recovery", json={"correo": EMAIL})
    unknown = await client.post("/auth/request-recovery", json={"correo": "nadie@galeria.mx"})
    assert known.status_code == unknown.status_code == 200
    assert known.json().keys() == unknown.json().keys()
    assert known.json()["message"] == unknown.json()["message"]

    await drain_background()
    code = mailer.last_code(EMAIL, "recovery")
    wrong = "000000" if code != "000000" else "111111"
    invalid = await client.post("/auth/validate-recovery", json={"correo": EMAIL, "codigo": wrong})
    assert invalid.status_code == 401
    assert invalid.json()["valid"] is False

    valid = await client.post("/auth/validate-recovery", json={"correo": EMAIL, "codigo": code})
    assert valid.json()["valid"] is True

    same = await client.post(
        "/auth/reset-password", json={"correo": EMAIL, "codigo": code, "nuevaContrasena": PASSWORD}
    )
    assert same.status_code == 400

    reset = await client.post(
        "/auth/reset-password", json={"correo": EMAIL, "codigo": code, "nuevaContrasena": "Lienzo#2025nuevo"}
    )
    assert reset.status_code == 200
    assert reset.json()["success"] is True

    # las sesiones previas quedan revocadas
    assert (await client.get("/auth/me", headers=_bearer(token))).status_code == 401
    assert (await _login(client, password="Lienzo#2025nuevo")).status_code == 200


async def test_recovery_lock_returns_429(client, mailer):
    await _register_and_verify(client, mailer)
    for _ in range(3):
        assert (await client.post("/auth/request-recovery", json={"correo": EMAIL})).status_code == 200
    locked = await client.post("/auth/request-recovery", json={"correo": EMAIL})
    assert locked.status_code == 429
    assert locked.json()["blocked"] is True


async def test_suspended_account_token_is_rejected(app, client, mailer):
    await _register_and_verify(client, mailer)
    token = (await _login(client)).json()["access_token"]
    assert (await client.get("/auth/me", headers=_bearer(token))).status_code == 200

    async with app.state.db.sessionmaker() as db:
        users = UserRepository(db)
        await users.update_fields(await users.get_by_email(EMAIL), status=AccountStatus.suspended.value)
        await db.commit()

    resp = await client.get("/auth/me", headers=_bearer(token))
    assert resp.status_code == 403
    assert resp.json()["code"] == "USER_INACTIVE"
