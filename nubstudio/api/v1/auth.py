from fastapi import APIRouter, Depends, Request, status

from nubstudio.api.deps import CurrentSession, get_auth_service, get_current_session
from nubstudio.models import TwoFactorMethod, User
from nubstudio.schemas.auth import (
    EmailCodeIn,
    EmailIn,
    Login2FAIn,
    LoginIn,
    MessageOut,
    RegisteredUserOut,
    RegisterIn,
    RegisterOut,
    TokenOut,
    TwoFactorChallengeOut,
    UsuarioOut,
)
from nubstudio.services.auth import AuthenticatedSession, AuthService
from nubstudio.services.sessions import ClientMeta

router = APIRouter(prefix="/auth", tags=["auth"])

METODO_2FA_LABELS = {TwoFactorMethod.totp: "TOTP", TwoFactorMethod.email_otp: "EMAIL"}


def usuario_out(user: User) -> UsuarioOut:
    return UsuarioOut(id=user.id, nombre=user.nombre, correo=user.email, estado=user.status)


def token_out(result: AuthenticatedSession, message: str = "Inicio de sesión exitoso") -> TokenOut:
    return TokenOut(message=message, access_token=result.token.token, usuario=usuario_out(result.user))


# ---------- registro ----------
@router.post("/register", response_model=RegisterOut, status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterIn, auth: AuthService = Depends(get_auth_service)):
    user = await auth.register(payload.nombre, payload.correo, payload.contrasena)
    return RegisterOut(
        message="Registro exitoso. Revisa tu correo para verificar tu cuenta",
        user=RegisteredUserOut(id=user.id, nombre=user.nombre, correo=user.email),
    )


@router.post("/verify-email")
async def verify_email(payload: EmailCodeIn, auth: AuthService = Depends(get_auth_service)):
    await auth.verify_email(payload.correo, payload.codigo)
    return {"message": "Cuenta verificada exitosamente. Ya puedes iniciar sesión.", "verified": True}


@router.post("/resend-code", response_model=MessageOut)
async def resend_code(payload: EmailIn, auth: AuthService = Depends(get_auth_service)):
    await auth.resend_verification(payload.correo)
    return MessageOut(message="Código reenviado exitosamente")


# ---------- login ----------
@router.post("/login", response_model=TokenOut | TwoFactorChallengeOut)
async def login(payload: LoginIn, request: Request, auth: AuthService = Depends(get_auth_service)):
    result = await auth.login(payload.correo, payload.contrasena, ClientMeta.from_request(request))
    if isinstance(result, AuthenticatedSession):
        return token_out(result)

    if result.method is TwoFactorMethod.email_otp:
        message = "Se envió un código de acceso a tu correo"
    else:
        message = "Credenciales correctas. Ingresa el código de tu app autenticadora"
    return TwoFactorChallengeOut(
        message=message,
        metodo_2fa=METODO_2FA_LABELS[result.method],
        correo=result.user.email,
    )


@router.post("/login-2fa", response_model=TokenOut)
async def login_2fa(payload: Login2FAIn, request: Request, auth: AuthService = Depends(get_auth_service)):
    result = await auth.login_totp(payload.correo, payload.codigo2fa, ClientMeta.from_request(request))
    return token_out(result)


@router.post("/verify-login-code", response_model=TokenOut)
async def verify_login_code(payload: EmailCodeIn, request: Request, auth: AuthService = Depends(get_auth_service)):
    result = await auth.login_email_code(payload.correo, payload.codigo, ClientMeta.from_request(request))
    return token_out(result, "Verificación exitosa. Sesión iniciada.")


# ---------- sesión ----------
@router.post("/logout", response_model=MessageOut)
async def logout(
    current: CurrentSession = Depends(get_current_session),
    auth: AuthService = Depends(get_auth_service),
):
    await auth.logout(current.user.id, current.raw_token)
    return MessageOut(message="Sesión cerrada correctamente")


@router.post("/close-other-sessions")
async def close_other_sessions(
    current: CurrentSession = Depends(get_current_session),
    auth: AuthService = Depends(get_auth_service),
):
    count = await auth.close_other_sessions(current.user.id, current.raw_token)
    return {
        "message": f"Se cerraron {count} sesión(es) en otros dispositivos",
        "sessionsRevoked": count,
    }


@router.get("/check-session")
async def check_session(current: CurrentSession = Depends(get_current_session)):
    return {"valid": True, "message": "Sesión válida"}


@router.get("/me", response_model=UsuarioOut)
async def me(current: CurrentSession = Depends(get_current_session)):
    return usuario_out(current.user)
