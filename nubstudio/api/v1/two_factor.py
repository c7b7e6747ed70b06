from fastapi import APIRouter, Depends

from nubstudio.api.deps import get_current_user, get_enrollment_service
from nubstudio.models import User
from nubstudio.schemas.auth import CodeIn, MessageOut, TwoFADisableIn, TwoFASetupOut
from nubstudio.services.two_factor import TwoFactorEnrollment

router = APIRouter(prefix="/2fa", tags=["2fa"])


@router.post("/setup-totp", response_model=TwoFASetupOut)
async def setup_totp(
    current_user: User = Depends(get_current_user),
    enrollment: TwoFactorEnrollment = Depends(get_enrollment_service),
):
    # el secreto solo sale en esta respuesta
    result = await enrollment.setup_totp(current_user)
    return TwoFASetupOut(
        message="Escanea el código QR con tu app autenticadora y confirma con un código",
        secret=result.secret,
        otpauth_url=result.otpauth_url,
        qr_base64_png=result.qr_base64_png,
    )


@router.post("/verify-totp", response_model=MessageOut)
async def verify_totp(
    body: CodeIn,
    current_user: User = Depends(get_current_user),
    enrollment: TwoFactorEnrollment = Depends(get_enrollment_service),
):
    await enrollment.verify_totp(current_user, body.codigo)
    return MessageOut(message="2FA con app autenticadora activado")


@router.post("/email/configure", response_model=MessageOut)
async def configure_email(
    current_user: User = Depends(get_current_user),
    enrollment: TwoFactorEnrollment = Depends(get_enrollment_service),
):
    await enrollment.configure_email(current_user)
    return MessageOut(message="Te enviamos un código para activar la verificación por correo")


@router.post("/email/verify", response_model=MessageOut)
async def verify_email_2fa(
    body: CodeIn,
    current_user: User = Depends(get_current_user),
    enrollment: TwoFactorEnrollment = Depends(get_enrollment_service),
):
    await enrollment.verify_email(current_user, body.codigo)
    return MessageOut(message="2FA por correo activado")


@router.post("/disable", response_model=MessageOut)
async def disable(
    body: TwoFADisableIn,
    current_user: User = Depends(get_current_user),
    enrollment: TwoFactorEnrollment = Depends(get_enrollment_service),
):
    await enrollment.disable(current_user, body.contrasena, body.codigo)
    return MessageOut(message="Verificación en dos pasos desactivada")
