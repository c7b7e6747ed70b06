from fastapi import APIRouter, Depends

from nubstudio.api.deps import get_recovery_service
from nubstudio.core.errors import AuthenticationError
from nubstudio.schemas.auth import EmailCodeIn, EmailIn, ResetPasswordIn
from nubstudio.services.recovery import INVALID_CODE_MESSAGE, RecoveryService

router = APIRouter(prefix="/auth", tags=["recovery"])


@router.post("/request-recovery")
async def request_recovery(payload: EmailIn, recovery: RecoveryService = Depends(get_recovery_service)):
    # misma forma y status exista o no el correo
    return await recovery.request(payload.correo)


@router.post("/validate-recovery")
async def validate_recovery(payload: EmailCodeIn, recovery: RecoveryService = Depends(get_recovery_service)):
    if not await recovery.validate(payload.correo, payload.codigo):
        raise AuthenticationError(INVALID_CODE_MESSAGE, valid=False)
    return {"valid": True, "message": "Código válido"}


@router.post("/reset-password")
async def reset_password(payload: ResetPasswordIn, recovery: RecoveryService = Depends(get_recovery_service)):
    await recovery.reset(payload.correo, payload.codigo, payload.nuevaContrasena)
    return {"message": "Contraseña actualizada exitosamente", "success": True}
