import hmac
from collections.abc import Callable
from datetime import datetime, timedelta

from nubstudio.core.security import fingerprint, generate_numeric_code, utcnow
from nubstudio.models import CodePurpose, VerificationCode
from nubstudio.repositories import VerificationCodeRepository

# vigencia por propósito
CODE_TTL: dict[CodePurpose, timedelta] = {
    CodePurpose.registration: timedelta(hours=24),
    CodePurpose.login_2fa: timedelta(minutes=10),
    CodePurpose.enable_email_2fa: timedelta(minutes=10),
}


class VerificationCodeService:
    """Códigos de 6 dígitos por correo. Solo se guarda la huella."""

    def __init__(self, codes: VerificationCodeRepository, clock: Callable[[], datetime] = utcnow) -> None:
        self.codes = codes
        self.clock = clock

    async def issue(self, user_id: str, purpose: CodePurpose) -> str:
        """Invalida los códigos pendientes del mismo propósito y devuelve uno nuevo (crudo)."""
        await self.codes.invalidate(user_id, purpose)
        raw = generate_numeric_code()
        await self.codes.add(VerificationCode(
            user_id=user_id,
            purpose=purpose,
            code_hash=fingerprint(raw),
            expires_at=self.clock() + CODE_TTL[purpose],
            used=False,
        ))
        return raw

    async def verify(self, user_id: str, purpose: CodePurpose, raw_code: str) -> bool:
        record = await self.codes.find_latest_unresolved(user_id, purpose)
        if record is None:
            return False
        if record.expires_at <= self.clock():
            return False
        if not hmac.compare_digest(record.code_hash, fingerprint(raw_code.strip())):
            return False
        # marca de uso condicional: un replay concurrente pierde la carrera
        return await self.codes.mark_used(record.id) == 1

    async def cleanup(self) -> int:
        return await self.codes.delete_stale(self.clock())
