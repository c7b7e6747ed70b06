import asyncio
from collections.abc import Callable
from datetime import datetime

from nubstudio.core.db import Database
from nubstudio.core.logging import get_logger
from nubstudio.core.security import PasswordHasher, utcnow
from nubstudio.repositories import (
    RecoveryCodeRepository,
    SessionRepository,
    UserRepository,
    VerificationCodeRepository,
)
from nubstudio.services.codes import VerificationCodeService
from nubstudio.services.mail import MailSender
from nubstudio.services.recovery import RecoveryService
from nubstudio.services.sessions import SessionRegistry

logger = get_logger(__name__)


async def run_maintenance_pass(
    database: Database,
    hasher: PasswordHasher,
    mailer: MailSender,
    clock: Callable[[], datetime] = utcnow,
) -> dict[str, int]:
    """Borra sesiones vencidas/inactivas y códigos vencidos o usados."""
    async with database.sessionmaker() as db:
        registry = SessionRegistry(SessionRepository(db), clock)
        recovery = RecoveryService(
            db, UserRepository(db), RecoveryCodeRepository(db), registry, hasher, mailer, clock
        )
        verification = VerificationCodeService(VerificationCodeRepository(db), clock)
        stats = {
            "sessions": await registry.sweep_expired(),
            "recovery_codes": await recovery.cleanup_expired_codes(),
            "verification_codes": await verification.cleanup(),
        }
        await db.commit()
    logger.info("maintenance_pass", **stats)
    return stats


async def maintenance_loop(
    database: Database,
    interval_seconds: float,
    hasher: PasswordHasher,
    mailer: MailSender,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_maintenance_pass(database, hasher, mailer, clock)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # la próxima pasada lo reintenta; is_valid ya filtra lo vencido
            logger.error("maintenance_pass_failed", error_type=type(exc).__name__, error=str(exc))
