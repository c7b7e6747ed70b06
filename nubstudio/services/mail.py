"""Outbound e-mail over SMTP.

``smtplib`` is blocking, so every send runs in a worker thread. Without an
SMTP host the sender works in dev mode: it logs the masked recipient and the
subject, never the body (the body carries the code).
"""

from __future__ import annotations

import asyncio
import smtplib
import ssl
from collections.abc import Coroutine
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Optional

from nubstudio.core.config import Settings
from nubstudio.core.logging import get_logger, mask_email

logger = get_logger(__name__)


class MailDeliveryError(Exception):
    """The SMTP transport refused or could not deliver the message."""


# propósito -> (asunto, texto antes del código, minutos de validez)
_CODE_TEMPLATES: dict[str, tuple[str, str, int]] = {
    "registration": ("Verifica tu cuenta en NUB Studio", "Tu código de verificación es", 24 * 60),
    "login_2fa": ("Tu código de acceso a NUB Studio", "Tu código para iniciar sesión es", 10),
    "enable_email_2fa": ("Activa la verificación en dos pasos", "Tu código para activar 2FA es", 10),
    "recovery": ("Recupera tu contraseña de NUB Studio", "Tu código de recuperación es", 15),
}


class MailSender:
    """Interface the services depend on. Tests swap in a recording fake."""

    async def send_code(self, to: str, code: str, purpose: str) -> None:
        raise NotImplementedError

    async def send_welcome(self, to: str, nombre: str) -> None:
        raise NotImplementedError


class SmtpMailSender(MailSender):
    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "NUB Studio",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpMailSender":
        return cls(
            smtp_host=settings.SMTP_HOST,
            smtp_port=settings.SMTP_PORT,
            smtp_user=settings.SMTP_USER,
            smtp_password=settings.SMTP_PASSWORD,
            smtp_use_tls=settings.SMTP_USE_TLS,
            from_email=settings.MAIL_FROM,
            from_name=settings.APP_NAME,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send_code(self, to: str, code: str, purpose: str) -> None:
        subject, intro, minutes = _CODE_TEMPLATES[purpose]
        text = f"{intro}: {code}\n\nEl código vence en {minutes} minutos. Si no lo solicitaste, ignora este correo."
        await self._send(to, subject, text)

    async def send_welcome(self, to: str, nombre: str) -> None:
        text = f"Hola {nombre}, tu cuenta en NUB Studio ya está activa. ¡Bienvenido a la galería!"
        await self._send(to, "Bienvenido a NUB Studio", text)

    async def _send(self, to: str, subject: str, text_body: str) -> None:
        if not self.is_configured:
            logger.info("email_dev_mode", to=mask_email(to), subject=subject)
            return
        await asyncio.to_thread(self._send_blocking, to, subject, text_body)
        logger.info("email_sent", to=mask_email(to), subject=subject)

    def _send_blocking(self, to: str, subject: str, text_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain", "utf-8"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=mask_email(to),
                host=self.smtp_host,
                error_type=type(exc).__name__,
            )
            raise MailDeliveryError(str(exc)) from exc


# referencias fuertes: el loop solo guarda referencias débiles a las tareas
_background_tasks: set[asyncio.Task] = set()


def spawn_background(coro: Coroutine[Any, Any, Any], *, label: str) -> asyncio.Task:
    """Fire-and-forget with a logged outcome (welcome and recovery e-mails)."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.warning("background_task_failed", task=label, error_type=type(exc).__name__)
        else:
            logger.debug("background_task_done", task=label)

    task.add_done_callback(_done)
    return task


async def drain_background(timeout: float = 10.0) -> None:
    """Espera los envíos pendientes; se llama al apagar la app."""
    pending = [t for t in _background_tasks if not t.done()]
    if pending:
        await asyncio.wait(pending, timeout=timeout)
