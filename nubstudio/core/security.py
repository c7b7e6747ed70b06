import base64
import hashlib
import secrets
from datetime import datetime, timezone
from io import BytesIO

import pyotp
import qrcode
from passlib.context import CryptContext

# --- tiempo: todo se guarda como UTC naive ---

def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


# --- contraseñas ---

class PasswordHasher:
    """bcrypt adaptativo vía passlib."""

    def __init__(self, rounds: int = 12) -> None:
        self._context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, plain: str) -> str:
        return self._context.hash(plain)

    def verify(self, plain: str, hashed: str | None) -> bool:
        if not hashed:
            return False
        try:
            return self._context.verify(plain, hashed)
        except ValueError:
            # hash corrupto o con formato desconocido
            return False


# --- huellas y códigos ---

def fingerprint(value: str) -> str:
    """SHA-256 hex: lo que se guarda en lugar del token / código crudo."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_numeric_code(length: int = 6) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


# --- 2FA (TOTP) ---

TOTP_VALID_WINDOW = 2  # ±2 pasos de 30s para absorber desfase de reloj


def generate_2fa_secret() -> str:
    # 32 chars base32 = 160 bits
    return pyotp.random_base32(length=32)


def totp_uri_from_secret(secret: str, email: str, issuer: str = "NUB Studio") -> str:
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=email, issuer_name=issuer)


def verify_totp(otp: str, secret: str, at: datetime | None = None) -> bool:
    if not otp or not secret:
        return False
    try:
        for_time = (at.replace(tzinfo=timezone.utc) if at else datetime.now(tz=timezone.utc))
        return pyotp.TOTP(secret).verify(otp, for_time=for_time, valid_window=TOTP_VALID_WINDOW)
    except (ValueError, TypeError):
        # secreto base32 inválido
        return False


def qr_png_base64_from_text(text: str) -> str:
    img = qrcode.make(text)
    buf = BytesIO()
    img.save(buf, "PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")
