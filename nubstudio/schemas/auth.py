import re

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

SPECIAL_CHARS = "@$!%*?&#._-"
COMMON_PASSWORDS = frozenset({
    "12345678", "password", "qwerty123", "123456789", "abc123",
    "password123", "11111111", "qwertyuiop", "password1", "admin123",
    "letmein", "welcome123", "monkey123", "dragon123", "master123",
    "sunshine", "princess", "football", "iloveyou", "trustno1",
})
_NAME_RE = re.compile(r"^[a-zA-ZáéíóúÁÉÍÓÚñÑüÜ\s]+$")
_REPEATED_RE = re.compile(r"(.)\1{3,}")


def code_field():
    return Field(..., pattern=r"^\d{6}$", description="Código de 6 dígitos")


def password_strength_errors(password: str) -> list[str]:
    errors = []
    if len(password) < 8:
        errors.append("Debe tener al menos 8 caracteres")
    if len(password) > 128:
        errors.append("No puede superar 128 caracteres")
    if not re.search(r"[A-Z]", password):
        errors.append("Debe contener al menos una mayúscula")
    if not re.search(r"[a-z]", password):
        errors.append("Debe contener al menos una minúscula")
    if not re.search(r"[0-9]", password):
        errors.append("Debe contener al menos un número")
    if not any(ch in SPECIAL_CHARS for ch in password):
        errors.append(f"Debe contener al menos un carácter especial ({SPECIAL_CHARS})")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Contraseña demasiado común. Elige una más segura")
    if _REPEATED_RE.search(password):
        errors.append("No puede repetir el mismo carácter 4 veces seguidas")
    return errors


def _strong_password(value: str) -> str:
    errors = password_strength_errors(value)
    if errors:
        raise ValueError("Contraseña insegura: " + "; ".join(errors))
    return value


# ---------- entrada ----------
class RegisterIn(BaseModel):
    nombre: str = Field(..., min_length=2, max_length=100)
    correo: EmailStr
    contrasena: str

    @field_validator("nombre")
    @classmethod
    def check_nombre(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2 or not _NAME_RE.match(v):
            raise ValueError("El nombre solo puede contener letras y espacios")
        return v

    @field_validator("contrasena")
    @classmethod
    def check_contrasena(cls, v: str) -> str:
        return _strong_password(v)


class EmailIn(BaseModel):
    correo: EmailStr


class EmailCodeIn(BaseModel):
    correo: EmailStr
    codigo: str = code_field()


class LoginIn(BaseModel):
    correo: EmailStr
    contrasena: str = Field(..., min_length=1, max_length=128)


class Login2FAIn(BaseModel):
    correo: EmailStr
    codigo2fa: str = code_field()


class ResetPasswordIn(BaseModel):
    correo: EmailStr
    codigo: str = code_field()
    nuevaContrasena: str

    @field_validator("nuevaContrasena")
    @classmethod
    def check_nueva(cls, v: str) -> str:
        return _strong_password(v)


class CodeIn(BaseModel):
    codigo: str = code_field()


class TwoFADisableIn(BaseModel):
    contrasena: str = Field(..., min_length=1, max_length=128)
    codigo: str | None = Field(None, pattern=r"^\d{6}$")


# ---------- salida ----------
class UsuarioOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    nombre: str
    correo: str
    estado: str


class RegisteredUserOut(BaseModel):
    id: str
    nombre: str
    correo: str


class RegisterOut(BaseModel):
    message: str
    requiresVerification: bool = True
    user: RegisteredUserOut


class TokenOut(BaseModel):
    message: str
    access_token: str
    token_type: str = "bearer"
    usuario: UsuarioOut


class TwoFactorChallengeOut(BaseModel):
    message: str
    requires2FA: bool = True
    metodo_2fa: str
    correo: str


class MessageOut(BaseModel):
    message: str


class TwoFASetupOut(BaseModel):
    message: str
    secret: str
    otpauth_url: str
    qr_base64_png: str
