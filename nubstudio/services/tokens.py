import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from nubstudio.core.config import Settings
from nubstudio.core.errors import InvalidTokenError, TokenExpiredError


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime  # UTC naive, igual que en la BD


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    jti: str
    expires_at: datetime


class TokenIssuer:
    """Firma y valida los bearer tokens (sub + jti, iss/aud fijos, 24h)."""

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        issuer: str = "nub-studio",
        audience: str = "nub-users",
        ttl: timedelta = timedelta(hours=24),
    ) -> None:
        self._secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            settings.JWT_SECRET,
            algorithm=settings.JWT_ALGORITHM,
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
            ttl=timedelta(hours=settings.ACCESS_TOKEN_EXPIRE_HOURS),
        )

    def issue(self, user_id: str) -> IssuedToken:
        now = datetime.now(tz=timezone.utc)
        expire = now + self.ttl
        jti = str(uuid.uuid4())
        to_encode = {
            "sub": user_id,
            "jti": jti,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": expire,
        }
        token = jwt.encode(to_encode, self._secret, algorithm=self.algorithm)
        return IssuedToken(token=token, jti=jti, expires_at=expire.replace(tzinfo=None))

    def verify(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],  # solo el algoritmo aprobado
                audience=self.audience,
                issuer=self.issuer,
                options={"require_exp": True, "require_sub": True, "require_jti": True},
            )
        except ExpiredSignatureError:
            raise TokenExpiredError()
        except JWTError:
            # firma mala, otro algoritmo, iss/aud incorrectos o token malformado: misma respuesta
            raise InvalidTokenError()

        sub = payload.get("sub")
        jti = payload.get("jti")
        if not isinstance(sub, str) or not sub or not isinstance(jti, str) or not jti:
            raise InvalidTokenError()
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc).replace(tzinfo=None)
        return TokenClaims(sub=sub, jti=jti, expires_at=expires_at)
