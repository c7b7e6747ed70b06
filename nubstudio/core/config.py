# nubstudio/core/config.py
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore")

    APP_NAME: str = "NUB Studio API"

    JWT_SECRET: str = Field(..., min_length=16)
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "nub-studio"
    JWT_AUDIENCE: str = "nub-users"
    ACCESS_TOKEN_EXPIRE_HOURS: int = 24

    BCRYPT_ROUNDS: int = 12

    # MySQL por defecto; DATABASE_URL pisa todo (tests usan sqlite+aiosqlite)
    DATABASE_URL: str | None = None
    DB_HOST: str = "localhost"
    DB_PORT: int = 3306
    DB_USER: str = "nub"
    DB_PASSWORD: str = ""
    DB_NAME: str = "nub_studio"

    # --- SMTP (si no hay host, los correos solo se loguean) ---
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    MAIL_FROM: str | None = None

    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # 0 desactiva la limpieza periódica
    MAINTENANCE_INTERVAL_SECONDS: int = 3600

    @property
    def async_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (f"mysql+aiomysql://{self.DB_USER}:{self.DB_PASSWORD}"
                f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4")


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
