import os
from dataclasses import dataclass, field
from typing import List


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-change-me")
    ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
    DB_PATH: str = os.getenv("DB_PATH", "./tokens.db")
    DB_BUSY_TIMEOUT_SECONDS: float = float(os.getenv("DB_BUSY_TIMEOUT_SECONDS", "5"))

    # сколько часов после отмены перевода отправитель не может инициировать новые
    COOLDOWN_HOURS: int = int(os.getenv("COOLDOWN_HOURS", "24"))
    # 0 = запросы pending_acceptance не истекают
    PENDING_TRANSFER_TTL_HOURS: int = int(os.getenv("PENDING_TRANSFER_TTL_HOURS", "0"))
    ADMIN_ADJUST_ALLOW_NEGATIVE: bool = _env_bool("ADMIN_ADJUST_ALLOW_NEGATIVE", "true")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS: List[str] = field(default_factory=lambda: [
        o.strip()
        for o in os.getenv("CORS_ORIGINS", "http://localhost:8000,http://localhost:63342").split(",")
        if o.strip()
    ])

settings = Settings()
