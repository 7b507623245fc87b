import os
from dataclasses import dataclass


@dataclass
class Settings:
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "http")  # http | sqlite
    STORE_BASE_URL: str = os.getenv("STORE_BASE_URL", "http://localhost:3001")
    STORE_TIMEOUT: float = float(os.getenv("STORE_TIMEOUT", "5"))
    DB_PATH: str = os.getenv("DB_PATH", "./wallet.db")

    FEE_PERCENT: float = float(os.getenv("FEE_PERCENT", "0.02"))
    TRANSFER_LIMIT: float = float(os.getenv("TRANSFER_LIMIT", "10000"))
    TOPUP_LIMIT: float = float(os.getenv("TOPUP_LIMIT", "100000"))
    NOTE_MAX_LENGTH: int = int(os.getenv("NOTE_MAX_LENGTH", "200"))

    # старше этого порога незавершённый перевод возвращается отправителю
    RECONCILE_STALE_HOURS: float = float(os.getenv("RECONCILE_STALE_HOURS", "24"))
    RECONCILE_ON_STARTUP: bool = os.getenv("RECONCILE_ON_STARTUP", "1") not in ("0", "false", "False")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "text")  # text | json

settings = Settings()
