import os
from dataclasses import dataclass


@dataclass
class Settings:
    DB_PATH: str = os.environ.get("DB_PATH", "data/assessment.db")

    # downstream gamification/certificate/streak endpoints, empty disables them
    NOTIFY_BASE_URL: str = os.environ.get("NOTIFY_BASE_URL", "")
    NOTIFY_TIMEOUT: float = float(os.environ.get("NOTIFY_TIMEOUT", "10"))

    TICK_SECONDS: float = float(os.environ.get("TICK_SECONDS", "1"))
    HURRY_SECONDS: int = int(os.environ.get("HURRY_SECONDS", "60"))

    PASS_POINTS_MAX: int = int(os.environ.get("PASS_POINTS_MAX", "50"))
    PARTICIPATION_POINTS: int = int(os.environ.get("PARTICIPATION_POINTS", "10"))

    DEFAULT_EASE: float = float(os.environ.get("DEFAULT_EASE", "2.5"))

    # API sessions untouched this long are closed and dropped
    SESSION_TTL_SECONDS: int = int(os.environ.get("SESSION_TTL_SECONDS", "3600"))

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))

    def __post_init__(self):
        self.LOG_LEVEL = self.LOG_LEVEL.upper()
        self.NOTIFY_BASE_URL = self.NOTIFY_BASE_URL.rstrip("/")

settings = Settings()
