"""
UI Analyzer — Configuration
Environment-driven settings, loaded once by the process entry point.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    jwt_secret_key: str = "ui-analyzer-dev-secret-change-in-prod"
    database_url: Optional[str] = None
    frontend_url: str = "http://localhost:8000"
    allowed_origins: List[str] = field(default_factory=lambda: [
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ])
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    gemini_api_key: str = ""
    rate_limit_enabled: bool = True
    log_level: str = "INFO"

    @property
    def payments_live(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("ALLOWED_ORIGINS", "")
        return cls(
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", cls.jwt_secret_key),
            database_url=os.getenv("DATABASE_URL") or None,
            frontend_url=os.getenv("FRONTEND_URL", cls.frontend_url).rstrip("/"),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()] or [
                "http://localhost:8000",
                "http://127.0.0.1:8000",
            ],
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
