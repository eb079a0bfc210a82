import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Config:
    database_path: str
    web_app_url: Optional[str]
    session_cookie: str = "hach_session"
    otp_ttl_seconds: int = 600
    otp_max_attempts: int = 5
    otp_resend_seconds: int = 60
    wizard_ttl_seconds: int = 1800
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: str = "no-reply@hach.local"
    log_level: str = "INFO"

    @classmethod
    def load(cls) -> "Config":
        load_dotenv()
        database_path = os.getenv("DATABASE_PATH", "data/hach.db")
        web_app_url = os.getenv("WEB_APP_URL", "").strip().rstrip("/") or None
        return cls(
            database_path=database_path,
            web_app_url=web_app_url,
            session_cookie=os.getenv("SESSION_COOKIE", "hach_session"),
            otp_ttl_seconds=int(os.getenv("OTP_TTL_SECONDS", "600")),
            otp_max_attempts=int(os.getenv("OTP_MAX_ATTEMPTS", "5")),
            otp_resend_seconds=int(os.getenv("OTP_RESEND_SECONDS", "60")),
            wizard_ttl_seconds=int(os.getenv("WIZARD_TTL_SECONDS", "1800")),
            smtp_host=os.getenv("SMTP_HOST", "").strip() or None,
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER", "").strip() or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            smtp_from=os.getenv("SMTP_FROM", "no-reply@hach.local"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
