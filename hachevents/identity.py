"""Passwordless email sign-in.

`IdentityProvider` owns the one-time codes and sessions. `AuthClient` is the
per-browser view of it: it remembers the session token, the way a browser
client keeps its auth cookie, and exposes the calls the registration wizard
makes.
"""

import hashlib
import hmac
import json
import logging
import re
import secrets
import smtplib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from starlette.concurrency import run_in_threadpool

from hachevents.database import Database
from hachevents.errors import AuthError, ErrorCode
from hachevents.mailer import Mailer

CODE_LENGTH = 6
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class AuthSession:
    user_id: str
    email: str
    token: str


class IdentityProvider:
    def __init__(
        self,
        db: Database,
        mailer: Mailer,
        code_ttl_seconds: int = 600,
        max_attempts: int = 5,
        resend_interval_seconds: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.mailer = mailer
        self.code_ttl = timedelta(seconds=code_ttl_seconds)
        self.max_attempts = max_attempts
        self.resend_interval = timedelta(seconds=resend_interval_seconds)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _hash_code(self, email: str, code: str) -> str:
        return hashlib.sha256(f"{email}:{code}".encode("utf-8")).hexdigest()

    def _generate_code(self) -> str:
        return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"

    def send_one_time_code(
        self,
        email: str,
        create_if_missing: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        email = normalize_email(email)
        if not EMAIL_RE.match(email):
            raise AuthError(ErrorCode.INVALID_EMAIL, "Email address is not valid.")

        user = self.db.get_auth_user_by_email(email)
        if user is None:
            if not create_if_missing:
                raise AuthError(ErrorCode.USER_NOT_FOUND, "No account exists for this email.")
            self.db.create_auth_user(email, metadata)
            logger.info("Auth user created for %s", email)

        now = self.clock()
        previous = self.db.get_one_time_code(email)
        if previous is not None:
            sent_at = datetime.fromisoformat(previous["created_at"])
            if now - sent_at < self.resend_interval:
                raise AuthError(
                    ErrorCode.RATE_LIMITED,
                    "A code was sent recently. Please wait before requesting another.",
                )

        code = self._generate_code()
        self.db.save_one_time_code(
            email,
            self._hash_code(email, code),
            (now + self.code_ttl).isoformat(),
            now.isoformat(),
        )
        try:
            self.mailer.send_code(email, code)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Failed to deliver one-time code to %s: %s", email, exc)
            self.db.delete_one_time_code(email)
            raise AuthError(ErrorCode.DELIVERY_FAILED, "Could not send the verification email.") from exc

    def verify_one_time_code(self, email: str, code: str) -> AuthSession:
        email = normalize_email(email)
        code = (code or "").strip()
        row = self.db.get_one_time_code(email)
        if row is None:
            raise AuthError(ErrorCode.INVALID_CODE, "Code is invalid or has already been used.")
        if row["attempts"] >= self.max_attempts:
            self.db.delete_one_time_code(email)
            raise AuthError(ErrorCode.TOO_MANY_ATTEMPTS, "Too many attempts. Request a new code.")
        if self.clock() > datetime.fromisoformat(row["expires_at"]):
            self.db.delete_one_time_code(email)
            raise AuthError(ErrorCode.CODE_EXPIRED, "Code has expired. Request a new code.")
        if not hmac.compare_digest(row["code_hash"], self._hash_code(email, code)):
            self.db.bump_code_attempts(email)
            logger.warning("Wrong one-time code for %s", email)
            raise AuthError(ErrorCode.INVALID_CODE, "Code is invalid.")

        self.db.delete_one_time_code(email)
        user = self.db.get_auth_user_by_email(email)
        user_id = user["id"]
        token = secrets.token_urlsafe(32)
        self.db.create_session(user_id, token)
        self.db.mark_signed_in(user_id)

        if self.db.get_profile(user_id) is None:
            metadata = json.loads(user["metadata"] or "{}")
            self.db.upsert_profile(user_id, email, full_name=metadata.get("full_name"))
        logger.info("User %s signed in", user_id)
        return AuthSession(user_id=user_id, email=email, token=token)

    def get_user(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        return self.db.get_session_user(token)

    def get_email(self, user_id: str) -> Optional[str]:
        user = self.db.get_auth_user(user_id)
        return user["email"] if user else None

    def sign_out(self, token: Optional[str]) -> None:
        if token:
            self.db.delete_session(token)


class AuthClient:
    def __init__(self, provider: IdentityProvider, token: Optional[str] = None) -> None:
        self.provider = provider
        self.token = token

    async def request_one_time_code(
        self,
        email: str,
        create_if_missing: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await run_in_threadpool(
            self.provider.send_one_time_code,
            email,
            create_if_missing=create_if_missing,
            metadata=metadata,
        )

    async def verify_one_time_code(self, email: str, code: str) -> str:
        session = await run_in_threadpool(self.provider.verify_one_time_code, email, code)
        self.token = session.token
        return session.user_id

    async def get_current_user(self) -> Optional[str]:
        return await run_in_threadpool(self.provider.get_user, self.token)

    async def sign_out(self) -> None:
        await run_in_threadpool(self.provider.sign_out, self.token)
        self.token = None
