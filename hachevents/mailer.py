import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from hachevents.config import Config

logger = logging.getLogger(__name__)

SUBJECT = "کد ورود به هاچ"


class Mailer:
    """Delivers one-time codes by email.

    Without an SMTP host the code is only written to the log, which is how
    local development signs in.
    """

    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "no-reply@hach.local",
        timeout: int = 12,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Config) -> "Mailer":
        return cls(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_user,
            password=config.smtp_password,
            sender=config.smtp_from,
        )

    def _build_message(self, email: str, code: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = SUBJECT
        message["From"] = self.sender
        message["To"] = email
        message.set_content(f"کد تأیید تو: {code}\n\nاین کد تا چند دقیقه معتبره.")
        return message

    def send_code(self, email: str, code: str) -> None:
        if not self.host:
            logger.info("SMTP is not configured; one-time code for %s is %s", email, code)
            return
        message = self._build_message(email, code)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)
        logger.info("One-time code sent to %s", email)
