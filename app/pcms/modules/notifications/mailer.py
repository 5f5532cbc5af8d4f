from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

logger = logging.getLogger(__name__)


class Mailer:
    """Email delivery collaborator. Returns (success, detail); callers treat failure as best-effort."""

    def send(self, *, to: str, subject: str, body: str, html: str | None = None) -> tuple[bool, str]:
        raise NotImplementedError


class DisabledMailer(Mailer):
    def send(self, *, to: str, subject: str, body: str, html: str | None = None) -> tuple[bool, str]:
        return False, "SMTP not configured (SMTP_HOST missing)"


@dataclass(frozen=True)
class SmtpMailer(Mailer):
    host: str
    port: int
    username: str
    password: str
    sender: str
    use_tls: bool = True
    timeout: float = 10.0

    def send(self, *, to: str, subject: str, body: str, html: str | None = None) -> tuple[bool, str]:
        if html:
            msg = MIMEMultipart("alternative")
            msg.attach(MIMEText(body, "plain"))
            msg.attach(MIMEText(html, "html"))
        else:
            msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            return False, f"SMTP authentication failed: {e}"
        except (smtplib.SMTPException, OSError) as e:
            return False, f"SMTP error: {e}"

        logger.info("Sent email to recipient with subject=%r", subject)
        return True, "sent"


def html_body(message: str) -> str:
    return f'<div style="font-family: Arial, sans-serif;">{escape(message)}</div>'


def mailer_from_config(config: dict) -> Mailer:
    host = (config.get("SMTP_HOST") or "").strip()
    if not host:
        return DisabledMailer()
    return SmtpMailer(
        host=host,
        port=int(config.get("SMTP_PORT") or 587),
        username=(config.get("SMTP_USERNAME") or "").strip(),
        password=config.get("SMTP_PASSWORD") or "",
        sender=(config.get("SMTP_FROM") or "no-reply@pcms.local").strip(),
        use_tls=bool(config.get("SMTP_USE_TLS", True)),
    )
