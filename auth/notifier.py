"""
auth/notifier.py -- SMTP delivery of one-time passwords.

send_otp() never raises for delivery problems: it returns (ok, error) so the
orchestrator can report a failed BaseResult. Bad arguments (empty email or
code) are programming errors and raise ValidationError.

Templating: a caller-supplied body must contain the single placeholder
"{otp}", which is replaced with the code. A missing body falls back to the
default HTML template, as does one without the placeholder, with a warning
logged.
"""

from __future__ import annotations

import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from core.config import Settings
from core.errors import ValidationError

logger = logging.getLogger("ayerhs.notifier")

OTP_PLACEHOLDER = "{otp}"

_DEFAULT_HTML = """\
<html>
  <body style="font-family: Helvetica, Arial, sans-serif; background-color: #f8f9fa;">
    <div style="max-width: 600px; margin: 0 auto; background: #ffffff; padding: 20px;">
      <h2 style="color: #28a745; text-align: center;">Your verification code</h2>
      <p>Use the code below to continue. It expires in {minutes} minute(s).</p>
      <p style="font-size: 32px; font-weight: bold; text-align: center; letter-spacing: 4px;">{otp}</p>
      <p style="color: #6c757d;">If you did not request this code, you can ignore this email.</p>
      <p style="color: #6c757d;">The {app_name} Team</p>
    </div>
  </body>
</html>
"""


class Notifier(Protocol):
    def send_otp(
        self, email: str, otp: str, subject: str, body_template: str | None = None
    ) -> tuple[bool, str | None]: ...


def render_body(otp: str, body_template: str | None, *, app_name: str, ttl_seconds: int) -> tuple[str, bool]:
    """Return (body, is_html) for the message."""
    if body_template and OTP_PLACEHOLDER in body_template:
        return body_template.replace(OTP_PLACEHOLDER, otp), False
    if body_template:
        logger.warning("OTP email template has no %s placeholder; using the default template", OTP_PLACEHOLDER)
    minutes = max(1, ttl_seconds // 60)
    body = (
        _DEFAULT_HTML.replace("{minutes}", str(minutes))
        .replace("{app_name}", html.escape(app_name))
        .replace(OTP_PLACEHOLDER, html.escape(otp))
    )
    return body, True


class EmailNotifier:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send_otp(
        self, email: str, otp: str, subject: str, body_template: str | None = None
    ) -> tuple[bool, str | None]:
        if not email:
            raise ValidationError("'email' cannot be empty.")
        if not otp:
            raise ValidationError("'otp' cannot be empty.")

        s = self._settings
        from_email = s.smtp_from_email or s.smtp_username
        if not s.smtp_host or not from_email:
            logger.warning("OTP email not sent: SMTP is not configured")
            return False, "Email not configured"

        body, is_html = render_body(otp, body_template, app_name=s.app_name, ttl_seconds=s.otp_ttl_seconds)

        msg = EmailMessage()
        msg["From"] = f"{s.app_name} <{from_email}>"
        msg["To"] = email
        msg["Subject"] = subject
        if is_html:
            msg.set_content(f"Your one-time password is {otp}.")
            msg.add_alternative(body, subtype="html")
        else:
            msg.set_content(body)

        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout_seconds) as server:
                if s.smtp_use_tls:
                    server.starttls()
                if s.smtp_username and s.smtp_password:
                    server.login(s.smtp_username, s.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send OTP email: %s", exc)
            return False, "Failed to send OTP email"

        logger.info("OTP email sent")
        return True, None
