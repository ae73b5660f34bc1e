from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

from sysauth.logging import get_logger, redact_email

logger = get_logger(__name__)

# Plain-text bodies keyed by template name; rendered with str.format_map.
_TEMPLATES: Dict[str, str] = {
    "device_approval_required": (
        "Hello {name},\n\n"
        "A sign-in to your administrator account was attempted from a device we do not recognise:\n\n"
        "  Device:   {device}\n"
        "  Location: {location}\n"
        "  IP:       {ip_address}\n"
        "  Risk:     {risk_score}/100\n\n"
        "If this was you, enter the code {approval_code} on the sign-in screen or open:\n\n"
        "{approval_url}\n\n"
        "If this was not you, deny the sign-in here and change your password:\n\n"
        "{deny_url}\n\n"
        "This request expires in {expiry_minutes} minutes.\n"
    ),
    "account_locked": (
        "Hello {name},\n\n"
        "Your account was locked after {attempts} failed sign-in attempts.\n"
        "It will unlock automatically at {locked_until}.\n\n"
        "If these attempts were not you, contact your security team.\n"
    ),
    "new_location_login": (
        "Hello {name},\n\n"
        "Your account was just used from a new location: {location} ({ip_address}) on {device}.\n\n"
        "If this was not you, revoke the device and change your password.\n"
    ),
    "device_denied": (
        "Hello {name},\n\n"
        "You denied a sign-in from {device} ({location}). The device has been blocked.\n"
        "We recommend changing your password.\n"
    ),
    "magic_link": (
        "Hello {name},\n\n"
        "Use the link below to sign in. It expires in {expiry_minutes} minutes and works once.\n\n"
        "{magic_link_url}\n"
    ),
    "mfa_enabled": (
        "Hello {name},\n\n"
        "Two-factor authentication is now enabled on your account.\n"
        "If you didn't make this change, contact your security team immediately.\n"
    ),
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return "unknown"


def render_template(template: str, variables: Dict[str, Any]) -> str:
    body = _TEMPLATES.get(template)
    if body is None:
        raise KeyError(f"unknown email template: {template}")
    return body.format_map(_Defaults(variables))


class EmailService:
    """Notification collaborator delivering transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Device approval, lockout, new-location, denial and magic-link emails
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "SysAuth",
        base_url: Optional[str] = None,
        approval_expiry_minutes: int = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.approval_expiry_minutes = approval_expiry_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        return redact_email(email)

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_length=len(text_body),
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(f"<pre>{html.escape(text_body)}</pre>", "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    async def send(
        self,
        to: str,
        subject: str,
        template: str,
        variables: Dict[str, Any],
        language: str = "en",
    ) -> None:
        # Only English bodies ship today; language is accepted for the contract.
        body = render_template(template, variables)
        await asyncio.to_thread(self._send_email, to, subject, body)

    async def send_device_approval_required(
        self,
        email: str,
        name: str,
        approval_token: str,
        approval_code: str,
        device_meta: Dict[str, Any],
        risk_score: int,
        language: str = "en",
    ) -> None:
        variables = {
            **device_meta,
            "name": name,
            "approval_code": approval_code,
            "risk_score": risk_score,
            "approval_url": f"{self.base_url}/approve-device?token={approval_token}",
            "deny_url": f"{self.base_url}/deny-device?token={approval_token}",
            "expiry_minutes": self.approval_expiry_minutes,
        }
        await self.send(
            email,
            "New device sign-in needs your approval",
            "device_approval_required",
            variables,
            language,
        )
