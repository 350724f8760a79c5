from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence

import httpx

from hiq.logging import get_logger, redact_email

logger = get_logger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Transactional email for access requests, sessions, and interviews.

    Supports:
    - Resend HTTP API when an API key is configured
    - SMTP with TLS/SSL otherwise
    - Fallback to logging when neither is configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        resend_api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: str = "HireIQ",
        base_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.resend_api_key = resend_api_key
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.from_email and (self.resend_api_key or self.smtp_host))

    def _render(
        self,
        title: str,
        paragraphs: Sequence[str],
        *,
        action: Optional[tuple[str, str]] = None,
    ) -> tuple[str, str]:
        """Build (html, text) bodies; paragraphs are escaped."""
        html_paragraphs = "\n".join(f"        <p>{html.escape(p)}</p>" for p in paragraphs)
        button = ""
        link_hint = ""
        if action:
            label, url = action
            safe_url = html.escape(url, quote=True)
            button = (
                f'        <p style="margin: 30px 0;"><a href="{safe_url}" class="button">'
                f"{html.escape(label)}</a></p>\n"
            )
            link_hint = f"            <p>If the button doesn't work, copy and paste this URL: {safe_url}</p>\n"
        html_body = (
            "<!DOCTYPE html>\n<html>\n<head>\n    <meta charset=\"utf-8\">\n"
            f"    <style>{_STYLE}    </style>\n</head>\n<body>\n"
            '    <div class="container">\n'
            f"        <h1>{html.escape(title)}</h1>\n"
            f"{html_paragraphs}\n{button}"
            '        <div class="footer">\n'
            f"            <p>{html.escape(self.from_name)}</p>\n{link_hint}"
            "        </div>\n    </div>\n</body>\n</html>\n"
        )
        text_lines = [title, "", *paragraphs]
        if action:
            text_lines += ["", action[1]]
        text_lines += ["", "---", self.from_name]
        return html_body, "\n".join(text_lines) + "\n"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email through the configured transport.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True
        if self.resend_api_key:
            return self._send_via_resend(to_email, subject, html_body, text_body)
        return self._send_via_smtp(to_email, subject, html_body, text_body)

    def _send_via_resend(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str],
    ) -> bool:
        payload = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        }
        if text_body:
            payload["text"] = text_body
        try:
            with httpx.Client(timeout=30.0, transport=self._transport) as client:
                response = client.post(
                    RESEND_API_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.resend_api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_api_rejected",
                to=redact_email(to_email),
                status_code=e.response.status_code,
                error=e.response.text[:200],
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "email_api_failed",
                to=redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=redact_email(to_email), subject=subject, transport="resend")
        return True

    def _send_via_smtp(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str],
    ) -> bool:
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
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

            logger.info("email_sent", to=redact_email(to_email), subject=subject, transport="smtp")
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_access_request_notification(
        self,
        to_email: str,
        *,
        requester_email: str,
        work_domain: str,
        team_size: Optional[str] = None,
        message: Optional[str] = None,
    ) -> bool:
        """Tell the administrator a new access request is waiting."""
        html_body, text_body = self._render(
            "New access request",
            [
                f"Email: {requester_email}",
                f"Work domain: {work_domain}",
                f"Team size: {team_size or 'Not specified'}",
                f"Message: {message or 'No message provided'}",
            ],
            action=("Review requests", f"{self.base_url}/admin/access-requests"),
        )
        return self._send_email(
            to_email, f"New access request from {work_domain}", html_body, text_body
        )

    def send_registration_invite(self, to_email: str, token: str, expires_at: datetime) -> bool:
        """Send the one-time registration link for an approved request."""
        register_url = f"{self.base_url}/register?token={token}"
        html_body, text_body = self._render(
            "Your access request was approved",
            [
                "Your request for access has been approved. Use the link below to create your account.",
                f"This link can be used once and expires at {expires_at:%Y-%m-%d %H:%M} UTC.",
            ],
            action=("Create account", register_url),
        )
        return self._send_email(to_email, "Your access request was approved", html_body, text_body)

    def send_access_rejected(self, to_email: str, reason: str) -> bool:
        html_body, text_body = self._render(
            "Update on your access request",
            [
                "Thank you for your interest. We are unable to approve your access request at this time.",
                f"Reason: {reason}",
            ],
        )
        return self._send_email(to_email, "Update on your access request", html_body, text_body)

    def send_session_expiry_warning(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            "Your session is about to expire",
            [
                f"Hi {name},",
                "We noticed you have been inactive for a while. Your session will expire soon; "
                "return to the app to keep working.",
            ],
            action=("Open dashboard", f"{self.base_url}/dashboard"),
        )
        return self._send_email(to_email, "Your session is about to expire", html_body, text_body)

    def send_session_expired(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            "Your session has expired",
            [f"Hi {name},", "Your session has expired. Please sign in again to continue."],
            action=("Sign in", f"{self.base_url}/login"),
        )
        return self._send_email(to_email, "Your session has expired", html_body, text_body)

    def send_interview_invite(
        self,
        to_email: str,
        *,
        candidate_name: str,
        interview_type: str,
        level: str,
        scheduled_at: datetime,
        session_id: str,
    ) -> bool:
        join_url = f"{self.base_url}/interview/{session_id}"
        html_body, text_body = self._render(
            "You're invited to an interview",
            [
                f"Hi {candidate_name},",
                f"You have a {level} {interview_type} interview scheduled for "
                f"{scheduled_at:%Y-%m-%d %H:%M} UTC.",
                "The interview room opens 15 minutes before the scheduled time.",
            ],
            action=("Join interview", join_url),
        )
        return self._send_email(to_email, "Interview invitation", html_body, text_body)

    def send_interview_cancelled(
        self, to_email: str, *, candidate_name: str, scheduled_at: datetime
    ) -> bool:
        html_body, text_body = self._render(
            "Interview cancelled",
            [
                f"Hi {candidate_name},",
                f"Your interview scheduled for {scheduled_at:%Y-%m-%d %H:%M} UTC has been cancelled.",
            ],
        )
        return self._send_email(to_email, "Interview cancelled", html_body, text_body)

    def send_interview_completed(
        self, to_email: str, *, candidate_name: str, interview_id: str
    ) -> bool:
        html_body, text_body = self._render(
            "Interview completed",
            [f"The interview with {candidate_name} has been completed."],
            action=("View interview", f"{self.base_url}/interviews/{interview_id}"),
        )
        return self._send_email(to_email, f"Interview completed: {candidate_name}", html_body, text_body)


__all__ = ["EmailService"]
