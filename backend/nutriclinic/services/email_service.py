"""Transactional email delivery through an HTTP email API."""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from nutriclinic.config import settings
from nutriclinic.core.exceptions import EmailDeliveryError
from nutriclinic.core.redact import mask_email

logger = logging.getLogger(__name__)

_SENDER = re.compile(r"^(.*)<(.+@.+)>$")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def parse_sender(value: str) -> Dict[str, str]:
    """``"Clinic <no-reply@x.com>"`` -> ``{"name": "Clinic", "email": "no-reply@x.com"}``"""
    match = _SENDER.match(value.strip())
    if match:
        return {"name": match.group(1).strip().strip('"'), "email": match.group(2).strip()}
    return {"name": settings.APP_NAME, "email": value.strip()}


class EmailService:
    """
    Fire-and-forget sender for verification and password reset messages.

    Without an API key the service runs in dev mode: the message is logged
    and treated as delivered. Provider 429/5xx answers are retried with
    linear backoff; anything else raises EmailDeliveryError.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str = "",
        sender: str = "",
        reply_to: str = "",
        site_url: str = "",
        max_retries: int = 3,
        timeout_seconds: float = 10.0,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.reply_to = reply_to
        self.site_url = site_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.timeout_seconds = timeout_seconds
        self.backoff_seconds = backoff_seconds
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_link(self, path: str, token: str) -> str:
        return f"{self.site_url}{path}?token={quote(token, safe='')}"

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> Dict[str, Any]:
        if not _EMAIL.match(to or ""):
            raise EmailDeliveryError("Invalid recipient address")

        if not self.is_configured:
            logger.info("Email dev mode: to=%s subject=%r (not sent)", mask_email(to), subject)
            return {}

        payload: Dict[str, Any] = {
            "sender": parse_sender(self.sender),
            "to": [{"email": to}],
            "subject": subject,
            "htmlContent": html,
        }
        if text:
            payload["textContent"] = text
        if self.reply_to:
            payload["replyTo"] = {"email": self.reply_to}

        headers = {"api-key": self.api_key, "Content-Type": "application/json"}
        last_error = "no attempt made"
        with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    response = client.post(self.api_url, json=payload, headers=headers)
                except httpx.HTTPError as exc:
                    last_error = f"transport error: {exc}"
                    logger.warning("Email send attempt %d failed: %s", attempt, last_error)
                else:
                    if response.is_success:
                        logger.info("Email sent to=%s subject=%r", mask_email(to), subject)
                        try:
                            return response.json()
                        except ValueError:
                            return {}
                    if response.status_code != 429 and response.status_code < 500:
                        logger.error(
                            "Email provider rejected message (%s): %s",
                            response.status_code,
                            response.text[:500],
                        )
                        raise EmailDeliveryError()
                    last_error = f"provider status {response.status_code}"
                    logger.warning("Email send attempt %d got %s, retrying", attempt, response.status_code)

                if attempt < self.max_retries:
                    time.sleep(self.backoff_seconds * attempt)

        logger.error("Email delivery gave up after %d attempts: %s", self.max_retries, last_error)
        raise EmailDeliveryError()

    def send_verification_email(self, to: str, code: str, token: str, ttl_minutes: int) -> Dict[str, Any]:
        link = self.build_link("/confirm-email", token)
        subject = f"Confirm your {settings.APP_NAME} account"
        html = (
            "<p>Hello,</p>"
            f"<p>Your confirmation code is <strong>{code}</strong>.</p>"
            f'<p>Or click the link below to confirm your account:</p><p><a href="{link}">{link}</a></p>'
            f"<p>The code and link expire in {ttl_minutes} minutes. "
            "If you did not sign up, ignore this message.</p>"
        )
        text = f"Confirmation code: {code}\nConfirm: {link}\nExpires in {ttl_minutes} minutes."
        return self.send(to, subject, html, text)

    def send_password_reset_email(self, to: str, code: str, token: str, ttl_minutes: int) -> Dict[str, Any]:
        link = self.build_link("/reset-password", token)
        subject = f"Reset your {settings.APP_NAME} password"
        html = (
            "<p>Hello,</p>"
            f"<p>Your password reset code is <strong>{code}</strong>.</p>"
            f'<p>Or use this link to choose a new password:</p><p><a href="{link}">{link}</a></p>'
            f"<p>The code and link expire in {ttl_minutes} minutes. "
            "If you did not ask for a reset, you can ignore this message.</p>"
        )
        text = f"Reset code: {code}\nReset: {link}\nExpires in {ttl_minutes} minutes."
        return self.send(to, subject, html, text)


email_service = EmailService(
    api_url=settings.EMAIL_API_URL,
    api_key=settings.EMAIL_API_KEY,
    sender=settings.EMAIL_FROM,
    reply_to=settings.EMAIL_REPLY_TO,
    site_url=settings.SITE_DNS,
    max_retries=settings.EMAIL_MAX_RETRIES,
    timeout_seconds=settings.EMAIL_TIMEOUT_SECONDS,
)
