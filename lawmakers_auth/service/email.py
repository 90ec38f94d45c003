from __future__ import annotations

from typing import Optional
from urllib.parse import quote

import httpx

from lawmakers_auth.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """Transactional mail through an HTTP mail provider API.

    Supports:
    - Email verification links
    - Welcome mail after the first verification
    - Fallback to logging when no API key is configured (dev mode)

    Sending never raises: every failure is logged and reported as False so a
    mail outage cannot fail the request that triggered it.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        api_url: str = "https://api.resend.com/emails",
        from_email: str = "onboarding@resend.dev",
        from_name: str = "Lawmakers",
        app_origin: str = "http://localhost:5173",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.from_email = from_email
        self.from_name = from_name
        self.app_origin = app_origin.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.api_key and self.from_email)

    def verify_url(self, token: str) -> str:
        return f"{self.app_origin}/api/verify?token={quote(token, safe='')}"

    async def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        link: Optional[str] = None,
    ) -> bool:
        """POST one message to the provider. Returns True if it was accepted."""
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                link=link,
            )
            return True

        payload = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html_body,
            "text": text_body,
        }
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=self.timeout),
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            ) as client:
                response = await client.post(self.api_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_api_error",
                to=redact_email(to_email),
                status_code=e.response.status_code,
                body=e.response.text[:200],
            )
            return False
        except httpx.TimeoutException as e:
            logger.error("email_timeout", to=redact_email(to_email), error=str(e))
            return False
        except httpx.ConnectError as e:
            logger.error("email_connect_failed", to=redact_email(to_email), error=str(e))
            return False
        except httpx.HTTPError as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    async def send_verification_email(self, to_email: str, token: str) -> bool:
        """Send the email verification link."""
        verify_url = self.verify_url(token)

        subject = "Verify your email address"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Verify your email</h1>
        <p>Thanks for signing up! Please confirm your email address by clicking the button below:</p>
        <p style="margin: 30px 0;">
            <a href="{verify_url}" class="button">Verify Email</a>
        </p>
        <p>This link will expire in 24 hours.</p>
        <p>If you didn't create an account, you can safely ignore this email.</p>
        <div class="footer">
            <p>{self.from_name}</p>
            <p>If the button doesn't work, copy and paste this URL: {verify_url}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Verify your email address

Thanks for signing up! Please confirm your email address by visiting the link below:

{verify_url}

This link will expire in 24 hours.

If you didn't create an account, you can safely ignore this email.

---
{self.from_name}
"""

        return await self._send_email(to_email, subject, html_body, text_body, link=verify_url)

    async def send_welcome_email(self, to_email: str) -> bool:
        """Send a welcome message once the address is verified."""
        login_url = f"{self.app_origin}/login"

        subject = "Welcome aboard"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body>
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px; font-family: sans-serif;">
        <h1>Your email is verified</h1>
        <p>Your account is ready. You can sign in any time:</p>
        <p><a href="{login_url}">{login_url}</a></p>
    </div>
</body>
</html>
"""

        text_body = f"""Your email is verified

Your account is ready. You can sign in any time:

{login_url}
"""

        return await self._send_email(to_email, subject, html_body, text_body)
