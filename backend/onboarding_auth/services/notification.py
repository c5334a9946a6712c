"""
Notification dispatch service.

One-way delivery of verification codes and security alerts. Sends run as
tracked background tasks with their own timeout so a slow or failing mail
provider never blocks or fails an authentication request.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from onboarding_auth.core.config import settings

logger = logging.getLogger(__name__)

METHOD_TOTP = "totp"
METHOD_EMAIL = "email"

METHOD_LABELS = {
    METHOD_TOTP: "Authenticator app verification",
    METHOD_EMAIL: "Email verification",
}


@dataclass
class EmailMessage:
    to: str
    subject: str
    text: str


class NotificationSender(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


class LoggingSender:
    """Development sender: records that a message went out, never its body."""

    async def send(self, message: EmailMessage) -> None:
        logger.info(f"Email queued (log provider): subject={message.subject!r} to={message.to}")


class MailgunSender:
    def __init__(
        self,
        api_key: str,
        domain: str,
        from_email: str,
        base_url: str = "https://api.mailgun.net",
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.domain = domain
        self.from_email = from_email
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def send(self, message: EmailMessage) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{self.base_url}/v3/{self.domain}/messages",
                auth=("api", self.api_key),
                data={
                    "from": self.from_email,
                    "to": message.to,
                    "subject": message.subject,
                    "text": message.text,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()


def create_sender() -> NotificationSender:
    """Build the sender selected by EMAIL_PROVIDER."""
    if settings.EMAIL_PROVIDER == "mailgun":
        return MailgunSender(
            api_key=settings.MAILGUN_API_KEY,
            domain=settings.MAILGUN_DOMAIN,
            from_email=settings.MAILGUN_FROM_EMAIL,
            base_url=settings.MAILGUN_BASE_URL,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
    return LoggingSender()


class NotificationDispatcher:
    """Fire-and-forget wrapper around a NotificationSender."""

    def __init__(self, sender: NotificationSender, timeout: float | None = None):
        self.sender = sender
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, message: EmailMessage) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, message: EmailMessage) -> bool:
        try:
            await asyncio.wait_for(self.sender.send(message), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Notification timed out after {self.timeout}s: {message.subject!r}")
        except httpx.HTTPError as e:
            logger.error(f"Notification delivery failed: {type(e).__name__}")
        except Exception as e:
            logger.error(f"Unexpected notification error: {e}")
        return False

    async def drain(self) -> None:
        """Wait for in-flight sends to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def send_verification_code(self, to: str, code: str, purpose: str, expires_minutes: int) -> asyncio.Task:
        action = "finish setting up email verification" if purpose == "setup" else "sign in"
        return self.dispatch(
            EmailMessage(
                to=to,
                subject=f"Your {settings.MFA_ISSUER} verification code",
                text=(
                    f"Your verification code is {code}\n\n"
                    f"Enter it to {action}. It expires in {expires_minutes} minutes.\n"
                    "If you did not request this code, you can ignore this email."
                ),
            )
        )

    def send_security_alert(self, to: str, event: str, origin: str | None = None) -> asyncio.Task:
        where = f" from {origin}" if origin else ""
        return self.dispatch(
            EmailMessage(
                to=to,
                subject=f"{settings.MFA_ISSUER} security alert",
                text=(
                    f"We noticed: {event}{where}.\n\n"
                    "If this was not you, contact support and change your password."
                ),
            )
        )

    def send_mfa_method_changed(self, to: str, method: str, action: str) -> asyncio.Task:
        """Tell the account owner a second factor was enabled or disabled."""
        label = METHOD_LABELS.get(method, method)
        return self.dispatch(
            EmailMessage(
                to=to,
                subject=f"{settings.MFA_ISSUER}: two-factor settings changed",
                text=(
                    f"{label} was {action} on your account.\n\n"
                    "If you did not make this change, contact support and change your password."
                ),
            )
        )
