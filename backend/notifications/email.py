"""Email transports used by EMAIL workflow steps.

The step handler formats the message and hands it to the configured
transport. Three transports ship:

- ``log``: records the message in the application log (development/test)
- ``smtp``: stdlib smtplib, run in an executor to avoid blocking
- ``http``: JSON POST to a mail API (httpx)

Transports raise on delivery failure; the step boundary turns that into
a failed execution.
"""

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Optional
from uuid import uuid4

import httpx

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


# ─── Data Types ────────────────────────────────────────────────

@dataclass
class EmailMessage:
    """An outgoing email."""
    to: str
    subject: str
    body: str
    from_address: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: f"<{uuid4()}@workflows>")


# ─── Base Transport ────────────────────────────────────────────

class EmailTransport(ABC):
    """Abstract base for email transports."""

    name: str = "base"

    @abstractmethod
    async def send(self, message: EmailMessage) -> str:
        """Deliver ``message`` and return its message id."""
        ...


class LogEmailTransport(EmailTransport):
    """Writes messages to the log and keeps them in memory.

    Used in development and tests; ``sent`` holds every delivered message.
    """

    name = "log"

    def __init__(self):
        self.sent: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> str:
        self.sent.append(message)
        logger.info(f"Email to {message.to}: {message.subject}")
        return message.message_id


# ─── SMTP ──────────────────────────────────────────────────────

class SmtpEmailTransport(EmailTransport):
    """Send email via SMTP."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_address: str = "workflows@localhost",
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address

    async def send(self, message: EmailMessage) -> str:
        from_addr = message.from_address or self.from_address

        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = from_addr
        msg["To"] = message.to
        msg["Message-ID"] = message.message_id
        msg.attach(MIMEText(message.body, "plain"))

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self._send_smtp(from_addr, message.to, msg))
        logger.info(f"Email sent via SMTP to {message.to}")
        return message.message_id

    def _send_smtp(self, from_addr, to_addr, msg):
        """Synchronous SMTP send."""
        with smtplib.SMTP(self.host, self.port) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(from_addr, [to_addr], msg.as_string())


# ─── HTTP API ──────────────────────────────────────────────────

class HttpEmailTransport(EmailTransport):
    """Send email through a JSON mail API."""

    name = "http"

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        from_address: str = "workflows@localhost",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout
        self._client = client

    async def send(self, message: EmailMessage) -> str:
        payload = {
            "from": message.from_address or self.from_address,
            "to": message.to,
            "subject": message.subject,
            "text": message.body,
            "message_id": message.message_id,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        if self._client is not None:
            response = await self._client.post(self.api_url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError:
            data = {}
        message_id = data.get("id") or data.get("message_id") or message.message_id
        logger.info(f"Email sent via API to {message.to} ({response.status_code})")
        return message_id


# ─── Factory ───────────────────────────────────────────────────

def create_email_transport(settings: Optional[Settings] = None) -> EmailTransport:
    """Build the transport selected by ``EMAIL_TRANSPORT``."""
    settings = settings or get_settings()
    kind = settings.EMAIL_TRANSPORT.lower()

    if kind == "smtp":
        return SmtpEmailTransport(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            use_tls=settings.SMTP_USE_TLS,
            from_address=settings.EMAIL_FROM_ADDRESS,
        )
    if kind == "http":
        if not settings.EMAIL_API_URL:
            raise ValueError("EMAIL_API_URL must be set when EMAIL_TRANSPORT=http")
        return HttpEmailTransport(
            api_url=settings.EMAIL_API_URL,
            api_key=settings.EMAIL_API_KEY,
            from_address=settings.EMAIL_FROM_ADDRESS,
            timeout=settings.EMAIL_TIMEOUT_SECONDS,
        )
    if kind == "log":
        return LogEmailTransport()
    raise ValueError(f"Unknown EMAIL_TRANSPORT: {settings.EMAIL_TRANSPORT}")


# Singleton
_transport: Optional[EmailTransport] = None


def get_email_transport() -> EmailTransport:
    """Get or create the process-wide email transport."""
    global _transport
    if _transport is None:
        _transport = create_email_transport()
    return _transport
