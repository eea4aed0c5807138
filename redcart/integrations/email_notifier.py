"""
Best-effort SMTP notifications.

Sending never raises: every attempt resolves to an ``EmailDispatchResult``
with status ``sent``, ``skipped`` or ``failed`` and is logged.
``verify_connection`` backs the setup check and does raise.
"""
import asyncio
import smtplib
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from email.message import EmailMessage
from email.utils import make_msgid
from html import escape
from typing import Iterator, Optional

import structlog

from redcart.config import Settings, get_settings
from redcart.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EmailDispatchResult:
    status: str  # sent, skipped, failed
    reason: Optional[str] = None
    message_id: Optional[str] = None


class EmailNotifier:
    """Sends order emails through the configured SMTP server."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _credentials(self) -> Optional[tuple[str, str]]:
        user = (self.settings.smtp_user or "").strip()
        password = "".join((self.settings.smtp_pass or "").split())
        if not user or not password:
            return None
        return user, password

    @contextmanager
    def _connect(self) -> Iterator[smtplib.SMTP]:
        """Open an authenticated SMTP session."""
        host = self.settings.smtp_host or ""
        port = self.settings.smtp_port or 0
        smtp_cls = smtplib.SMTP_SSL if self.settings.smtp_secure else smtplib.SMTP
        with smtp_cls(host, port, timeout=30) as server:
            credentials = self._credentials()
            if credentials:
                server.login(*credentials)
            yield server

    def _deliver(self, message: EmailMessage) -> None:
        with self._connect() as server:
            server.send_message(message)

    def _verify(self) -> None:
        with self._connect() as server:
            server.noop()

    async def verify_connection(self) -> None:
        """
        Connect and authenticate without sending anything.

        Raises:
            smtplib.SMTPException: If the server rejects the session
            OSError: If the server cannot be reached
        """
        await asyncio.to_thread(self._verify)

    async def send_email(
        self, kind: str, to: str, subject: str, text: str, html: str
    ) -> EmailDispatchResult:
        """
        Send one email.

        Args:
            kind: Metric label for the email type
            to: Recipient address
            subject: Subject line
            text: Plain-text body
            html: HTML alternative body

        Returns:
            EmailDispatchResult: Outcome of the attempt
        """
        recipient = (to or "").strip().lower()
        if not recipient:
            logger.warning("email_skipped", reason="missing_recipient", subject=subject)
            metrics.record_email(kind, "skipped")
            return EmailDispatchResult(status="skipped", reason="missing_recipient")

        if not self.settings.smtp_configured:
            logger.warning(
                "email_skipped",
                reason="smtp_not_configured",
                to=recipient,
                subject=subject,
                smtp_enabled=self.settings.smtp_enabled,
                has_smtp_host=bool(self.settings.smtp_host),
                has_smtp_port=bool(self.settings.smtp_port),
                has_smtp_from=bool(self.settings.smtp_from),
            )
            metrics.record_email(kind, "skipped")
            return EmailDispatchResult(status="skipped", reason="smtp_not_configured")

        message = EmailMessage()
        message["From"] = (self.settings.smtp_from or "").strip()
        message["To"] = recipient
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_failed", to=recipient, subject=subject, reason=str(e))
            metrics.record_email(kind, "failed")
            return EmailDispatchResult(status="failed", reason=str(e))

        message_id = message["Message-ID"]
        logger.info("email_sent", to=recipient, subject=subject, message_id=message_id)
        metrics.record_email(kind, "sent")
        return EmailDispatchResult(status="sent", message_id=message_id)

    async def send_order_confirmation(
        self, order_id: str, email: str, name: str, total: Decimal
    ) -> EmailDispatchResult:
        """Tell the customer their order is confirmed."""
        amount = f"{Decimal(total):.2f}"
        logger.info(
            "order_confirmation_email_queued",
            order_id=order_id,
            email=email,
            total=amount,
        )
        return await self.send_email(
            kind="order_confirmation",
            to=email,
            subject=f"RedCart Order Confirmation - {order_id}",
            text=(
                f"Hello {name}, your order {order_id} has been confirmed. "
                f"Total paid: {amount} KES."
            ),
            html=(
                '<div style="font-family: Arial, sans-serif; color: #111;">'
                '<h2 style="color: #C40000;">RedCart Order Confirmed</h2>'
                f"<p>Hello {escape(name)},</p>"
                f"<p>Your order <strong>{escape(order_id)}</strong> has been confirmed.</p>"
                f"<p>Total paid: <strong>{amount} KES</strong></p>"
                "</div>"
            ),
        )
