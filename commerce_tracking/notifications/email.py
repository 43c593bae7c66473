"""
Notification Dispatcher

Sends alert and report e-mails over SMTP. ``send_notification`` raises
``NotificationError``; every ``send_*`` alert wrapper is best-effort and
only logs failures, so callers can fire them from inside tracker writes.
"""

import html
from datetime import datetime, timezone
from email.message import EmailMessage
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

import aiosmtplib
import structlog
from prometheus_client import Counter

from commerce_tracking.config.settings import EmailSettings
from commerce_tracking.errors import NotificationError

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

NOTIFICATIONS_SENT = Counter(
    "tracking_notifications_total",
    "E-mail notifications by type and outcome",
    ["type", "outcome"],
)


class NotificationType(str, Enum):
    ORDER_DELAY = "order_delay"
    INVENTORY_LOW = "inventory_low"
    SUPPORT_URGENT = "support_urgent"
    SYSTEM_ERROR = "system_error"
    DAILY_REPORT = "daily_report"
    WEEKLY_REPORT = "weekly_report"
    SERVICE_STARTED = "service_started"


Sender = Callable[[EmailMessage], Awaitable[Any]]

_SEVERITY_COLORS = {
    "low": "#2e7d32",
    "medium": "#f9a825",
    "high": "#ef6c00",
    "critical": "#c62828",
}


def _render_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "<br>".join(_render_value(item) for item in value)
    if isinstance(value, Mapping):
        return "<br>".join(f"{html.escape(str(k))}: {_render_value(v)}" for k, v in value.items())
    return html.escape(str(value))


def render_html(title: str, body: str, data: Optional[Mapping[str, Any]] = None, color: str = "#37474f") -> str:
    rows = ""
    if data:
        rows = "".join(
            f"<tr><th align='left'>{html.escape(str(key))}</th><td>{_render_value(value)}</td></tr>"
            for key, value in data.items()
        )
        rows = f"<table cellpadding='6' style='border-collapse:collapse'>{rows}</table>"
    paragraphs = "".join(f"<p>{html.escape(line)}</p>" for line in body.splitlines() if line.strip())
    return (
        "<html><body style='font-family:Arial,sans-serif'>"
        f"<h2 style='color:{color}'>{html.escape(title)}</h2>"
        f"{paragraphs}{rows}"
        f"<p style='color:#90a4ae;font-size:12px'>Sent {datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S} UTC</p>"
        "</body></html>"
    )


class NotificationDispatcher:
    """
    E-mail notifications for operations, support, inventory and management.

    Example:
        dispatcher = NotificationDispatcher(settings.email)
        await dispatcher.send_inventory_low_alert("P1", "Mug", 3, 10)
    """

    def __init__(self, settings: EmailSettings, sender: Optional[Sender] = None):
        self.settings = settings
        self._sender = sender or self._smtp_send

    async def _smtp_send(self, message: EmailMessage) -> None:
        await aiosmtplib.send(
            message,
            hostname=self.settings.host,
            port=self.settings.port,
            username=self.settings.user,
            password=self.settings.password.get_secret_value(),
            use_tls=self.settings.port == 465,
            timeout=self.settings.timeout_seconds,
        )

    def build_message(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        data: Optional[Mapping[str, Any]] = None,
        color: str = "#37474f",
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.settings.from_address
        message["To"] = ", ".join(recipients)
        # Subjects carry product names and ids; header values must stay on one line
        subject = " ".join(subject.splitlines())
        message["Subject"] = f"[{self.settings.brand}] {subject}"

        text = body
        if data:
            text += "\n\n" + "\n".join(f"{key}: {value}" for key, value in data.items())
        message.set_content(text)
        message.add_alternative(render_html(subject, body, data, color), subtype="html")
        return message

    async def send_notification(
        self,
        notification_type: NotificationType,
        recipients: Sequence[str],
        subject: str,
        body: str,
        data: Optional[Mapping[str, Any]] = None,
        color: str = "#37474f",
    ) -> None:
        """
        Send one e-mail.

        Raises:
            NotificationError: the message could not be handed to the SMTP server
        """
        if not recipients:
            raise NotificationError(f"No recipients for {notification_type.value}")

        try:
            message = self.build_message(recipients, subject, body, data, color)
            await self._sender(message)
        except (aiosmtplib.SMTPException, OSError, ValueError, TypeError) as e:
            NOTIFICATIONS_SENT.labels(type=notification_type.value, outcome="failed").inc()
            raise NotificationError(f"Failed to send {notification_type.value}: {e}") from e

        NOTIFICATIONS_SENT.labels(type=notification_type.value, outcome="sent").inc()
        logger.info(
            "Notification sent",
            type=notification_type.value,
            recipients=len(recipients),
            subject=subject,
        )

    async def _best_effort(self, notification_type: NotificationType, *args, **kwargs) -> bool:
        try:
            await self.send_notification(notification_type, *args, **kwargs)
        except NotificationError as e:
            logger.warning("Notification not delivered", type=notification_type.value, error=str(e))
            return False
        return True

    # =========================================================================
    # ALERTS
    # =========================================================================

    async def send_order_delay_alert(
        self,
        order_id: str,
        customer_email: str = "",
        tracking_number: str = "",
        delay_reason: str = "",
        estimated_delivery: Optional[datetime] = None,
    ) -> bool:
        return await self._best_effort(
            NotificationType.ORDER_DELAY,
            self.settings.recipients("alert"),
            f"Order Delay Alert - {order_id}",
            "A shipment reported an exception or delay and may need customer follow-up.",
            {
                "Order ID": order_id,
                "Customer Email": customer_email or "-",
                "Tracking Number": tracking_number or "-",
                "Delay Reason": delay_reason or "Not specified",
                "Estimated Delivery": f"{estimated_delivery:%Y-%m-%d}" if estimated_delivery else "-",
            },
            color=_SEVERITY_COLORS["high"],
        )

    async def send_inventory_low_alert(
        self,
        product_id: str,
        product_name: str,
        current_stock: int,
        threshold: int,
        sku: str = "",
    ) -> bool:
        state = "out of stock" if current_stock <= 0 else "running low"
        return await self._best_effort(
            NotificationType.INVENTORY_LOW,
            self.settings.recipients("alert"),
            f"Low Stock Alert - {product_name or product_id}",
            f"{product_name or product_id} is {state}. Consider reordering.",
            {
                "Product ID": product_id,
                "SKU": sku or "-",
                "Current Stock": current_stock,
                "Threshold": threshold,
            },
            color=_SEVERITY_COLORS["critical" if current_stock <= 0 else "medium"],
        )

    async def send_support_urgent_alert(
        self,
        ticket_id: str,
        customer_email: str,
        subject: str,
        category: str,
    ) -> bool:
        return await self._best_effort(
            NotificationType.SUPPORT_URGENT,
            self.settings.recipients("alert"),
            f"Urgent Support Ticket - {ticket_id}",
            "An urgent ticket was opened and needs immediate attention.",
            {
                "Ticket ID": ticket_id,
                "Customer": customer_email or "-",
                "Subject": subject,
                "Category": category,
            },
            color=_SEVERITY_COLORS["critical"],
        )

    async def send_system_error_alert(
        self,
        component: str,
        error: str,
        severity: str = "high",
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Tech recipients always; management too when severity is critical"""
        recipients: List[str] = self.settings.recipients("tech")
        if severity == "critical":
            recipients = recipients + [
                r for r in self.settings.recipients("management") if r not in recipients
            ]
        data: Dict[str, Any] = {"Component": component, "Severity": severity, "Error": error}
        if context:
            data.update(context)
        return await self._best_effort(
            NotificationType.SYSTEM_ERROR,
            recipients,
            f"System Error ({severity.upper()}) - {component}",
            "The tracking service reported an error.",
            data,
            color=_SEVERITY_COLORS.get(severity, _SEVERITY_COLORS["high"]),
        )

    # =========================================================================
    # REPORTS
    # =========================================================================

    async def send_daily_report(self, report: Mapping[str, Any]) -> bool:
        return await self._best_effort(
            NotificationType.DAILY_REPORT,
            self.settings.recipients("report"),
            f"Daily Report - {report.get('date', '')}",
            "Operational summary for the day.",
            report,
        )

    async def send_weekly_report(self, report: Mapping[str, Any]) -> bool:
        return await self._best_effort(
            NotificationType.WEEKLY_REPORT,
            self.settings.recipients("report"),
            f"Weekly Report - {report.get('period', '')}",
            "Weekly performance summary with trends and recommendations.",
            report,
        )

    async def send_startup_notice(self, service: str, version: str) -> bool:
        return await self._best_effort(
            NotificationType.SERVICE_STARTED,
            self.settings.recipients("tech"),
            f"{service} started",
            "The tracking service started and the sync scheduler is running.",
            {"Service": service, "Version": version},
            color=_SEVERITY_COLORS["low"],
        )

    async def test_connection(self) -> bool:
        """Connect and authenticate against the SMTP server"""
        client = aiosmtplib.SMTP(
            hostname=self.settings.host,
            port=self.settings.port,
            use_tls=self.settings.port == 465,
            timeout=self.settings.timeout_seconds,
        )
        try:
            await client.connect()
            await client.login(self.settings.user, self.settings.password.get_secret_value())
            await client.quit()
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning("SMTP connection test failed", host=self.settings.host, error=str(e))
            return False

        logger.info("SMTP connection verified", host=self.settings.host)
        return True
