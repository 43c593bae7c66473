"""
Unit Tests for the Notification Dispatcher
"""
import aiosmtplib
import pytest
from prometheus_client import REGISTRY

from commerce_tracking.errors import NotificationError
from commerce_tracking.notifications.email import NotificationDispatcher, NotificationType, render_html


def html_part(message) -> str:
    return message.get_body(preferencelist=("html",)).get_content()


def text_part(message) -> str:
    return message.get_body(preferencelist=("plain",)).get_content()


class TestMessages:
    """Tests for message construction"""

    async def test_subject_and_headers(self, notifier, sender):
        """Subjects carry the brand prefix, From is the notification address"""
        await notifier.send_inventory_low_alert("P-2", "Mug", 3, 10, sku="MUG-1")

        message = sender.messages[0]
        assert message["Subject"] == "[Commerce Tracking] Low Stock Alert - Mug"
        assert message["From"] == "ops@example.com"
        assert message["To"] == "alerts@example.com"

    async def test_multipart_body(self, notifier, sender):
        """Plain text and HTML alternatives carry the same data"""
        await notifier.send_inventory_low_alert("P-2", "Mug", 0, 10)

        message = sender.messages[0]
        assert message.is_multipart()
        assert "Mug is out of stock" in text_part(message)
        assert "Current Stock: 0" in text_part(message)
        assert "<th align='left'>Threshold</th><td>10</td>" in html_part(message)

    async def test_html_is_escaped(self, notifier, sender):
        """Payload values cannot inject markup"""
        await notifier.send_support_urgent_alert("TICK-1", "a@example.com", "<script>alert(1)</script>", "billing")
        assert "&lt;script&gt;" in html_part(sender.messages[0])
        assert "<script>" not in html_part(sender.messages[0])

    async def test_subject_stays_on_one_line(self, notifier, sender):
        """Line breaks in product names do not reach the Subject header"""
        assert await notifier.send_inventory_low_alert("P-9", "Mug\nLarge", 3, 10) is True
        assert sender.subjects == ["[Commerce Tracking] Low Stock Alert - Mug Large"]

    def test_render_nested_values(self):
        """Lists and mappings render one entry per line"""
        page = render_html("Report", "Body", {"Top": [{"name": "Kettle", "revenue": 99.5}]})
        assert "name: Kettle<br>revenue: 99.5" in page


class TestRecipients:
    """Tests for recipient groups"""

    async def test_order_delay_goes_to_alerts(self, notifier, sender):
        assert await notifier.send_order_delay_alert("ORD-1", "c@example.com", "1Z", "Weather") is True
        assert sender.messages[0]["To"] == "alerts@example.com"
        assert sender.subjects == ["[Commerce Tracking] Order Delay Alert - ORD-1"]

    async def test_high_error_goes_to_tech(self, notifier, sender):
        """Non-critical errors reach tech only"""
        await notifier.send_system_error_alert("sync:daily", "boom", severity="high")

        assert sender.messages[0]["To"] == "tech@example.com"
        assert sender.subjects == ["[Commerce Tracking] System Error (HIGH) - sync:daily"]

    async def test_critical_error_adds_management(self, notifier, sender):
        """Critical errors also reach management"""
        await notifier.send_system_error_alert("process", "crash", severity="critical", context={"Host": "web-1"})

        message = sender.messages[0]
        assert message["To"] == "tech@example.com, ceo@example.com"
        assert "Host: web-1" in text_part(message)

    async def test_reports_fall_back_to_notification_email(self, notifier, sender):
        """Unconfigured groups use NOTIFICATION_EMAIL"""
        await notifier.send_daily_report({"date": "2024-03-15", "revenue": 10.0})
        await notifier.send_weekly_report({"period": "2024-03-09 to 2024-03-15"})

        assert [m["To"] for m in sender.messages] == ["ops@example.com", "ops@example.com"]
        assert sender.subjects == [
            "[Commerce Tracking] Daily Report - 2024-03-15",
            "[Commerce Tracking] Weekly Report - 2024-03-09 to 2024-03-15",
        ]


class TestFailures:
    """Tests for delivery failures"""

    async def test_send_notification_raises(self, settings, failing_sender):
        """Direct sends surface SMTP failures as NotificationError"""
        dispatcher = NotificationDispatcher(settings.email, failing_sender)
        with pytest.raises(NotificationError):
            await dispatcher.send_notification(
                NotificationType.SYSTEM_ERROR, ["tech@example.com"], "Subject", "Body",
            )

    async def test_no_recipients(self, notifier, sender):
        """An empty recipient list is rejected before sending"""
        with pytest.raises(NotificationError):
            await notifier.send_notification(NotificationType.DAILY_REPORT, [], "Subject", "Body")
        assert sender.messages == []

    async def test_best_effort_wrappers_return_false(self, settings, failing_sender):
        """Alert wrappers log and report failure instead of raising"""
        dispatcher = NotificationDispatcher(settings.email, failing_sender)
        assert await dispatcher.send_support_urgent_alert("TICK-1", "a@example.com", "Help", "billing") is False
        assert await dispatcher.send_daily_report({"date": "2024-03-15"}) is False

    async def test_unbuildable_message_is_best_effort(self, settings, sender):
        """A header the message cannot hold fails like a send failure"""
        email = settings.email.model_copy(update={"from_address": "ops@example.com\nBcc: x@example.com"})
        dispatcher = NotificationDispatcher(email, sender=sender)

        with pytest.raises(NotificationError):
            await dispatcher.send_notification(NotificationType.SYSTEM_ERROR, ["tech@example.com"], "Boom", "body")
        assert await dispatcher.send_system_error_alert("sync", "boom") is False
        assert sender.messages == []

    async def test_outcomes_are_counted(self, settings, notifier, failing_sender):
        """Sent and failed deliveries increment the notification counter"""
        def sample(outcome):
            return REGISTRY.get_sample_value(
                "tracking_notifications_total", {"type": "inventory_low", "outcome": outcome},
            ) or 0.0

        sent, failed = sample("sent"), sample("failed")
        await notifier.send_inventory_low_alert("P-1", "Kettle", 1, 10)
        await NotificationDispatcher(settings.email, failing_sender).send_inventory_low_alert("P-1", "Kettle", 1, 10)

        assert sample("sent") == sent + 1
        assert sample("failed") == failed + 1


class TestConnection:
    """Tests for the SMTP connection check"""

    async def test_unreachable_server(self, notifier, monkeypatch):
        """Connection errors are reported as False"""
        class Unreachable:
            def __init__(self, **kwargs):
                self.kwargs = kwargs

            async def connect(self):
                raise OSError("connection refused")

        monkeypatch.setattr(aiosmtplib, "SMTP", Unreachable)
        assert await notifier.test_connection() is False

    async def test_reachable_server(self, notifier, monkeypatch):
        """Connect, login and quit succeed"""
        calls = []

        class Reachable:
            def __init__(self, **kwargs):
                calls.append(("init", kwargs["hostname"], kwargs["port"]))

            async def connect(self):
                calls.append("connect")

            async def login(self, user, password):
                calls.append(("login", user, password))

            async def quit(self):
                calls.append("quit")

        monkeypatch.setattr(aiosmtplib, "SMTP", Reachable)
        assert await notifier.test_connection() is True
        assert calls == [
            ("init", "smtp.example.com", 587),
            "connect",
            ("login", "mailer", "mailer-password"),
            "quit",
        ]
