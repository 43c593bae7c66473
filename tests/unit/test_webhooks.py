"""
Unit Tests for the Webhook API
"""
import json

import httpx
import pytest

from commerce_tracking.serving.api import create_app
from commerce_tracking.serving.api.events import FAMILIES, OrderCreated, UnhandledEvent
from commerce_tracking.serving.api.signature import compute_signature, signature_matches
from commerce_tracking.store.schemas import (
    CONVERSION_EVENTS,
    INVENTORY_ALERTS,
    ORDERS,
    SHIPPING_UPDATES,
    STATUS_HISTORY,
    SUPPORT_TICKETS,
    USER_ACTIVITIES,
)
from commerce_tracking.tracking.models import OrderStatus, ProductInventory


@pytest.fixture
async def client(service):
    app = create_app(service)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def post(client, settings):
    """POST a JSON payload signed with the webhook secret"""
    secret = settings.webhook.secret.get_secret_value()

    async def send(path, payload, signed=True, **headers):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        headers.setdefault("Content-Type", "application/json")
        if signed:
            headers.setdefault("X-Webhook-Signature", compute_signature(secret, body))
        return await client.post(path, content=body, headers=headers)

    return send


@pytest.fixture
async def tracked_order(post, sample_order_payload):
    response = await post("/webhooks/order", {"action": "created", "order": sample_order_payload})
    assert response.status_code == 200
    return sample_order_payload


class TestSignature:
    """Tests for HMAC verification"""

    def test_matches_with_prefix(self):
        """Bare hex and sha256=-prefixed digests are both accepted"""
        digest = compute_signature("secret", b"{}")
        assert signature_matches("secret", b"{}", digest)
        assert signature_matches("secret", b"{}", f"sha256={digest}")
        assert signature_matches("secret", b"{}", digest.upper())

    def test_rejects_other_body(self):
        digest = compute_signature("secret", b"{}")
        assert not signature_matches("secret", b"[]", digest)
        assert not signature_matches("secret", b"{}", None)

    @pytest.mark.parametrize("body", [b"", b'{"action": "archived"}', json.dumps({"items": ["x" * 64] * 2000}).encode()])
    async def test_signature_over_body_variants(self, post, settings, body):
        """Valid digests pass, a flipped byte or another secret is rejected"""
        secret = settings.webhook.secret.get_secret_value()
        digest = compute_signature(secret, body)
        flipped = bytes([body[0] ^ 1]) + body[1:] if body else b"x"

        accepted = await post("/webhooks/order", body, signed=False, **{"X-Webhook-Signature": digest})
        tampered = await post("/webhooks/order", flipped, signed=False, **{"X-Webhook-Signature": digest})
        foreign = await post(
            "/webhooks/order", body, signed=False, **{"X-Webhook-Signature": compute_signature("other", body)},
        )

        assert accepted.status_code != 401
        assert tampered.status_code == 401
        assert foreign.status_code == 401

    def test_non_ascii_digest_does_not_match(self):
        assert not signature_matches("secret", b"{}", "sha256=\xe9abc")

    async def test_non_ascii_header_is_rejected(self, post, sender):
        """Latin-1 header bytes fail verification with 401 and send no alert"""
        response = await post(
            "/webhooks/order",
            {"action": "created"},
            signed=False,
            **{"X-Webhook-Signature": b"sha256=\xe9abc"},
        )
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}
        assert sender.messages == []

    async def test_missing_signature(self, post):
        """Unsigned requests to signed endpoints are rejected"""
        response = await post("/webhooks/order", {"action": "created"}, signed=False)
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}

    async def test_wrong_signature(self, post):
        response = await post("/webhooks/payment", {"action": "payment_completed"}, **{"X-Webhook-Signature": "00ff"})
        assert response.status_code == 401

    async def test_github_style_header(self, post, settings, sample_order_payload):
        """X-Hub-Signature-256 is accepted as well"""
        body = json.dumps({"action": "created", "order": sample_order_payload}).encode()
        digest = compute_signature(settings.webhook.secret.get_secret_value(), body)
        response = await post("/webhooks/order", body, signed=False, **{"X-Hub-Signature-256": f"sha256={digest}"})
        assert response.status_code == 200

    async def test_user_endpoint_is_unsigned(self, post):
        """The analytics beacon needs no signature"""
        response = await post(
            "/webhooks/user",
            {"type": "page_view", "userId": "U1", "sessionId": "S1", "page": "/home"},
            signed=False,
        )
        assert response.status_code == 200


class TestEventParsing:
    """Tests for the event families"""

    def test_discriminator_prefix(self, sample_order_payload):
        """'order.created' and 'created' select the same variant"""
        family = FAMILIES["order"]
        event = family.parse({"event": "order.created", "order": sample_order_payload})
        assert isinstance(event, OrderCreated)

    def test_unknown_action(self):
        event = FAMILIES["payment"].parse({"action": "chargeback_opened", "orderId": "ORD-1"})
        assert isinstance(event, UnhandledEvent)
        assert event.name == "chargeback_opened"

    def test_order_reference_from_nested_order(self):
        """Payment events may carry the id in an order object"""
        event = FAMILIES["payment"].parse({"action": "payment_completed", "order": {"id": "ORD-9"}})
        assert event.order_id == "ORD-9"


class TestOrderWebhooks:
    """Tests for order, payment and shipping webhooks"""

    async def test_order_created(self, post, service, sample_order_payload):
        response = await post("/webhooks/order", {"action": "created", "order": sample_order_payload})

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Order webhook processed"}
        assert (await service.orders.get_order("ORD-1001")).total_amount == 149.5

    async def test_created_then_shipped(self, post, stores, sample_order_payload):
        """order.created then order.shipped leaves one order, two transitions and one shipping update"""
        await post("/webhooks/order", {"event": "order.created", "order": {**sample_order_payload, "id": "O1"}})
        response = await post("/webhooks/order", {"event": "order.shipped", "orderId": "O1", "trackingNumber": "T1"})

        assert response.status_code == 200
        orders = stores["orders"].rows(ORDERS.name)
        assert len(orders) == 1
        assert orders[0][4] == "shipped"
        history = stores["orders"].rows(STATUS_HISTORY.name)
        assert [row[1:3] for row in history] == [["", "pending"], ["pending", "shipped"]]
        shipping = stores["orders"].rows(SHIPPING_UPDATES.name)
        assert len(shipping) == 1
        assert shipping[0][:2] == ["O1", "T1"]

    async def test_order_updated_with_status_change(self, post, service, stores, tracked_order):
        """A status change is logged once, then the order row is refreshed"""
        updated = {**tracked_order, "status": "shipped", "trackingNumber": "1Z999", "carrier": "UPS"}

        response = await post("/webhooks/order", {"action": "updated", "statusChanged": True, "order": updated})

        assert response.status_code == 200
        history = stores["orders"].rows(STATUS_HISTORY.name)
        assert [row[1:3] for row in history] == [["", "pending"], ["pending", "shipped"]]
        assert (await service.orders.get_order("ORD-1001")).tracking_number == "1Z999"

    async def test_order_updated_for_unknown_order(self, post, service, sample_order_payload):
        """Updates for unseen orders create them"""
        response = await post(
            "/webhooks/order",
            {"action": "updated", "statusChanged": True, "order": {**sample_order_payload, "status": "confirmed"}},
        )
        assert response.status_code == 200
        assert (await service.orders.get_order("ORD-1001")).status == OrderStatus.CONFIRMED

    async def test_order_delivered(self, post, service, tracked_order):
        response = await post("/webhooks/order", {"action": "delivered", "orderId": "ORD-1001"})
        assert response.status_code == 200
        order = await service.orders.get_order("ORD-1001")
        assert order.status == OrderStatus.DELIVERED
        assert order.actual_delivery is not None

    async def test_payment_completed(self, post, service, tracked_order):
        response = await post("/webhooks/payment", {"action": "payment_completed", "orderId": "ORD-1001"})
        assert response.json()["message"] == "Payment webhook processed"
        assert (await service.orders.get_order("ORD-1001")).status == OrderStatus.CONFIRMED

    async def test_refund(self, post, stores, tracked_order):
        await post("/webhooks/payment", {"type": "refund_processed", "orderId": "ORD-1001", "amount": 20})
        assert stores["orders"].rows(STATUS_HISTORY.name)[-1][5] == "Refund: $20.00"

    async def test_payment_for_unknown_order(self, post):
        """Tracker failures become a generic 500"""
        response = await post("/webhooks/payment", {"action": "payment_failed", "orderId": "ORD-404"})
        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Failed to process payment webhook"}

    async def test_shipping_exception_alerts(self, post, service, sender, tracked_order):
        """Carrier exceptions update the order and e-mail a delay alert"""
        response = await post("/webhooks/shipping", {
            "status": "exception",
            "orderId": "ORD-1001",
            "trackingNumber": "1Z999",
            "carrier": "UPS",
            "statusDescription": "Weather delay",
        })

        assert response.status_code == 200
        assert (await service.orders.get_order("ORD-1001")).status == OrderStatus.SHIPPED
        assert "[Commerce Tracking] Order Delay Alert - ORD-1001" in sender.subjects

    async def test_shipping_out_for_delivery(self, post, service, tracked_order):
        await post("/webhooks/shipping", {"status": "out_for_delivery", "orderId": "ORD-1001"})
        assert (await service.orders.get_order("ORD-1001")).status == OrderStatus.OUT_FOR_DELIVERY

    async def test_shipping_without_order_id(self, post):
        """Updates that cannot be matched to an order are acknowledged"""
        response = await post("/webhooks/shipping", {"status": "in_transit", "trackingNumber": "1Z"})
        assert response.status_code == 200


class TestActivityWebhooks:
    """Tests for the user activity beacon"""

    async def test_page_view(self, post, stores):
        await post("/webhooks/user", {
            "type": "page_view",
            "userId": "U1",
            "sessionId": "S1",
            "page": "/home",
            "userAgent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile Safari/604.1",
        }, signed=False)

        row = stores["analytics"].rows(USER_ACTIVITIES.name)[0]
        assert row[:4] == ["U1", "S1", "page_view", "/home"]
        assert row[12] == "mobile"

    async def test_add_to_cart_converts(self, post, stores):
        await post("/webhooks/user", {
            "activityType": "add_to_cart", "userId": "U1", "sessionId": "S1", "productId": "P-1", "value": 49.75,
        }, signed=False)

        conversion = stores["analytics"].rows(CONVERSION_EVENTS.name)[0]
        assert conversion[2:5] == ["add_to_cart", "49.75", "P-1"]

    async def test_purchase_closes_journey(self, post, service):
        await post("/webhooks/user", {
            "type": "purchase", "userId": "U1", "sessionId": "S1", "orderId": "ORD-1", "value": 10,
            "productIds": ["P-1"],
        }, signed=False)

        assert (await service.journey.get_journey("U1", "S1"))[13] == "purchase"


class TestSupportWebhooks:
    """Tests for support webhooks"""

    async def test_ticket_lifecycle(self, post, service, stores, sender):
        """Created, assigned and scored through the webhook"""
        await post("/webhooks/support", {
            "action": "ticket_created",
            "ticket": {"subject": "Broken kettle", "priority": "urgent", "customerEmail": "ada@example.com"},
        })
        ticket_id = stores["support"].rows(SUPPORT_TICKETS.name)[0][0]

        await post("/webhooks/support", {"action": "ticket_assigned", "ticketId": ticket_id, "assignedTo": "bob"})
        response = await post("/webhooks/support", {"action": "satisfaction_score", "ticketId": ticket_id, "score": 5})

        assert response.status_code == 200
        ticket = await service.support.get_ticket(ticket_id)
        assert ticket.assigned_to == "bob"
        assert ticket.satisfaction_score == 5
        assert sender.subjects == [f"[Commerce Tracking] Urgent Support Ticket - {ticket_id}"]

    async def test_invalid_score(self, post, stores):
        await post("/webhooks/support", {"action": "ticket_created", "ticket": {"subject": "Hi"}})
        ticket_id = stores["support"].rows(SUPPORT_TICKETS.name)[0][0]

        response = await post("/webhooks/support", {"action": "satisfaction_score", "ticketId": ticket_id, "score": 9})
        assert response.status_code == 500


class TestInventoryWebhooks:
    """Tests for inventory and CMS webhooks"""

    @pytest.fixture
    async def mug(self, service):
        await service.inventory.update_product_inventory(ProductInventory(
            product_id="P-2", product_name="Mug", sku="MUG-1", current_stock=12, low_stock_threshold=10,
        ))

    async def test_sale_raises_low_stock_alert(self, post, service, stores, sender, mug):
        response = await post("/webhooks/inventory", {
            "action": "stock_movement", "productId": "P-2", "movementType": "sale", "quantity": 5,
        })

        assert response.status_code == 200
        assert (await service.inventory.get_product("P-2")).current_stock == 7
        assert len(stores["inventory"].rows(INVENTORY_ALERTS.name)) == 1
        assert sender.subjects == ["[Commerce Tracking] Low Stock Alert - Mug"]

    async def test_reported_low_stock(self, post, sender):
        await post("/webhooks/inventory", {
            "action": "low_stock_alert", "productId": "P-9", "productName": "Teapot", "currentStock": 1, "threshold": 5,
        })
        assert sender.subjects == ["[Commerce Tracking] Low Stock Alert - Teapot"]

    async def test_strapi_order(self, post, service):
        response = await post("/webhooks/strapi/order", {
            "event": "entry.create", "model": "order", "entry": {"id": 7, "status": "pending", "totalAmount": 20},
        })
        assert response.json()["message"] == "Strapi order webhook processed"
        assert (await service.orders.get_order("7")).total_amount == 20.0

    async def test_strapi_other_model_ignored(self, post, service):
        response = await post("/webhooks/strapi/product", {
            "event": "entry.update", "model": "category", "entry": {"id": 3},
        })
        assert response.status_code == 200
        assert await service.inventory.get_product("3") is None

    async def test_strapi_product(self, post, service):
        await post("/webhooks/strapi/product", {
            "event": "entry.update", "model": "product", "entry": {"id": 5, "name": "Teapot", "inventory": 30},
        })
        assert (await service.inventory.get_product("5")).current_stock == 30


class TestDelivery:
    """Tests for error boundaries and redelivery"""

    async def test_unknown_action_acknowledged(self, post):
        response = await post("/webhooks/order", {"action": "archived", "orderId": "ORD-1"})
        assert response.status_code == 200
        assert response.json()["success"] is True

    async def test_malformed_json(self, post):
        response = await post("/webhooks/order", b"{not json")
        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Failed to process order webhook"}

    async def test_non_object_payload(self, post):
        response = await post("/webhooks/inventory", [1, 2, 3])
        assert response.status_code == 500

    async def test_duplicate_delivery(self, post, stores, sample_order_payload):
        """A redelivered id is acknowledged without reprocessing"""
        payload = {"action": "created", "order": sample_order_payload}
        await post("/webhooks/order", payload, **{"X-Webhook-Id": "evt-1"})
        response = await post("/webhooks/order", payload, **{"X-Webhook-Id": "evt-1"})

        assert response.json() == {"success": True, "message": "Duplicate delivery ignored"}
        assert len(stores["orders"].rows(STATUS_HISTORY.name)) == 1

    async def test_failed_delivery_can_retry(self, post, service, tracked_order):
        """A failed delivery releases its id"""
        first = await post("/webhooks/payment", {"action": "payment_completed", "orderId": "ORD-404"},
                           **{"X-Delivery-Id": "evt-2"})
        assert first.status_code == 500

        retry = await post("/webhooks/payment", {"action": "payment_completed", "orderId": "ORD-1001"},
                           **{"X-Delivery-Id": "evt-2"})
        assert retry.json()["message"] == "Payment webhook processed"


class TestOperationalEndpoints:
    """Tests for health and metrics"""

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["service"] == "commerce-tracking"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "X-Request-ID" in response.headers

    async def test_request_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    async def test_metrics(self, client, post, tracked_order):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert 'tracking_webhooks_total{family="order",outcome="processed"}' in response.text
