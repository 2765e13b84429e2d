"""
HTTP surface: Razorpay checkout flow, orders, payments, settlements.
"""

import uuid

import pytest
from sqlalchemy.exc import OperationalError

from storefront.core.errors import GatewayUnavailable
from storefront.services.payment_service import PaymentService


@pytest.fixture
def verify_body(sign, order_draft):
    return {
        "razorpay_order_id": "order_1",
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": sign("order_1", "pay_1"),
        "orderData": order_draft,
    }


@pytest.fixture
async def settled(client, gateway, verify_body):
    gateway.add_payment("pay_1", amount_minor=49900)
    response = await client.post("/api/v1/razorpay/verify-payment", json=verify_body)
    assert response.status_code == 200
    return response.json()["data"]


@pytest.fixture
def order_request(customer_info, address):
    return {
        "customer_info": customer_info,
        "shipping_address": address,
        "items": [{"product_id": "tent-4p", "product_name": "Tent", "quantity": 2, "unit_price": 150}],
        "pricing": {"subtotal": 300, "tax": 54, "shipping": 50, "discount": 4, "total": 400},
        "payment_method": "CashOnDelivery",
    }


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["locks"] == "local"


class TestRazorpayCheckout:

    @pytest.mark.asyncio
    async def test_create_gateway_order(self, client, gateway):
        response = await client.post(
            "/api/v1/razorpay/create-order", json={"amount": 499.00, "currency": "INR", "receipt": "R-1"}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["amount"] == 49900
        assert data["currency"] == "INR"
        assert data["receipt"] == "R-1"
        assert gateway.intents[0]["amount"] == 49900

    @pytest.mark.asyncio
    async def test_create_gateway_order_requires_positive_amount(self, client):
        response = await client.post("/api/v1/razorpay/create-order", json={"amount": 0, "receipt": "R-1"})
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_create_gateway_order_requires_receipt(self, client):
        response = await client.post("/api/v1/razorpay/create-order", json={"amount": 10})
        assert response.status_code == 400
        assert response.json()["error"] == "missing_field"

    @pytest.mark.asyncio
    async def test_verify_payment_creates_order_and_payment(self, settled):
        order, payment = settled["order"], settled["payment"]

        assert order["items"][0]["total_price"] == 499.00
        assert order["pricing"]["total"] == 499.00
        assert order["payment_status"] == "Paid"
        assert payment["status"] == "Completed"
        assert payment["amount"]["total"] == 499.00
        assert payment["order_id"] == order["id"]
        assert settled["amount"] == 499.00

    @pytest.mark.asyncio
    async def test_resubmitted_callback_gets_identical_response(self, client, settled, verify_body):
        response = await client.post("/api/v1/razorpay/verify-payment", json=verify_body)

        assert response.status_code == 200
        assert response.json()["data"] == settled

    @pytest.mark.asyncio
    async def test_tampered_callback(self, client, gateway, verify_body):
        gateway.add_payment("pay_1")
        verify_body["razorpay_payment_id"] = "pay_2"

        response = await client.post("/api/v1/razorpay/verify-payment", json=verify_body)

        assert response.status_code == 400
        body = response.json()
        assert body == {
            "success": False,
            "error": "invalid_signature",
            "message": "Payment verification failed",
            "retryable": False,
        }

    @pytest.mark.asyncio
    async def test_missing_callback_fields(self, client):
        response = await client.post("/api/v1/razorpay/verify-payment", json={"razorpay_order_id": "order_1"})
        assert response.status_code == 400
        assert response.json()["error"] == "missing_field"

    @pytest.mark.asyncio
    async def test_gateway_outage_is_retryable(self, client, gateway, verify_body):
        gateway.fetch_error = GatewayUnavailable("Payment gateway error: 503")

        response = await client.post("/api/v1/razorpay/verify-payment", json=verify_body)

        assert response.status_code == 502
        assert response.json()["error"] == "gateway_fetch_failed"
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_get_payment_from_gateway(self, client, gateway):
        gateway.add_payment("pay_1", amount_minor=12345)

        response = await client.get("/api/v1/razorpay/payment/pay_1")

        assert response.status_code == 200
        body = response.json()
        assert body["source"] == "gateway"
        assert body["data"]["amount"] == 123.45

    @pytest.mark.asyncio
    async def test_get_payment_falls_back_to_database(self, client, gateway, settled):
        gateway.fetch_error = GatewayUnavailable("Payment gateway timed out")

        response = await client.get("/api/v1/razorpay/payment/pay_1")

        assert response.status_code == 200
        body = response.json()
        assert body["source"] == "database"
        assert body["data"]["id"] == settled["payment"]["id"]

    @pytest.mark.asyncio
    async def test_get_unknown_payment(self, client):
        response = await client.get("/api/v1/razorpay/payment/pay_missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_checkout_config_hides_secret(self, client):
        response = await client.get("/api/v1/razorpay/config")

        data = response.json()["data"]
        assert data["key_id"] == "rzp_test_key"
        assert data["currency"] == "INR"
        assert data["mode"] == "test"
        assert "test_secret" not in response.text


class TestRazorpayRefund:

    @pytest.mark.asyncio
    async def test_refund_requires_token(self, client, settled):
        response = await client.post("/api/v1/razorpay/refund", json={"payment_id": "pay_1", "amount": 200})
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_refund_requires_admin_role(self, client, settled, user_headers):
        response = await client.post(
            "/api/v1/razorpay/refund", json={"payment_id": "pay_1", "amount": 200}, headers=user_headers
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_partial_refund(self, client, settled, admin_headers):
        response = await client.post(
            "/api/v1/razorpay/refund",
            json={"payment_id": "pay_1", "amount": 200, "notes": {"reason": "Late delivery"}},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["amount"] == 200.00
        assert data["payment"]["status"] == "PartiallyRefunded"
        assert data["payment"]["refund_details"]["refund_amount"] == 200.00
        assert data["payment"]["refund_details"]["refund_reason"] == "Late delivery"

    @pytest.mark.asyncio
    async def test_refund_unknown_payment(self, client, admin_headers):
        response = await client.post(
            "/api/v1/razorpay/refund", json={"payment_id": "pay_missing"}, headers=admin_headers
        )
        assert response.status_code == 404


class TestOrdersApi:

    @pytest.mark.asyncio
    async def test_create_and_get(self, client, order_request):
        response = await client.post("/api/v1/orders", json=order_request)
        assert response.status_code == 201
        order = response.json()

        response = await client.get(f"/api/v1/orders/{order['id']}")

        assert response.status_code == 200
        assert response.json()["order_number"] == order["order_number"]
        assert response.json()["payment"] is None

    @pytest.mark.asyncio
    async def test_get_includes_payment(self, client, settled):
        response = await client.get(f"/api/v1/orders/{settled['order']['id']}")
        assert response.json()["payment"]["id"] == settled["payment"]["id"]

    @pytest.mark.asyncio
    async def test_create_with_mismatched_total(self, client, order_request):
        order_request["pricing"]["total"] = 999
        response = await client.post("/api/v1/orders", json=order_request)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_request_body_errors_stay_422(self, client, order_request):
        del order_request["customer_info"]
        response = await client.post("/api/v1/orders", json=order_request)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_unknown(self, client):
        response = await client.get(f"/api/v1/orders/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_customer_orders(self, client, order_request):
        await client.post("/api/v1/orders", json=order_request)
        response = await client.get("/api/v1/orders/customer/vikram@example.com")
        assert len(response.json()) == 1

    @pytest.mark.asyncio
    async def test_status_update(self, client, order_request, admin_headers):
        order = (await client.post("/api/v1/orders", json=order_request)).json()
        url = f"/api/v1/orders/{order['id']}/status"

        response = await client.put(url, json={"status": "Confirmed"}, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "Confirmed"

        response = await client.put(url, json={"status": "Delivered"}, headers=admin_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_shipping_update(self, client, order_request, admin_headers):
        order = (await client.post("/api/v1/orders", json=order_request)).json()
        response = await client.put(
            f"/api/v1/orders/{order['id']}/shipping",
            json={"shipping_method": "Overnight", "tracking_number": "TRK-9"},
            headers=admin_headers,
        )
        assert response.json()["shipping_method"] == "Overnight"
        assert response.json()["tracking_number"] == "TRK-9"

    @pytest.mark.asyncio
    async def test_customer_update(self, client, order_request):
        order = (await client.post("/api/v1/orders", json=order_request)).json()
        response = await client.put(f"/api/v1/orders/{order['id']}/customer", json={"last_name": "Sharma"})
        assert response.json()["customer_info"]["last_name"] == "Sharma"

    @pytest.mark.asyncio
    async def test_delete_settled_order(self, client, settled, admin_headers, verify_body):
        order_id = settled["order"]["id"]

        response = await client.delete(f"/api/v1/orders/{order_id}", headers=admin_headers)
        assert response.status_code == 200

        assert (await client.get(f"/api/v1/orders/{order_id}")).status_code == 404
        response = await client.post("/api/v1/razorpay/verify-payment", json=verify_body)
        assert response.status_code == 404


class TestPaymentsApi:

    @pytest.mark.asyncio
    async def test_manual_payment_flow(self, client, order_request, admin_headers):
        order = (await client.post("/api/v1/orders", json=order_request)).json()

        response = await client.post(
            "/api/v1/payments",
            json={
                "order_id": order["id"],
                "payment_method": {"type": "CashOnDelivery"},
                "amount": {"subtotal": 300, "tax": 54, "shipping": 50, "discount": 4},
            },
        )
        assert response.status_code == 201
        payment = response.json()
        assert payment["amount"]["total"] == 400.00
        assert payment["payment_method"] == {"type": "CashOnDelivery"}

        response = await client.put(
            f"/api/v1/payments/{payment['id']}/status", json={"status": "Completed"}, headers=admin_headers
        )
        assert response.json()["status"] == "Completed"
        assert response.json()["completed_at"] is not None

        order = (await client.get(f"/api/v1/orders/{order['id']}")).json()
        assert order["payment_status"] == "Paid"

    @pytest.mark.asyncio
    async def test_manual_payment_cannot_claim_gateway_payment(self, client, order_request):
        order = (await client.post("/api/v1/orders", json=order_request)).json()

        response = await client.post(
            "/api/v1/payments",
            json={
                "order_id": order["id"],
                "payment_method": {"type": "Gateway", "gateway_order_id": "order_1", "gateway_payment_id": "pay_1"},
                "amount": {"subtotal": 1},
            },
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_completed_manual_payment_requires_admin(self, client, order_request, admin_headers, user_headers):
        order = (await client.post("/api/v1/orders", json=order_request)).json()
        body = {
            "order_id": order["id"],
            "payment_method": {"type": "BankTransfer", "reference": "NEFT-7"},
            "amount": {"subtotal": 400},
            "status": "Completed",
        }

        assert (await client.post("/api/v1/payments", json=body)).status_code == 403
        assert (await client.post("/api/v1/payments", json=body, headers=user_headers)).status_code == 403
        order_after = (await client.get(f"/api/v1/orders/{order['id']}")).json()
        assert order_after["payment_status"] == "Pending"

        response = await client.post("/api/v1/payments", json=body, headers=admin_headers)
        assert response.status_code == 201
        assert response.json()["status"] == "Completed"

    @pytest.mark.asyncio
    async def test_lookups(self, client, settled):
        payment_id = settled["payment"]["id"]
        order_id = settled["order"]["id"]

        assert (await client.get(f"/api/v1/payments/{payment_id}")).json()["id"] == payment_id
        assert (await client.get(f"/api/v1/payments/order/{order_id}")).json()["id"] == payment_id
        payments = (await client.get("/api/v1/payments/customer/asha.rao@example.com")).json()
        assert [payment["id"] for payment in payments] == [payment_id]

    @pytest.mark.asyncio
    async def test_payment_for_order_without_one(self, client, order_request):
        order = (await client.post("/api/v1/orders", json=order_request)).json()
        response = await client.get(f"/api/v1/payments/order/{order['id']}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_status_update_requires_admin(self, client, settled):
        response = await client.put(
            f"/api/v1/payments/{settled['payment']['id']}/status", json={"status": "Cancelled"}
        )
        assert response.status_code in (401, 403)


class TestSettlementsApi:

    @pytest.mark.asyncio
    async def test_list_and_retry(self, client, settled, admin_headers):
        response = await client.get("/api/v1/settlements", params={"status": "completed"}, headers=admin_headers)

        assert response.status_code == 200
        intents = response.json()
        assert len(intents) == 1
        assert intents[0]["gateway_payment_id"] == "pay_1"

        response = await client.post(f"/api/v1/settlements/{intents[0]['id']}/retry", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["data"]["payment"]["id"] == settled["payment"]["id"]

    @pytest.mark.asyncio
    async def test_unknown_status_filter(self, client, admin_headers):
        response = await client.get("/api/v1/settlements", params={"status": "lost"}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_status"

    @pytest.mark.asyncio
    async def test_requires_admin(self, client, user_headers):
        response = await client.get("/api/v1/settlements", headers=user_headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unrecorded_refund_is_listed_and_applied(self, client, settled, admin_headers, monkeypatch):
        original = PaymentService.record_refund

        async def record_then_fail(self, payment, refund, reason, commit=True):
            await original(self, payment, refund, reason, commit=False)
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(PaymentService, "record_refund", record_then_fail)
        response = await client.post(
            "/api/v1/razorpay/refund", json={"payment_id": "pay_1", "amount": 200}, headers=admin_headers
        )
        assert response.status_code == 500
        assert response.json()["error"] == "persistence_failure"
        assert response.json()["retryable"] is True
        monkeypatch.undo()

        response = await client.get("/api/v1/settlements/refunds", params={"status": "pending"}, headers=admin_headers)
        queued = response.json()
        assert len(queued) == 1
        assert queued[0]["gateway_payment_id"] == "pay_1"
        assert queued[0]["amount"] == 200.00

        response = await client.post(f"/api/v1/settlements/refunds/{queued[0]['id']}/retry", headers=admin_headers)
        assert response.status_code == 200
        payment = response.json()["data"]["payment"]
        assert payment["status"] == "PartiallyRefunded"
        assert payment["refund_details"]["amount_refunded"] == 200.00

    @pytest.mark.asyncio
    async def test_refund_queue_requires_admin(self, client, user_headers):
        response = await client.get("/api/v1/settlements/refunds", headers=user_headers)
        assert response.status_code == 403
