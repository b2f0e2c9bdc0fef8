"""
EPay Webhook Endpoint Tests
The gateway must read "success" only for callbacks it may stop retrying
"""

import pytest
from fastapi.testclient import TestClient

from models import Order
from services import inventory_claim, order_service
from webhook_server import app

NOTIFY_PATH = "/payment/epay/notify"


@pytest.fixture
def client():
    # No context manager: the lifespan (scheduler, dispatcher worker) stays off
    return TestClient(app)


class TestEpayNotify:

    def test_get_callback_delivers_and_acknowledges(self, client, make_user, make_product, signed_callback, fetch):
        order = order_service.create_order(make_user(), make_product(stock=1))

        response = client.get(NOTIFY_PATH, params=signed_callback(order.id))

        assert response.status_code == 200
        assert response.text == "success"
        assert fetch(Order, order.id).status == "delivered"

    def test_post_form_callback(self, client, make_user, signed_callback, fetch):
        order = order_service.create_topup_order(make_user(), 1500)

        response = client.post(NOTIFY_PATH, data=signed_callback(order.id))

        assert response.text == "success"
        assert fetch(Order, order.id).status == "delivered"

    def test_duplicate_is_acknowledged(self, client, make_user, make_product, signed_callback):
        product_id = make_product(stock=2)
        order = order_service.create_order(make_user(), product_id)
        params = signed_callback(order.id)

        assert client.get(NOTIFY_PATH, params=params).text == "success"
        assert client.get(NOTIFY_PATH, params=params).text == "success"
        assert inventory_claim.count_available_codes(product_id) == 1

    def test_no_stock_is_acknowledged(self, client, make_user, make_product, signed_callback, fetch):
        order = order_service.create_order(make_user(), make_product(stock=0))

        assert client.get(NOTIFY_PATH, params=signed_callback(order.id)).text == "success"
        assert fetch(Order, order.id).status == "paid_no_stock"

    def test_non_success_status_is_acknowledged(self, client, make_user, make_product, signed_callback, fetch):
        order = order_service.create_order(make_user(), make_product(stock=1))

        response = client.get(NOTIFY_PATH, params=signed_callback(order.id, trade_status="WAIT_BUYER_PAY"))

        assert response.text == "success"
        assert fetch(Order, order.id).status == "pending"

    @pytest.mark.parametrize("tamper", ["signature", "amount", "order"])
    def test_rejections_answer_fail(self, client, make_user, make_product, signed_callback, fetch, tamper):
        order = order_service.create_order(make_user(), make_product(stock=1))
        if tamper == "signature":
            params = signed_callback(order.id)
            params["sign"] = "0" * 32
        elif tamper == "amount":
            params = signed_callback(order.id, money="0.01")
        else:
            params = signed_callback(order.id, out_trade_no="888888-1700000000")

        response = client.get(NOTIFY_PATH, params=params)

        assert response.status_code == 200
        assert response.text == "fail"
        assert fetch(Order, order.id).status == "pending"

    def test_internal_error_answers_fail(self, client, make_user, make_product, signed_callback, monkeypatch):
        order = order_service.create_order(make_user(), make_product(stock=1))

        def broken(params):
            raise RuntimeError("database exploded")

        monkeypatch.setattr("handlers.epay_webhook.confirm_payment", broken)

        assert client.get(NOTIFY_PATH, params=signed_callback(order.id)).text == "fail"


class TestHealth:

    def test_health_reports_starting_without_lifespan(self, client):
        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["ready"] is False
