"""Duitku client tests against an httpx.MockTransport."""

import hashlib
import json

import httpx

from kasir.payment_gateway import (
    PRODUCTION_BASE_URL,
    SANDBOX_BASE_URL,
    DuitkuClient,
)


MERCHANT = "D1234"
API_KEY = "secret-key"


def _md5(value):
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def _client(handler):
    return DuitkuClient(
        MERCHANT,
        API_KEY,
        base_url=SANDBOX_BASE_URL,
        callback_url="https://api.example/cb",
        return_url="https://app.example/done",
        transport=httpx.MockTransport(handler),
    )


def _create(client, **overrides):
    kwargs = dict(
        merchant_order_id="SUB-1-1-ABCD",
        payment_amount=75000,
        product_detail="Subscription Paket Standard",
        email="owner@kasir.test",
        customer_name="Owner",
    )
    kwargs.update(overrides)
    return client.create_payment(**kwargs)


def test_signatures_follow_provider_order():
    client = DuitkuClient(MERCHANT, API_KEY)

    assert client.generate_signature("ORDER-1", 75000) == _md5(f"{MERCHANT}ORDER-175000{API_KEY}")
    assert client.callback_signature(MERCHANT, "75000", "ORDER-1") == _md5(f"{MERCHANT}75000ORDER-1{API_KEY}")


def test_verify_callback():
    client = DuitkuClient(MERCHANT, API_KEY)
    good = client.callback_signature(MERCHANT, "75000", "ORDER-1")

    assert client.verify_callback(MERCHANT, "75000", "ORDER-1", good) is True
    assert client.verify_callback(MERCHANT, "75000", "ORDER-1", good.upper()) is True
    assert client.verify_callback(MERCHANT, "75001", "ORDER-1", good) is False
    assert client.verify_callback(MERCHANT, "75000", "ORDER-1", None) is False


def test_create_payment_success():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "statusCode": "00",
            "paymentUrl": "https://sandbox.duitku.com/pay/xyz",
            "reference": "DS123",
            "vaNumber": "7007014001234567",
        })

    result = _create(_client(handler))

    assert result.success is True
    assert result.data["payment_url"] == "https://sandbox.duitku.com/pay/xyz"
    assert result.data["reference"] == "DS123"
    assert result.data["payment_method"] == "Virtual Account"
    assert seen["url"] == f"{SANDBOX_BASE_URL}/v2/inquiry"
    body = seen["body"]
    assert body["merchantCode"] == MERCHANT
    assert body["paymentAmount"] == 75000
    assert body["callbackUrl"] == "https://api.example/cb"
    assert body["signature"] == _md5(f"{MERCHANT}SUB-1-1-ABCD75000{API_KEY}")


def test_create_payment_provider_rejection():
    def handler(request):
        return httpx.Response(200, json={"statusCode": "01", "statusMessage": "Invalid merchant"})

    result = _create(_client(handler))

    assert result.success is False
    assert "Invalid merchant" in result.error["message"]


def test_create_payment_http_error():
    def handler(request):
        return httpx.Response(500, text="boom")

    result = _create(_client(handler))

    assert result.success is False
    assert result.error["type"] == "http_status"


def test_create_payment_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    result = _create(_client(handler))

    assert result.success is False
    assert result.error["type"] == "timeout"


def test_create_payment_non_object_body():
    def handler(request):
        return httpx.Response(200, json=["x"])

    result = _create(_client(handler))

    assert result.success is False
    assert result.error["type"] == "decode"


def test_status_query_non_object_body():
    def handler(request):
        return httpx.Response(200, json="pending")

    result = _client(handler).check_transaction_status("SUB-1-1-ABCD")

    assert result.success is False
    assert result.error["type"] == "decode"


def test_create_payment_missing_fields_short_circuits():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    result = _create(_client(handler), email="")

    assert result.success is False
    assert "email" in result.error["message"]
    assert calls == []


def test_check_transaction_status():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "merchantOrderId": "SUB-1-1-ABCD",
            "reference": "DS123",
            "amount": "75000",
            "statusCode": "00",
            "statusMessage": "SUCCESS",
        })

    result = _client(handler).check_transaction_status("SUB-1-1-ABCD")

    assert result.success is True
    assert result.data == {
        "result_code": "00",
        "amount": "75000",
        "reference": "DS123",
        "status_message": "SUCCESS",
    }
    assert seen["url"].endswith("/transactionStatus")
    assert seen["body"]["signature"] == _md5(f"{MERCHANT}SUB-1-1-ABCD{API_KEY}")


def test_from_config_picks_base_url():
    config = {
        "DUITKU_MERCHANT_CODE": MERCHANT,
        "DUITKU_API_KEY": API_KEY,
        "DUITKU_SANDBOX": False,
        "GATEWAY_TIMEOUT_SECONDS": 12,
    }
    client = DuitkuClient.from_config(config)

    assert client.base_url == PRODUCTION_BASE_URL
    assert client.timeout == 12.0
    assert client.status_timeout == 15.0
