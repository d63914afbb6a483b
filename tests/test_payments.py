"""Tests for the Revolut Merchant API client."""
from decimal import Decimal

import pytest
import requests

from errors import PaymentProviderError
from payments import RevolutClient, to_minor_units


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data or {}
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._data


@pytest.mark.parametrize("amount,expected", [
    (Decimal("70.34"), 7034),
    (Decimal("99.98"), 9998),
    (0.1 + 0.2, 30),
    (19.995, 2000),
    (0, 0),
])
def test_to_minor_units(amount, expected):
    assert to_minor_units(amount) == expected


def test_create_order(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json, headers))
        return FakeResponse(201, {"id": "rev-9", "checkout_url": "https://pay.example/rev-9"})

    monkeypatch.setattr(requests, "post", fake_post)
    client = RevolutClient("sk_test", api_url="https://merchant.example/api/")

    result = client.create_order(
        amount=Decimal("70.34"), currency="eur", order_id="O-1",
        order_number="EP-20261018-1111", customer_email="maria@example.com",
        redirect_url="https://shop.example/checkout/success?orderId=O-1",
    )

    assert result == ("rev-9", "https://pay.example/rev-9")
    url, body, headers = calls[0]
    assert url == "https://merchant.example/api/1.0/orders"
    assert headers["Authorization"] == "Bearer sk_test"
    assert body["amount"] == 7034
    assert body["currency"] == "EUR"
    assert body["merchant_order_ext_ref"] == "O-1"
    assert body["description"] == "ElektroPolis Order EP-20261018-1111"


def test_provider_rejects(monkeypatch):
    monkeypatch.setattr(requests, "post", lambda *a, **kw: FakeResponse(401, text="bad key"))
    with pytest.raises(PaymentProviderError) as exc:
        RevolutClient("sk_bad").create_order(
            amount=1, currency="EUR", order_id="O-1", order_number="N",
            customer_email="m@example.com", redirect_url="https://x",
        )
    assert exc.value.status == 401


def test_provider_unreachable(monkeypatch):
    def unreachable(*args, **kwargs):
        raise requests.Timeout("timed out")

    monkeypatch.setattr(requests, "post", unreachable)
    with pytest.raises(PaymentProviderError) as exc:
        RevolutClient("sk_test").create_order(
            amount=1, currency="EUR", order_id="O-1", order_number="N",
            customer_email="m@example.com", redirect_url="https://x",
        )
    assert exc.value.status is None
