"""Pytest fixtures for the storefront tests."""

import os
import tempfile
from decimal import Decimal

# Must be set before app is imported: the engine is created at import time.
_db_dir = tempfile.mkdtemp()
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["REVOLUT_WEBHOOK_SECRET"] = ""
os.environ["RESEND_API_KEY"] = ""

import pytest

import app as storefront
from models import Base, Product


class FakeMailer:
    """Records e-mails instead of sending them."""

    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    def send_order_confirmation(self, order):
        self.sent.append(("confirmation", order.order_number))
        return self.succeed

    def send_order_shipped(self, order, tracking_note=None):
        self.sent.append(("shipped", order.order_number, tracking_note))
        return self.succeed

    def send_contact_notification(self, name, email, subject, message, phone=None):
        self.sent.append(("contact", email, subject))
        return self.succeed, self.succeed


@pytest.fixture
def db_session():
    """Fresh tables and a session bound to the app's engine."""
    Base.metadata.drop_all(storefront.engine)
    Base.metadata.create_all(storefront.engine)
    session = storefront.DBSession()
    yield session
    session.close()


@pytest.fixture
def catalog(db_session):
    products = {
        "P1": Product(id="P1", title="Beko Washing Machine", handle="beko-wm", sku="BK-WM1",
                      vendor="Beko", product_type="Washing Machine",
                      price=Decimal("10.00"), inventory_count=5, status="active"),
        "P2": Product(id="P2", title="Smeg Fridge Freezer", handle="smeg-ff", sku="SM-FF2",
                      vendor="Smeg", product_type="Fridge Freezer",
                      price=Decimal("49.99"), inventory_count=3, status="active"),
        "DRAFT": Product(id="DRAFT", title="Prototype Hood", handle="proto-hood",
                         price=Decimal("199.00"), inventory_count=10, status="draft"),
        "EMPTY": Product(id="EMPTY", title="Bosch Dishwasher", handle="bosch-dw",
                         vendor="Bosch", product_type="Dishwasher",
                         price=Decimal("399.00"), inventory_count=0, status="active"),
    }
    db_session.add_all(products.values())
    db_session.commit()
    return products


@pytest.fixture
def fake_mailer(monkeypatch):
    mailer = FakeMailer()
    monkeypatch.setattr(storefront, "get_mailer", lambda: mailer)
    return mailer


@pytest.fixture
def client(db_session):
    storefront.limiter.reset()
    storefront.app.config["TESTING"] = True
    with storefront.app.test_client() as c:
        yield c


def checkout_payload(items, **overrides):
    payload = {
        "items": items,
        "email": "maria@example.com",
        "phone": "+356 9999 1234",
        "shippingAddress": {
            "name": "Maria Borg",
            "line1": "12 Triq il-Kbira",
            "city": "Victoria",
            "postalCode": "VCT 1234",
            "country": "Malta",
        },
    }
    payload.update(overrides)
    return payload
