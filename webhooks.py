"""Revolut webhook verification and payment status reconciliation."""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from models import Order

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Revolut-Signature"
TIMESTAMP_HEADER = "Revolut-Request-Timestamp"

PAID_EVENTS = {"ORDER_COMPLETED"}
FAILED_EVENTS = {"ORDER_CANCELLED", "ORDER_PAYMENT_FAILED"}


def _as_bytes(value) -> bytes:
    if isinstance(value, bytes):
        return value
    return (value or "").encode("utf-8")


def sign(secret, timestamp, raw_body) -> str:
    """Return the ``v1=<hex>`` signature Revolut sends for this body."""
    payload = b"v1." + _as_bytes(timestamp) + b"." + _as_bytes(raw_body)
    digest = hmac.new(_as_bytes(secret), payload, hashlib.sha256).hexdigest()
    return f"v1={digest}"


def verify_signature(secret, raw_body, signature_header, timestamp_header) -> bool:
    """Check the signature header against the body.

    The header may carry several comma-separated ``v1=`` entries (during
    secret rotation); any one matching is enough.
    """
    if not secret or not signature_header:
        return False
    expected = sign(secret, timestamp_header, raw_body)
    return any(
        hmac.compare_digest(candidate.strip(), expected)
        for candidate in signature_header.split(",")
    )


@dataclass
class WebhookEvent:
    event: str
    order_id: str | None = None
    merchant_order_ext_ref: str | None = None

    @classmethod
    def parse(cls, raw_body):
        data = json.loads(raw_body)
        return cls(
            event=data.get("event") or "",
            order_id=data.get("order_id"),
            merchant_order_ext_ref=data.get("merchant_order_ext_ref"),
        )


def find_order(session, event: WebhookEvent):
    """Our own order id wins; fall back to the provider's order id."""
    if event.merchant_order_ext_ref:
        return session.get(Order, event.merchant_order_ext_ref)
    if event.order_id:
        return session.query(Order).filter(Order.revolut_order_id == event.order_id).first()
    return None


def reconcile(session, event: WebhookEvent, mailer=None, now=None):
    """Apply a payment event to its order and return the order, if any.

    ORDER_COMPLETED marks the order paid and confirmed every time it arrives,
    then tries to send the confirmation e-mail. Cancel and failure events mark
    the payment failed unless the order is already paid.
    """
    logger.info(
        "Revolut webhook: %s for order %s (ref %s)",
        event.event, event.order_id, event.merchant_order_ext_ref,
    )
    if event.event not in PAID_EVENTS | FAILED_EVENTS:
        logger.info("Ignoring Revolut event %s", event.event)
        return None

    order = find_order(session, event)
    if order is None:
        logger.error(
            "No order for Revolut event %s (order_id=%s, ref=%s)",
            event.event, event.order_id, event.merchant_order_ext_ref,
        )
        return None

    if event.event in PAID_EVENTS:
        order.payment_status = "paid"
        order.paid_at = now or datetime.now(timezone.utc)
        order.status = "confirmed"
        session.commit()
        logger.info("Order %s marked as paid", order.order_number)

        if mailer is not None and not mailer.send_order_confirmation(order):
            logger.error("Confirmation e-mail for order %s was not sent", order.order_number)
        return order

    if order.payment_status == "paid":
        logger.warning(
            "Ignoring %s for order %s: already paid", event.event, order.order_number
        )
        return order

    order.payment_status = "failed"
    session.commit()
    logger.info("Order %s payment marked as failed (%s)", order.order_number, event.event)
    return order
