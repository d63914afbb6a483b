"""Order placement: validate a cart, store the order, take the stock.

The cart comes from an untrusted client. Titles and prices are always re-read
from the catalog; the prices the client sends along are ignored.
"""
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import (
    EmptyCart,
    IncompleteAddress,
    InsufficientStock,
    InvalidQuantity,
    MalformedCart,
    MissingContactInfo,
    OrderPersistFailure,
    ProductInactive,
    ProductUnavailable,
)
from models import Order, OrderItem, Product, Profile

logger = logging.getLogger(__name__)

SHIPPING_COST = Decimal("0.00")
DEFAULT_COUNTRY = "Malta"
ORDER_NUMBER_ATTEMPTS = 5


@dataclass
class DraftLine:
    product_id: str
    title: str
    unit_price: Decimal
    quantity: int
    observed_stock: int
    sku: str | None = None
    variant_id: str | None = None
    image_url: str | None = None

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class OrderDraft:
    """A cart that passed validation, priced from the catalog."""

    email: str
    phone: str
    shipping_address: dict
    lines: list[DraftLine] = field(default_factory=list)
    notes: str | None = None
    shipping_cost: Decimal = SHIPPING_COST

    @property
    def subtotal(self) -> Decimal:
        return sum((line.total for line in self.lines), Decimal("0.00"))

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.shipping_cost


@dataclass
class StockDecrement:
    """Outcome of one conditional stock update."""

    product_id: str
    quantity: int
    expected: int
    applied: bool


def _clean(value):
    if not isinstance(value, str):
        return ""
    return value.strip()


def _parse_address(raw) -> dict:
    if not isinstance(raw, dict):
        raise IncompleteAddress()
    address = {
        "name": _clean(raw.get("name")),
        "line1": _clean(raw.get("line1")),
        "line2": _clean(raw.get("line2")) or None,
        "city": _clean(raw.get("city")),
        "postalCode": _clean(raw.get("postalCode")),
        "country": _clean(raw.get("country")) or DEFAULT_COUNTRY,
    }
    if not all(address[k] for k in ("name", "line1", "city", "postalCode")):
        raise IncompleteAddress()
    return address


def _parse_quantity(item) -> int:
    """Whole, positive quantities only; 1.9 is rejected rather than truncated."""
    quantity = item.get("quantity", 1)
    if isinstance(quantity, float) and quantity.is_integer():
        quantity = int(quantity)
    elif isinstance(quantity, str):
        try:
            quantity = int(quantity.strip())
        except ValueError:
            raise InvalidQuantity(item.get("productId"))
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidQuantity(item.get("productId"))
    return quantity


def validate_order(session, payload: dict) -> OrderDraft:
    """Resolve a checkout payload against the catalog.

    Raises a CheckoutError subclass on the first problem found; nothing is
    written here.
    """
    if not isinstance(payload, dict):
        raise MalformedCart()
    items = payload.get("items") or []
    if not isinstance(items, list):
        raise MalformedCart("Cart items must be a list")
    if not items:
        raise EmptyCart()
    if not all(isinstance(item, dict) for item in items):
        raise MalformedCart("Each cart item must be an object")

    email = _clean(payload.get("email"))
    if not email:
        raise MissingContactInfo("email")
    phone = _clean(payload.get("phone"))
    if not phone:
        raise MissingContactInfo("phone")

    address = _parse_address(payload.get("shippingAddress"))

    draft = OrderDraft(
        email=email,
        phone=phone,
        shipping_address=address,
        notes=_clean(payload.get("notes")) or None,
    )

    # the same product may appear on several lines
    requested = {}
    for item in items:
        product_id = item.get("productId")
        quantity = _parse_quantity(item)
        product = session.get(Product, product_id) if isinstance(product_id, str) and product_id else None
        if product is None:
            raise ProductUnavailable(product_id)
        if product.status != "active":
            raise ProductInactive(product.id, product.title)
        requested[product.id] = requested.get(product.id, 0) + quantity
        if product.inventory_count < requested[product.id]:
            raise InsufficientStock(
                product.id, product.title, requested[product.id], max(product.inventory_count, 0)
            )

        draft.lines.append(DraftLine(
            product_id=product.id,
            title=product.title,
            unit_price=Decimal(product.price),
            quantity=quantity,
            observed_stock=product.inventory_count,
            sku=product.sku,
            variant_id=_clean(item.get("variantId")) or None,
            image_url=product.image_url,
        ))

    return draft


def generate_order_number(now=None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"EP-{now:%Y%m%d}-{random.randint(1000, 9999)}"


def resolve_customer_id(session, email: str):
    """Return the profile id registered under ``email``, or None for a guest."""
    profile = (
        session.query(Profile)
        .filter(func.lower(Profile.email) == email.strip().lower())
        .first()
    )
    return profile.id if profile else None


def _insert_header(session, draft: OrderDraft, customer_id) -> Order:
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order_number = generate_order_number()
        order = Order(
            id=str(uuid.uuid4()),
            order_number=order_number,
            customer_id=customer_id,
            customer_email=draft.email,
            customer_phone=draft.phone,
            status="pending",
            payment_status="unpaid",
            subtotal=draft.subtotal,
            shipping_cost=draft.shipping_cost,
            total=draft.total,
            shipping_address=draft.shipping_address,
            billing_address=dict(draft.shipping_address),
            notes=draft.notes,
        )
        session.add(order)
        try:
            session.commit()
            return order
        except IntegrityError:
            session.rollback()
            logger.warning(
                "Order number %s already taken (attempt %d/%d)",
                order_number, attempt, ORDER_NUMBER_ATTEMPTS,
            )
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to create order header for %s", draft.email)
            raise OrderPersistFailure()

    logger.error("Gave up generating a unique order number after %d attempts", ORDER_NUMBER_ATTEMPTS)
    raise OrderPersistFailure()


def _insert_items(session, order: Order, draft: OrderDraft):
    session.add_all([
        OrderItem(
            order_id=order.id,
            product_id=line.product_id,
            variant_id=line.variant_id,
            title=line.title,
            sku=line.sku,
            price=line.unit_price,
            quantity=line.quantity,
            total=line.total,
            image_url=line.image_url,
        )
        for line in draft.lines
    ])
    session.commit()


def _delete_header(session, order_id: str):
    try:
        session.query(Order).filter(Order.id == order_id).delete()
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.critical("Could not remove orphan order %s; delete it by hand", order_id, exc_info=True)


def write_order(session, draft: OrderDraft) -> Order:
    """Store the order header and its items, or neither.

    If the items fail after the header was committed, the header is deleted
    again before OrderPersistFailure is raised.
    """
    customer_id = resolve_customer_id(session, draft.email)
    order = _insert_header(session, draft, customer_id)
    order_id = order.id

    try:
        _insert_items(session, order, draft)
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to create items for order %s; rolling back header", order_id)
        _delete_header(session, order_id)
        raise OrderPersistFailure()

    logger.info("Order %s (%s) created, total %s", order.order_number, order_id, order.total)
    return order


def decrement_stock(session, product_id: str, expected: int, quantity: int) -> StockDecrement:
    """Compare-and-swap ``inventory_count`` from ``expected`` to ``expected - quantity``."""
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.inventory_count == expected)
        .values(inventory_count=expected - quantity)
    )
    try:
        result = session.execute(stmt)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Stock update failed for product %s", product_id)
        return StockDecrement(product_id, quantity, expected, applied=False)
    return StockDecrement(product_id, quantity, expected, applied=result.rowcount == 1)


def decrement_inventory(session, order: Order, draft: OrderDraft) -> list[StockDecrement]:
    """Take stock for every line. Lost races are logged, never raised."""
    outcomes = []
    expected = {}
    for line in draft.lines:
        observed = expected.get(line.product_id, line.observed_stock)
        outcome = decrement_stock(session, line.product_id, observed, line.quantity)
        if outcome.applied:
            expected[line.product_id] = observed - line.quantity
        else:
            logger.warning(
                "Stock for product %s changed since it was read as %d; "
                "order %s (%s) needs %d units reconciled by hand",
                line.product_id, observed, order.order_number, order.id, line.quantity,
            )
        outcomes.append(outcome)
    return outcomes


def place_order(session, payload: dict):
    """Validate, persist and take stock for a checkout payload.

    Returns the new order and the per-line stock outcomes.
    """
    draft = validate_order(session, payload)
    order = write_order(session, draft)
    outcomes = decrement_inventory(session, order, draft)
    return order, outcomes
