import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


def new_id():
    return str(uuid.uuid4())


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    handle = Column(String, unique=True)
    sku = Column(String)
    vendor = Column(String)
    product_type = Column(String)
    price = Column(Numeric(10, 2), nullable=False)
    compare_at_price = Column(Numeric(10, 2))
    inventory_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="draft")  # active, draft, archived
    image_url = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String)
    phone = Column(String)
    address_line1 = Column(String)
    address_line2 = Column(String)
    city = Column(String)
    postal_code = Column(String)
    country = Column(String)
    role = Column(String, nullable=False, default="customer")  # customer, staff, admin
    password_hash = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    order_number = Column(String, unique=True, nullable=False)
    customer_id = Column(String(36), ForeignKey("profiles.id"))
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, confirmed, shipped, delivered, cancelled
    payment_status = Column(String, nullable=False, default="unpaid")  # unpaid, paid, failed, refunded
    subtotal = Column(Numeric(10, 2), nullable=False)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)
    shipping_address = Column(JSON)
    billing_address = Column(JSON)
    notes = Column(Text)
    revolut_order_id = Column(String, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    paid_at = Column(DateTime(timezone=True))

    items = relationship("OrderItem", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    variant_id = Column(String)
    title = Column(String, nullable=False)
    sku = Column(String)
    price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    image_url = Column(String)

    order = relationship("Order", back_populates="items")


class NewsletterSubscriber(Base):
    __tablename__ = "newsletter_subscribers"

    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, nullable=False)
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
