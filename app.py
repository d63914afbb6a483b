import logging
import os
import re
from functools import wraps

from dotenv import load_dotenv
from flask import Flask, current_app, g, jsonify, request, session
from sqlalchemy import create_engine, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from werkzeug.security import check_password_hash

from checkout import place_order
from errors import ElektropolisError, RateLimited
from mailer import Mailer
from models import Base, NewsletterSubscriber, Order, Profile
from payments import SANDBOX_API_URL, RevolutClient
from rate_limit import RateLimiter, client_ip
from search import MIN_QUERY_LENGTH, parse_limit, product_summary, search_products
from webhooks import SIGNATURE_HEADER, TIMESTAMP_HEADER, WebhookEvent, reconcile, verify_signature

# Load env vars
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///elektropolis.db")

# Setup DB
engine = create_engine(DATABASE_URL)
Base.metadata.create_all(engine)
DBSession = sessionmaker(bind=engine)

# Flask app
app = Flask(__name__)
app.config.update(
    SECRET_KEY=os.getenv("SECRET_KEY", "dev"),
    DOMAIN=os.getenv("DOMAIN", "http://localhost:4242"),
    STORE_CURRENCY=os.getenv("STORE_CURRENCY", "EUR"),
    REVOLUT_API_URL=os.getenv("REVOLUT_API_URL", SANDBOX_API_URL),
    REVOLUT_SECRET_KEY=os.getenv("REVOLUT_SECRET_KEY", ""),
    REVOLUT_WEBHOOK_SECRET=os.getenv("REVOLUT_WEBHOOK_SECRET", ""),
    RESEND_API_KEY=os.getenv("RESEND_API_KEY", ""),
    RESEND_FROM_EMAIL=os.getenv("RESEND_FROM_EMAIL"),
    ADMIN_EMAIL=os.getenv("ADMIN_EMAIL"),
)

if not app.config["REVOLUT_WEBHOOK_SECRET"]:
    logger.warning("REVOLUT_WEBHOOK_SECRET is not set: webhook signatures will NOT be verified")

# (limit, window in ms) per client address
RATE_LIMITS = {
    "checkout": (10, 60_000),
    "newsletter": (5, 60_000),
    "contact": (5, 60_000),
}
limiter = RateLimiter()
limiter.start()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
STAFF_ROLES = ("admin", "staff")


def get_db():
    if "db" not in g:
        g.db = DBSession()
    return g.db


@app.teardown_appcontext
def close_db(exc):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def get_mailer():
    return Mailer(
        current_app.config["RESEND_API_KEY"],
        from_email=current_app.config["RESEND_FROM_EMAIL"],
        admin_email=current_app.config["ADMIN_EMAIL"],
    )


def get_payment_client():
    return RevolutClient(
        current_app.config["REVOLUT_SECRET_KEY"],
        api_url=current_app.config["REVOLUT_API_URL"],
    )


def check_rate_limit(action):
    limit, window_ms = RATE_LIMITS[action]
    ip = client_ip(request)
    if not limiter.allow(f"{action}:{ip}", limit, window_ms):
        logger.warning("Rate limited %s from %s", action, ip)
        raise RateLimited()


def json_body():
    """The JSON request body if it is an object, else an empty dict."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def text(data, key):
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def current_user():
    if "current_user" not in g:
        user_id = session.get("user_id")
        g.current_user = get_db().get(Profile, user_id) if user_id else None
    return g.current_user


def staff_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = current_user()
        if user is None:
            return jsonify({"error": "Unauthorized"}), 401
        if user.role not in STAFF_ROLES:
            return jsonify({"error": "Forbidden"}), 403
        return view(*args, **kwargs)
    return wrapped


@app.errorhandler(ElektropolisError)
def handle_storefront_error(e):
    return jsonify({"error": str(e)}), e.status_code


@app.route("/api/checkout", methods=["POST"])
def create_order():
    check_rate_limit("checkout")
    data = request.get_json(silent=True) or {}
    db = get_db()
    try:
        order, _ = place_order(db, data)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Checkout failed")
        return jsonify({"error": "An unexpected error occurred. Please try again."}), 500

    return jsonify({"orderId": order.id, "orderNumber": order.order_number})


@app.route("/api/checkout/status")
def checkout_status():
    order_id = request.args.get("orderId")
    if not order_id:
        return jsonify({"error": "orderId is required"}), 400

    order = get_db().get(Order, order_id)
    if order is None:
        return jsonify({"error": "Order not found"}), 404

    return jsonify({"paymentStatus": order.payment_status, "orderStatus": order.status})


@app.route("/api/checkout/session", methods=["POST"])
def create_payment_session():
    data = json_body()
    order_id = text(data, "orderId")
    if not order_id:
        return jsonify({"error": "orderId is required"}), 400

    db = get_db()
    order = db.get(Order, order_id)
    if order is None:
        return jsonify({"error": "Order not found"}), 404
    if order.payment_status == "paid":
        return jsonify({"error": "Order is already paid"}), 400

    domain = current_app.config["DOMAIN"]
    revolut_order_id, checkout_url = get_payment_client().create_order(
        amount=order.total,
        currency=current_app.config["STORE_CURRENCY"],
        order_id=order.id,
        order_number=order.order_number,
        customer_email=order.customer_email,
        redirect_url=f"{domain}/checkout/success?orderId={order.id}",
    )

    # Link provider order to our order so webhooks can find it
    order.revolut_order_id = revolut_order_id
    db.commit()
    logger.info("Revolut order %s created for %s", revolut_order_id, order.order_number)

    return jsonify({"checkoutUrl": checkout_url})


@app.route("/api/webhooks/revolut", methods=["POST"])
def revolut_webhook():
    raw_body = request.get_data()
    secret = current_app.config["REVOLUT_WEBHOOK_SECRET"]
    if secret:
        valid = verify_signature(
            secret,
            raw_body,
            request.headers.get(SIGNATURE_HEADER, ""),
            request.headers.get(TIMESTAMP_HEADER, ""),
        )
        if not valid:
            logger.error("Invalid Revolut webhook signature")
            return jsonify({"error": "Invalid signature"}), 401

    # Always acknowledge so Revolut does not retry; failures are reconciled by hand
    db = get_db()
    try:
        event = WebhookEvent.parse(raw_body)
        reconcile(db, event, mailer=get_mailer())
    except Exception:
        db.rollback()
        logger.exception("Revolut webhook processing failed")

    return jsonify({"received": True})


@app.route("/api/contact", methods=["POST"])
def contact():
    check_rate_limit("contact")
    data = json_body()
    fields = {k: text(data, k) for k in ("name", "email", "subject", "message", "phone")}
    if not all(fields[k] for k in ("name", "email", "subject", "message")):
        return jsonify({"error": "Missing required fields"}), 400

    admin_sent, reply_sent = get_mailer().send_contact_notification(
        fields["name"],
        fields["email"],
        fields["subject"],
        fields["message"],
        phone=fields["phone"] or None,
    )
    if not admin_sent:
        return jsonify({"error": "Failed to process contact form"}), 500
    if not reply_sent:
        logger.warning("Contact auto-reply to %s was not sent", fields["email"])

    return jsonify({"success": True})


def subscribe_newsletter(db, email):
    """Insert the subscriber, or reactivate the existing row on a conflict."""
    db.add(NewsletterSubscriber(email=email, status="active"))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        db.query(NewsletterSubscriber).filter_by(email=email).update({"status": "active"})
        db.commit()


@app.route("/api/newsletter", methods=["POST"])
def newsletter():
    check_rate_limit("newsletter")
    data = json_body()
    email = text(data, "email")
    if not EMAIL_PATTERN.match(email):
        return jsonify({"error": "Please enter a valid email address."}), 400

    email = email.lower()
    db = get_db()
    try:
        subscribe_newsletter(db, email)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Newsletter subscribe error for %s", email)
        return jsonify({"error": "Failed to subscribe. Please try again."}), 500

    return jsonify({"success": True})


@app.route("/api/search")
def search():
    query = (request.args.get("q") or "").strip()
    if len(query) < MIN_QUERY_LENGTH:
        return jsonify({"products": [], "query": ""})

    products = search_products(
        get_db(),
        query,
        limit=parse_limit(request.args.get("limit")),
        sort=request.args.get("sort"),
    )
    return jsonify({"products": [product_summary(p) for p in products], "query": query})


@app.route("/api/auth/login", methods=["POST"])
def login():
    data = json_body()
    email = text(data, "email").lower()
    password = data.get("password")
    if not isinstance(password, str):
        password = ""
    user = get_db().query(Profile).filter(func.lower(Profile.email) == email).first()
    if user is None or not user.password_hash or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "Invalid email or password"}), 401

    session["user_id"] = user.id
    return jsonify({"id": user.id, "email": user.email, "role": user.role})


@app.route("/api/auth/logout", methods=["POST"])
def logout():
    session.pop("user_id", None)
    return jsonify({"success": True})


PROFILE_FIELDS = (
    "full_name",
    "phone",
    "address_line1",
    "address_line2",
    "city",
    "postal_code",
    "country",
)


@app.route("/api/account/profile")
def get_profile():
    user = current_user()
    if user is None:
        return jsonify({"error": "Not authenticated"}), 401

    profile = {field: getattr(user, field) for field in PROFILE_FIELDS}
    profile["email"] = user.email
    return jsonify({"profile": profile})


@app.route("/api/account/profile", methods=["PUT"])
def update_profile():
    user = current_user()
    if user is None:
        return jsonify({"error": "Not authenticated"}), 401

    data = json_body()
    # email and role are not editable here
    updates = {field: text(data, field) or None for field in PROFILE_FIELDS if field in data}
    if not updates:
        return jsonify({"error": "No fields to update"}), 400

    db = get_db()
    try:
        for field, value in updates.items():
            setattr(user, field, value)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to update profile %s", user.id)
        return jsonify({"error": "Failed to update profile"}), 500

    return jsonify({"success": True})


@app.route("/api/admin/orders/<order_id>/notify", methods=["POST"])
@staff_required
def notify_order_shipped(order_id):
    db = get_db()
    order = db.get(Order, order_id)
    if order is None:
        return jsonify({"error": "Order not found"}), 404

    data = json_body()
    tracking_note = text(data, "trackingNote") or None

    if not get_mailer().send_order_shipped(order, tracking_note=tracking_note):
        return jsonify({"error": "Failed to send notification"}), 500

    order.status = "shipped"
    db.commit()
    logger.info("Order %s marked shipped by %s", order.order_number, current_user().email)
    return jsonify({"success": True})


if __name__ == "__main__":
    app.run(port=int(os.getenv("PORT", "4242")), debug=True)
