"""Transactional e-mail through the Resend HTTP API.

Every send reports success as a bool. Failures are logged here and never
raised, so callers can treat e-mail as a best-effort follow-up.
"""
import logging

import requests
from flask import render_template

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_FROM = "ElektroPolis <orders@elektropolis.mt>"
DEFAULT_ADMIN = "info@elektropolis.mt"
TIMEOUT = 10


class Mailer:
    def __init__(self, api_key, from_email=DEFAULT_FROM, admin_email=DEFAULT_ADMIN, api_url=RESEND_API_URL):
        self.api_key = api_key
        self.from_email = from_email or DEFAULT_FROM
        self.admin_email = admin_email or DEFAULT_ADMIN
        self.api_url = api_url

    def send(self, to, subject, template, **context) -> bool:
        if not self.api_key:
            logger.warning("RESEND_API_KEY not set; not sending %r to %s", subject, to)
            return False

        html = render_template(template, **context)
        try:
            response = requests.post(
                self.api_url,
                json={"from": self.from_email, "to": [to], "subject": subject, "html": html},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=TIMEOUT,
            )
        except requests.RequestException as e:
            logger.error("E-mail %r to %s failed: %s", subject, to, e)
            return False

        if not response.ok:
            logger.error("E-mail %r to %s rejected: %s %s", subject, to, response.status_code, response.text)
            return False
        return True

    def send_order_confirmation(self, order) -> bool:
        address = order.shipping_address or {}
        return self.send(
            order.customer_email,
            f"Order Confirmed - {order.order_number}",
            "emails/order_confirmation.html",
            order=order,
            items=list(order.items),
            customer_name=address.get("name") or order.customer_email,
            address=address,
        )

    def send_order_shipped(self, order, tracking_note=None) -> bool:
        address = order.shipping_address or {}
        return self.send(
            order.customer_email,
            f"Your order {order.order_number} has been shipped!",
            "emails/order_shipped.html",
            order_number=order.order_number,
            customer_name=address.get("name") or order.customer_email,
            tracking_note=tracking_note,
        )

    def send_contact_notification(self, name, email, subject, message, phone=None):
        """Send the admin copy and the customer auto-reply.

        Returns ``(admin_sent, reply_sent)``.
        """
        context = dict(name=name, email=email, subject=subject, message=message, phone=phone)
        admin_sent = self.send(
            self.admin_email,
            f"Contact Form: {subject}",
            "emails/contact_notification.html",
            is_admin_copy=True,
            **context,
        )
        reply_sent = self.send(
            email,
            "We received your message - ElektroPolis",
            "emails/contact_notification.html",
            is_admin_copy=False,
            **context,
        )
        return admin_sent, reply_sent
