"""Revolut Merchant API client for hosted checkout."""
import logging
from decimal import ROUND_HALF_UP, Decimal

import requests

from errors import PaymentProviderError

logger = logging.getLogger(__name__)

SANDBOX_API_URL = "https://sandbox-merchant.revolut.com/api"
TIMEOUT = 10


def to_minor_units(amount) -> int:
    """Convert a major-unit amount (e.g. 70.34 EUR) to cents."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RevolutClient:
    def __init__(self, secret_key, api_url=SANDBOX_API_URL):
        self.secret_key = secret_key
        self.api_url = (api_url or SANDBOX_API_URL).rstrip("/")

    def create_order(self, *, amount, currency, order_id, order_number, customer_email, redirect_url):
        """Create a provider order and return ``(revolut_order_id, checkout_url)``."""
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency.upper(),
            "merchant_order_ext_ref": order_id,
            "description": f"ElektroPolis Order {order_number}",
            "customer_email": customer_email,
            "redirect_url": redirect_url,
        }
        try:
            response = requests.post(
                f"{self.api_url}/1.0/orders",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Accept": "application/json",
                },
                timeout=TIMEOUT,
            )
        except requests.RequestException as e:
            logger.error("Revolut API unreachable: %s", e)
            raise PaymentProviderError(None, str(e)) from e

        if not response.ok:
            logger.error("Revolut API error: %s %s", response.status_code, response.text)
            raise PaymentProviderError(response.status_code, response.text)

        data = response.json()
        return data["id"], data["checkout_url"]
