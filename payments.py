from __future__ import annotations

import json
import logging
from typing import Any

import stripe

from config import Settings

logger = logging.getLogger("oneclick.payments")


class PaymentProviderError(RuntimeError):
    pass


def _stripe_to_dict(obj: Any) -> dict[str, Any]:
    """Convert Stripe objects to plain dicts for safer access."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    for name in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, name, None)
        if callable(converter):
            result = converter()
            if isinstance(result, dict):
                return result
    return json.loads(str(obj))


class StripePayments:
    """Creates fixed-price checkout sessions and looks them up again."""

    def __init__(self, settings: Settings) -> None:
        if not settings.stripe_secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY is not set.")
        self.settings = settings
        stripe.api_key = settings.stripe_secret_key
        stripe.max_network_retries = settings.stripe_max_network_retries
        stripe.default_http_client = stripe.RequestsClient(
            timeout=settings.external_timeout_seconds
        )

    def create_checkout_session(self, user_id: str) -> str:
        settings = self.settings
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": settings.stripe_currency,
                            "product_data": {"name": settings.stripe_product_name},
                            "unit_amount": settings.stripe_price_cents,
                        },
                        "quantity": 1,
                    }
                ],
                metadata={"userId": user_id},
                client_reference_id=user_id,
                success_url=settings.success_url,
                cancel_url=settings.cancel_url,
            )
        except stripe.StripeError as exc:
            raise PaymentProviderError(str(exc)) from exc

        url = getattr(session, "url", None)
        if not url:
            raise PaymentProviderError("Checkout session has no URL.")
        logger.info("Created checkout session %s for user %s", session.id, user_id)
        return url

    def retrieve_session(self, session_id: str) -> dict[str, Any]:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as exc:
            raise PaymentProviderError(str(exc)) from exc
        return _stripe_to_dict(session)
