import logging
from typing import Optional

import stripe

import config
from models import NormalizedCheckoutSession, NormalizedCustomer

SUPPORTED_GATEWAYS = ("stripe",)
PAYMENT_STATUSES = ("paid", "unpaid", "no_payment_required")


class PaymentGatewayError(Exception):
    pass


def as_dict(obj) -> dict:
    """Plain dict view of a Stripe object (or of an already plain dict)."""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def infer_gateway_from_session_id(checkout_session_id) -> Optional[str]:
    if checkout_session_id and str(checkout_session_id).startswith("cs_"):
        return "stripe"
    return None


def _major_units(amount):
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return None
    return amount / 100


def _join_address(address) -> Optional[str]:
    if not address:
        return None
    parts = [
        address.get("line1"),
        address.get("city"),
        address.get("postal_code"),
        address.get("country") or "IT",
    ]
    text = ", ".join(part for part in parts if part)
    return text or None


class PaymentProvider:
    """Gateway-agnostic access to checkout sessions."""

    name = None

    def get_checkout_session(self, checkout_session_id) -> dict:
        raise NotImplementedError

    def normalize_checkout_session(self, raw) -> NormalizedCheckoutSession:
        raise NotImplementedError


class StripeProvider(PaymentProvider):
    name = "stripe"

    def __init__(self, secret_key):
        if not secret_key:
            raise PaymentGatewayError("STRIPE_SECRET_KEY is not configured")
        self.secret_key = secret_key

    def get_checkout_session(self, checkout_session_id, expand=None) -> dict:
        params = {"api_key": self.secret_key}
        if expand:
            params["expand"] = expand
        session = stripe.checkout.Session.retrieve(checkout_session_id, **params)
        return as_dict(session)

    def find_checkout_session_for_payment_intent(self, payment_intent_id) -> Optional[dict]:
        """The checkout session that produced a payment intent, with customer expanded."""
        sessions = stripe.checkout.Session.list(
            payment_intent=payment_intent_id, limit=1, api_key=self.secret_key
        )
        data = as_dict(sessions).get("data") or []
        if not data:
            return None
        session_id = data[0].get("id")
        return self.get_checkout_session(session_id, expand=["customer", "payment_intent"])

    def construct_event(self, payload, signature, secret) -> dict:
        event = stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=secret)
        return as_dict(event)

    def create_customer(self, **params) -> dict:
        return as_dict(stripe.Customer.create(api_key=self.secret_key, **params))

    def create_checkout_session(self, **params) -> dict:
        return as_dict(stripe.checkout.Session.create(api_key=self.secret_key, **params))

    def normalize_checkout_session(self, raw) -> NormalizedCheckoutSession:
        raw = as_dict(raw)
        details = raw.get("customer_details") or {}
        metadata = raw.get("metadata") or {}
        payment_intent = raw.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")

        status = raw.get("payment_status")
        currency = raw.get("currency")

        return NormalizedCheckoutSession(
            gateway=self.name,
            checkout_session_id=raw.get("id"),
            payment_status=status if status in PAYMENT_STATUSES else "unknown",
            payment_intent_id=payment_intent,
            amount_total=_major_units(raw.get("amount_total")),
            currency=currency.upper() if currency else None,
            customer=NormalizedCustomer(
                email=raw.get("customer_email") or details.get("email"),
                name=details.get("name"),
                phone=details.get("phone"),
                first_name=metadata.get("customer_name"),
                last_name=metadata.get("customer_surname"),
                fiscal_code=metadata.get("customer_fiscal_code"),
                address=_join_address(details.get("address")),
            ),
            metadata=dict(metadata),
            raw=raw,
        )


def get_payment_provider(gateway=None, checkout_session_id=None, secret_key=None) -> PaymentProvider:
    """
    Pick the gateway: explicit argument, then the session id prefix, then
    PAYMENT_GATEWAY_DEFAULT, then stripe.
    """
    selected = (
        gateway
        or infer_gateway_from_session_id(checkout_session_id)
        or config.PAYMENT_GATEWAY_DEFAULT
        or "stripe"
    )
    if selected not in SUPPORTED_GATEWAYS:
        raise PaymentGatewayError(f"Unsupported payment gateway: {selected}")

    logging.debug("Using payment gateway %s", selected)
    return StripeProvider(secret_key or config.STRIPE_SECRET_KEY)
