import logging
import re
import uuid
from datetime import date
from typing import Optional
from urllib.parse import urlparse

import stripe

from booking_store import PRODUCT_TABLES, BookingStoreError
from pricing import PricingError, build_line_items, calculate_checkout_price

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
TIME_SLOT_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::[0-5]\d)?$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{6,14}$")
MAX_PARTY_SIZE = 100

# Stripe address limits
MAX_LINE1 = 200
MAX_CITY = 200
MAX_POSTAL_CODE = 20


class CheckoutError(Exception):
    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


def normalize_time_slot(value) -> Optional[str]:
    """'9:30' or '09:30:00' -> '09:30'. Empty, 'null' and invalid values give None."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.lower() == "null":
        return None
    match = TIME_SLOT_RE.match(value)
    if not match:
        return None
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def _is_uuid(value) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value))


def _is_iso_date(value) -> bool:
    if not isinstance(value, str):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _is_http_url(value) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _is_party_size(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= MAX_PARTY_SIZE


def _blank(value) -> bool:
    return not isinstance(value, str) or not value.strip()


def is_b2b_request(body) -> bool:
    """Explicit flag, or company data sent without it."""
    if body.get("isB2B") is True:
        return True
    customer = body.get("customer") or {}
    return not _blank(customer.get("companyName")) or not _blank(customer.get("vatNumber"))


def validate_customer(customer, is_b2b=False) -> Optional[str]:
    if _blank(customer.get("name")):
        return "Customer name is required"
    if not is_b2b and _blank(customer.get("surname")):
        return "Customer surname is required"
    email = customer.get("email")
    if _blank(email) or not EMAIL_RE.match(email.strip()) or len(email) > 254:
        return "Customer email format is invalid"
    phone = customer.get("phone")
    if _blank(phone) or not PHONE_RE.match(re.sub(r"[\s\-()]", "", phone)):
        return "Customer phone format is invalid"
    if _blank(customer.get("addressLine1")):
        return "Customer address line 1 is required"
    if _blank(customer.get("addressCity")):
        return "Customer city is required"
    if _blank(customer.get("addressPostalCode")):
        return "Customer postal code is required"
    if is_b2b:
        if _blank(customer.get("companyName")):
            return "Company name is required for B2B checkout"
        if _blank(customer.get("vatNumber")):
            return "VAT number is required for B2B checkout"
    return None


def validate_checkout_request(body) -> Optional[str]:
    """Return the first validation error of a checkout request, or None."""
    if not isinstance(body, dict):
        return "Request body is required and must be an object"
    if not _is_uuid(body.get("productId")):
        return "productId is required and must be a valid UUID"
    if body.get("productType") not in PRODUCT_TABLES:
        return "productType must be one of: experience, class, trip"
    if not _is_uuid(body.get("availabilitySlotId")):
        return "availabilitySlotId is required and must be a valid UUID"
    if not _is_iso_date(body.get("date")):
        return "date is required and must be a valid date string (YYYY-MM-DD)"

    time_slot = body.get("timeSlot")
    if time_slot is not None and not isinstance(time_slot, str):
        return f"timeSlot must be a string or null, received type: {type(time_slot).__name__}"
    if isinstance(time_slot, str) and time_slot.strip() and time_slot.strip().lower() != "null":
        if normalize_time_slot(time_slot) is None:
            return f'timeSlot must be in format HH:MM or null, received: "{time_slot}"'

    if not _is_party_size(body.get("guests")):
        return "guests must be an integer between 0 and 100"
    if not _is_party_size(body.get("dogs")):
        return "dogs must be an integer between 0 and 100"
    if not _is_http_url(body.get("successUrl")):
        return "successUrl is required and must be a valid URL"
    if not _is_http_url(body.get("cancelUrl")):
        return "cancelUrl is required and must be a valid URL"

    customer = body.get("customer")
    if not isinstance(customer, dict):
        return "customer data is required and must be an object"
    return validate_customer(customer, is_b2b_request(body))


def _clean(value, limit=None) -> str:
    value = str(value or "").strip()
    return value[:limit] if limit else value


def clean_customer(customer) -> dict:
    return {
        "name": _clean(customer.get("name")),
        "surname": _clean(customer.get("surname")),
        "email": _clean(customer.get("email")).lower(),
        "phone": _clean(customer.get("phone")),
        "fiscalCode": _clean(customer.get("fiscalCode")).upper(),
        "companyName": _clean(customer.get("companyName")),
        "vatNumber": _clean(customer.get("vatNumber")),
        "sdiCode": _clean(customer.get("sdiCode")),
        "pecEmail": _clean(customer.get("pecEmail")),
        "addressLine1": _clean(customer.get("addressLine1"), MAX_LINE1),
        "addressCity": _clean(customer.get("addressCity"), MAX_CITY),
        "addressPostalCode": _clean(customer.get("addressPostalCode"), MAX_POSTAL_CODE).upper(),
        "addressProvince": _clean(customer.get("addressProvince")),
        "addressCountry": (_clean(customer.get("addressCountry"), 2) or "IT").upper(),
    }


def _load_product_and_slot(body, store):
    try:
        product = store.get_product(body["productType"], body["productId"])
    except BookingStoreError as e:
        raise CheckoutError(f"Product not found: {e}", 404) from e
    if not product:
        raise CheckoutError("Product not found", 404)
    if product.get("active") is False:
        raise CheckoutError("Product is not available", 400)

    try:
        slot = store.get_availability_slot(body["availabilitySlotId"])
    except BookingStoreError as e:
        raise CheckoutError(f"Availability slot not found: {e}", 404) from e
    if not slot:
        raise CheckoutError("Availability slot not found", 404)
    return product, slot


def check_availability(body, product, slot):
    guests, dogs = body["guests"], body["dogs"]
    no_adults = product.get("no_adults") in (True, 1)
    if not no_adults and guests < 1:
        raise CheckoutError("guests must be at least 1 for this product", 400)

    if slot.get("product_id") != body["productId"] or slot.get("product_type") != body["productType"]:
        raise CheckoutError("Availability slot does not match product", 400)
    if str(slot.get("date")) != body["date"]:
        raise CheckoutError("Availability slot date does not match requested date", 400)

    available_adults = (slot.get("max_adults") or 0) - (slot.get("booked_adults") or 0)
    available_dogs = (slot.get("max_dogs") or 0) - (slot.get("booked_dogs") or 0)
    if guests > 0 and guests > available_adults:
        raise CheckoutError(
            f"Not enough capacity. Available: {available_adults} adults, requested: {guests}", 400
        )
    if dogs > available_dogs:
        raise CheckoutError(f"Not enough capacity. Available: {available_dogs} dogs, requested: {dogs}", 400)


def build_checkout_metadata(body, product, customer, breakdown, is_b2b, quotation_id=None):
    """
    Session metadata and payment intent metadata.

    The webhook reads the payment intent copy, so it carries every customer
    and company field. Empty values are dropped, Stripe rejects them.
    """
    base = {
        "product_id": body["productId"],
        "product_type": body["productType"],
        "availability_slot_id": body["availabilitySlotId"],
        "booking_date": body["date"],
        "booking_time": normalize_time_slot(body.get("timeSlot")),
        "number_of_adults": body["guests"],
        "number_of_dogs": body["dogs"],
        "product_name": product.get("name"),
        "total_amount": breakdown.total,
        "provider_cost_total": breakdown.provider_cost_total,
        "is_b2b": "true" if is_b2b else "false",
        "customer_name": customer["name"],
        "customer_surname": customer["surname"],
        "customer_email": customer["email"],
        "customer_phone": customer["phone"],
        "customer_address_line1": customer["addressLine1"],
        "customer_address_city": customer["addressCity"],
        "customer_address_postal_code": customer["addressPostalCode"],
        "customer_address_province": customer["addressProvince"],
        "customer_address_country": customer["addressCountry"],
        "quotation_id": quotation_id,
    }

    fiscal_code = customer["fiscalCode"]
    if is_b2b:
        base.update(
            {
                "company_name": customer["companyName"],
                "company_vat_number": customer["vatNumber"],
                "company_sdi_code": customer["sdiCode"],
                "company_pec_email": customer["pecEmail"],
            }
        )
        # a company's fiscal code is often its VAT number, keep it only when it differs
        if fiscal_code == customer["vatNumber"].upper():
            fiscal_code = ""
    base["customer_fiscal_code"] = fiscal_code

    payment_intent_metadata = {k: str(v) for k, v in base.items() if v not in (None, "")}
    session_metadata = dict(payment_intent_metadata, request_id=str(uuid.uuid4()))
    return session_metadata, payment_intent_metadata


def _save_quotation(store, body, product, customer, breakdown, is_b2b) -> Optional[str]:
    row = {
        "is_b2b": is_b2b,
        "customer_name": customer["name"],
        "customer_surname": customer["surname"],
        "customer_email": customer["email"],
        "customer_phone": customer["phone"],
        "customer_fiscal_code": customer["fiscalCode"] or None,
        "customer_address_line1": customer["addressLine1"],
        "customer_address_city": customer["addressCity"],
        "customer_address_postal_code": customer["addressPostalCode"],
        "customer_address_province": customer["addressProvince"] or None,
        "customer_address_country": customer["addressCountry"],
        "product_id": body["productId"],
        "product_type": body["productType"],
        "product_name": product.get("name"),
        "availability_slot_id": body["availabilitySlotId"],
        "booking_date": body["date"],
        "booking_time": normalize_time_slot(body.get("timeSlot")),
        "guests": body["guests"],
        "dogs": body["dogs"],
        "total_amount": breakdown.total,
        "status": "quote",
    }
    if is_b2b:
        row.update(
            {
                "company_name": customer["companyName"] or None,
                "company_vat_number": customer["vatNumber"] or None,
                "company_sdi_code": customer["sdiCode"] or None,
                "company_pec_email": customer["pecEmail"] or None,
            }
        )
    try:
        quotation = store.insert_quotation(row)
    except BookingStoreError as e:
        logging.warning("Could not save quotation for %s: %s", customer["email"], e)
        return None
    return quotation.get("id") if quotation else None


def _create_customer(provider, customer, is_b2b, quotation_id) -> Optional[str]:
    metadata = {
        "is_b2b": "true" if is_b2b else "false",
        "customer_name": customer["name"],
        "customer_surname": customer["surname"],
        "customer_fiscal_code": customer["fiscalCode"],
        "customer_address_province": customer["addressProvince"],
    }
    if is_b2b:
        metadata.update(
            company_name=customer["companyName"],
            company_vat_number=customer["vatNumber"],
            company_sdi_code=customer["sdiCode"],
            company_pec_email=customer["pecEmail"],
        )
    if quotation_id:
        metadata["quotation_id"] = quotation_id

    name = customer["companyName"] if is_b2b else f"{customer['name']} {customer['surname']}".strip()
    try:
        created = provider.create_customer(
            email=customer["email"],
            name=name,
            phone=customer["phone"],
            address={
                "line1": customer["addressLine1"],
                "city": customer["addressCity"],
                "postal_code": customer["addressPostalCode"],
                "state": customer["addressProvince"] or None,
                "country": customer["addressCountry"],
            },
            metadata={k: v for k, v in metadata.items() if v},
        )
    except stripe.StripeError as e:
        logging.warning("Stripe customer creation failed, using customer_email: %s", e)
        return None
    return created.get("id")


def create_checkout_session(body, store, provider) -> dict:
    """
    Validate a booking request, price it and open a Stripe Checkout Session.

    Returns {sessionId, url}. Raises CheckoutError with an HTTP status.
    """
    error = validate_checkout_request(body)
    if error:
        raise CheckoutError(error, 400)

    product, slot = _load_product_and_slot(body, store)
    check_availability(body, product, slot)

    try:
        breakdown = calculate_checkout_price(product, body["guests"], body["dogs"])
    except PricingError as e:
        raise CheckoutError(str(e), 400) from e
    line_items = build_line_items(product, breakdown, body["guests"], body["dogs"])

    is_b2b = is_b2b_request(body)
    customer = clean_customer(body["customer"])
    quotation_id = _save_quotation(store, body, product, customer, breakdown, is_b2b)
    customer_id = _create_customer(provider, customer, is_b2b, quotation_id)
    session_metadata, payment_intent_metadata = build_checkout_metadata(
        body, product, customer, breakdown, is_b2b, quotation_id
    )

    params = {
        "mode": "payment",
        "success_url": body["successUrl"],
        "cancel_url": body["cancelUrl"],
        "line_items": line_items,
        "metadata": session_metadata,
        "payment_intent_data": {"metadata": payment_intent_metadata},
        "phone_number_collection": {"enabled": False},
    }
    # Stripe refuses customer and customer_email together
    if customer_id:
        params["customer"] = customer_id
    else:
        params["customer_email"] = customer["email"]

    try:
        session = provider.create_checkout_session(**params)
    except stripe.StripeError as e:
        logging.error("Stripe checkout session creation failed: %s", e)
        raise CheckoutError(f"Stripe API error: {e.user_message or e}", 500) from e

    logging.info(
        "Created checkout session %s for product %s (%s cents)",
        session.get("id"),
        body["productId"],
        breakdown.total_cents,
    )
    return {"sessionId": session.get("id"), "url": session.get("url")}
