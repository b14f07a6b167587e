"""
Read customer, company and booking data out of Stripe metadata.

Payment intents created by the internal checkout carry every field in their
metadata. Older payment links only carry part of it, the rest comes from the
checkout session (metadata and custom fields).
"""
import re
from dataclasses import dataclass
from typing import Optional

from models import Address, BookingData, CustomerInfo, PartnerData, ProductRef, ProviderInfo

B2B_FLAG_KEYS = ("is_b2b", "isB2B", "is_b2B")
B2B_METADATA_KEYS = (
    "is_b2b",
    "company_name",
    "company_vat_number",
    "company_sdi_code",
    "company_pec_email",
)
MISSING_COMPANY_NAME = "Cliente B2B (ragione sociale mancante)"

# custom field keys and labels, lowercase
FULL_NAME_KEYS = ("customer_full_name", "nome e cognome", "nome completo", "full name")
LAST_NAME_KEYS = ("cognome", "last", "surname")
FIRST_NAME_KEYS = ("nome", "first", "name")
FISCAL_CODE_KEYS = ("codice_fiscale", "codice fiscale", "fiscal_code", "fiscal code", "cf")
ADDRESS_KEYS = ("indirizzo", "address")
# a value equal to one of these is the label echoed back, not a name
LABEL_ECHOES = ("nome", "cognome", "nome *", "cognome *", "name", "surname")


def _text(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def first_value(meta, *keys) -> Optional[str]:
    """First non-empty value among keys."""
    for key in keys:
        value = _text(meta.get(key))
        if value:
            return value
    return None


def _to_int(value, default) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def has_internal_checkout_metadata(meta) -> bool:
    return bool(first_value(meta, "customer_name") and first_value(meta, "customer_surname"))


def has_b2b_metadata(meta) -> bool:
    if any((first_value(meta, key) or "").lower() == "true" for key in B2B_FLAG_KEYS):
        return True
    return bool(first_value(meta, "company_name", "company_vat_number"))


def is_b2b_metadata(meta) -> bool:
    """B2B flag, or company data present without a flag."""
    for key in B2B_FLAG_KEYS:
        if (first_value(meta, key) or "").lower() in ("true", "1"):
            return True
    return bool(first_value(meta, "company_vat_number", "vat_number", "company_name"))


def merge_b2b_metadata(meta, session_meta) -> dict:
    """Fill company fields missing from payment intent metadata with the session's."""
    merged = dict(meta)
    for key in B2B_METADATA_KEYS:
        if not _text(merged.get(key)) and _text(session_meta.get(key)):
            merged[key] = session_meta[key]
    return merged


def build_partner_from_metadata(meta) -> PartnerData:
    is_b2b = is_b2b_metadata(meta)
    vat_number = first_value(meta, "company_vat_number", "vat_number")

    if is_b2b:
        # the legal name only, the contact person never names a company
        name = first_value(meta, "company_name") or MISSING_COMPANY_NAME
    else:
        name = first_value(meta, "customer_name", "name", "customerName") or "Cliente"

    country = first_value(meta, "customer_address_country", "address_country", "country")
    if is_b2b and vat_number:
        country = "IT"

    return PartnerData(
        email=first_value(meta, "customer_email", "email", "customerEmail") or "",
        name=name,
        phone=first_value(meta, "phone", "customer_phone") or "",
        fiscal_code=first_value(meta, "customer_fiscal_code", "fiscal_code", "codice_fiscale"),
        vat_number=vat_number,
        sdi_code=first_value(meta, "company_sdi_code", "sdi_code"),
        pec_email=first_value(meta, "company_pec_email", "pec_email"),
        address=Address(
            street=first_value(meta, "customer_address_line1", "address_line1"),
            city=first_value(meta, "customer_address_city", "address_city"),
            zip=first_value(meta, "customer_address_postal_code", "postal_code"),
            province=first_value(meta, "customer_address_province", "address_province"),
            country_code=(country or "").upper() or None,
        ),
        is_b2b=is_b2b,
        contact_name=first_value(meta, "customer_name") if is_b2b else None,
        contact_surname=first_value(meta, "customer_surname") if is_b2b else None,
    )


def build_booking_from_metadata(meta) -> BookingData:
    """
    BookingData from metadata alone.

    Fields missing here are filled in later from the payment intent itself
    (amount, currency, created) and from the booking store.
    """
    first_name = first_value(meta, "customer_name")
    last_name = first_value(meta, "customer_surname")
    provider_cost = _to_float(meta.get("provider_cost_total"))

    return BookingData(
        booking_id=first_value(meta, "booking_id"),
        stripe_payment_intent_id=None,
        order_number=first_value(meta, "order_number"),
        customer=CustomerInfo(
            email=first_value(meta, "customer_email", "email", "customerEmail") or "",
            full_name=" ".join(part for part in (first_name, last_name) if part),
            first_name=first_name,
            last_name=last_name,
            phone=first_value(meta, "customer_phone", "phone"),
            fiscal_code=first_value(meta, "customer_fiscal_code", "fiscal_code"),
        ),
        product=ProductRef(
            id=first_value(
                meta,
                "product_id",
                "productId",
                "productIdInternal",
                "internal_product_id",
                "internalProductId",
            ),
            name=first_value(meta, "product_name", "productName"),
            type=first_value(meta, "product_type", "productType"),
        ),
        provider=ProviderInfo(
            id=first_value(meta, "provider_id"),
            name=first_value(meta, "provider_name"),
        ),
        booking_date=first_value(meta, "booking_date", "date", "start_date"),
        booking_time=first_value(meta, "booking_time"),
        number_of_adults=_to_int(first_value(meta, "guests", "number_of_adults", "numberOfAdults"), 1),
        number_of_dogs=_to_int(first_value(meta, "dogs", "number_of_dogs", "numberOfDogs"), 0),
        total_amount=_to_float(first_value(meta, "total", "total_amount")) or 0.0,
        currency=(first_value(meta, "currency", "currency_code") or "").upper() or None,
        provider_cost_total=provider_cost if provider_cost and provider_cost > 0 else None,
    )


@dataclass
class CustomFieldValues:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    fiscal_code: Optional[str] = None
    address: Optional[str] = None

    @property
    def full_name(self) -> Optional[str]:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or None


def _field_names(field) -> tuple:
    key = (field.get("key") or "").strip().lower()
    label = field.get("label") or {}
    if isinstance(label, dict):
        label = label.get("custom") or ""
    return key, str(label).strip().lower()


def custom_field_value(field) -> Optional[str]:
    """The customer's answer to a Checkout custom field, never its echoed label."""
    _, label = _field_names(field)
    text = field.get("text") or {}
    dropdown = field.get("dropdown") or {}
    for candidate in (field.get("value"), text.get("value"), dropdown.get("value")):
        value = _text(candidate)
        if not value:
            continue
        if value.lower() == label or value.lower() in LABEL_ECHOES:
            continue
        return value
    return None


def _matches(key, label, names) -> bool:
    for name in names:
        if key == name or label == name:
            return True
        if re.search(rf"\b{re.escape(name)}\b", key) or re.search(rf"\b{re.escape(name)}\b", label):
            return True
    return False


def parse_custom_fields(custom_fields) -> CustomFieldValues:
    """
    Pick name, fiscal code and address out of Checkout custom fields.

    Fields are recognised by key or label. A full-name field is split on the
    first space; separate first/last name fields win over it.
    """
    parsed = CustomFieldValues()
    full_name = None

    for field in custom_fields or []:
        key, label = _field_names(field)
        value = custom_field_value(field)
        if not value:
            continue

        if _matches(key, label, FULL_NAME_KEYS):
            full_name = full_name or value
        elif _matches(key, label, FISCAL_CODE_KEYS):
            parsed.fiscal_code = parsed.fiscal_code or value.upper()
        elif _matches(key, label, ADDRESS_KEYS):
            parsed.address = parsed.address or value
        elif _matches(key, label, LAST_NAME_KEYS):
            parsed.last_name = parsed.last_name or value
        elif _matches(key, label, FIRST_NAME_KEYS):
            parsed.first_name = parsed.first_name or value

    if full_name and not (parsed.first_name or parsed.last_name):
        first, _, last = full_name.partition(" ")
        parsed.first_name = first or None
        parsed.last_name = last.strip() or None
    return parsed


def customer_fields_from_metadata(meta) -> CustomFieldValues:
    """The same values the custom fields give, taken from internal checkout metadata."""
    address_parts = [
        first_value(meta, "customer_address_line1"),
        first_value(meta, "customer_address_city"),
        first_value(meta, "customer_address_postal_code"),
        first_value(meta, "customer_address_country") or "IT",
    ]
    return CustomFieldValues(
        first_name=first_value(meta, "customer_name"),
        last_name=first_value(meta, "customer_surname"),
        fiscal_code=first_value(meta, "customer_fiscal_code"),
        address=", ".join(part for part in address_parts if part),
    )
