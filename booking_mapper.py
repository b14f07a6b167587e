from models import BookingData, CustomerInfo, ProductRef, ProviderInfo


def _to_int(value, default=0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_float(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def map_booking_record(booking, provider=None, product=None) -> BookingData:
    """
    Map a booking row (plus optional provider profile and product rows) to BookingData.

    Provider and product rows win over the denormalised names on the booking.
    """
    provider = provider or {}
    product = product or {}

    first_name = booking.get("customer_name") or None
    last_name = booking.get("customer_surname") or None
    full_name = " ".join(part for part in (first_name, last_name) if part)

    return BookingData(
        booking_id=booking.get("id"),
        stripe_payment_intent_id=booking.get("stripe_payment_intent_id"),
        order_number=booking.get("order_number"),
        customer=CustomerInfo(
            email=booking.get("customer_email"),
            full_name=full_name,
            first_name=first_name,
            last_name=last_name,
            phone=booking.get("customer_phone"),
            fiscal_code=booking.get("customer_fiscal_code"),
            address=booking.get("customer_address"),
        ),
        product=ProductRef(
            id=booking.get("product_id") or product.get("id"),
            name=product.get("name") or booking.get("product_name") or "Unknown Product",
            type=booking.get("product_type") or "experience",
            description=product.get("description") or booking.get("product_description"),
        ),
        provider=ProviderInfo(
            id=booking.get("provider_id"),
            name=provider.get("company_name")
            or booking.get("provider_name")
            or "Unknown Provider",
            email=provider.get("email") or booking.get("provider_email"),
        ),
        booking_date=booking.get("booking_date"),
        booking_time=booking.get("booking_time"),
        number_of_adults=_to_int(booking.get("number_of_adults"), 0),
        number_of_dogs=_to_int(booking.get("number_of_dogs"), 0),
        total_amount=_to_float(booking.get("total_amount_paid")) or 0.0,
        currency=booking.get("currency") or "EUR",
        provider_cost_total=_to_float(booking.get("provider_cost_total")),
    )


def validate_booking_data(booking: BookingData) -> list:
    errors = []
    if not booking.booking_id:
        errors.append("bookingId is required")
    if not booking.customer.email:
        errors.append("customer.email is required")
    if not booking.product.id:
        errors.append("product.id is required")
    if not booking.product.name:
        errors.append("product.name is required")
    if not booking.provider.id:
        errors.append("provider.id is required")
    if not booking.provider.name:
        errors.append("provider.name is required")
    if not booking.booking_date:
        errors.append("bookingDate is required")
    if booking.number_of_adults < 1:
        errors.append("numberOfAdults must be at least 1")
    if booking.number_of_dogs < 0:
        errors.append("numberOfDogs must be non-negative")
    if booking.total_amount <= 0:
        errors.append("totalAmountPaid must be greater than 0")
    if not booking.currency:
        errors.append("currency is required")
    return errors
