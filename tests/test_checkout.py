import copy

import pytest
import stripe

from conftest import FakeBookingStore

from checkout import (
    CheckoutError,
    build_checkout_metadata,
    clean_customer,
    create_checkout_session,
    is_b2b_request,
    normalize_time_slot,
    validate_checkout_request,
)
from pricing import calculate_checkout_price

PRODUCT_UUID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
SLOT_UUID = "3f2504e0-4f89-41d3-9a0c-0305e82c3301"

VALID_BODY = {
    "productId": PRODUCT_UUID,
    "productType": "experience",
    "availabilitySlotId": SLOT_UUID,
    "date": "2026-05-10",
    "timeSlot": "9:30",
    "guests": 2,
    "dogs": 1,
    "successUrl": "https://flixdog.it/checkout/ok",
    "cancelUrl": "https://flixdog.it/checkout/ko",
    "customer": {
        "name": "Mario",
        "surname": "Rossi",
        "email": "Mario.Rossi@Example.org",
        "phone": "+39 333 123 4567",
        "fiscalCode": "rssmra80a01h501u",
        "addressLine1": "Via Roma 1",
        "addressCity": "Milano",
        "addressPostalCode": "20100",
        "addressProvince": "MI",
    },
}

PRODUCT = {
    "id": PRODUCT_UUID,
    "name": "Trekking con il cane",
    "active": True,
    "pricing_model": "linear",
    "price_adult_base": 50,
    "price_dog_base": 25,
}

SLOT = {
    "id": SLOT_UUID,
    "product_id": PRODUCT_UUID,
    "product_type": "experience",
    "date": "2026-05-10",
    "max_adults": 10,
    "booked_adults": 2,
    "max_dogs": 5,
    "booked_dogs": 0,
}


class FakeProvider:
    def __init__(self, customer_error=None, session_error=None):
        self.customer_error = customer_error
        self.session_error = session_error
        self.customers = []
        self.sessions = []

    def create_customer(self, **params):
        if self.customer_error:
            raise self.customer_error
        self.customers.append(params)
        return {"id": "cus_Q1w2e3"}

    def create_checkout_session(self, **params):
        if self.session_error:
            raise self.session_error
        self.sessions.append(params)
        return {"id": "cs_test_a1B2c3", "url": "https://checkout.stripe.com/c/pay/cs_test_a1B2c3"}


def body(**overrides):
    data = copy.deepcopy(VALID_BODY)
    customer = overrides.pop("customer", None)
    if customer:
        data["customer"].update(customer)
    data.update(overrides)
    return data


def checkout_store(product=None, slot=None):
    return FakeBookingStore(
        {"experience": [product or PRODUCT], "availability_slot": [slot or SLOT]}
    )


def test_time_slot_normalisation():
    assert normalize_time_slot("9:30") == "09:30"
    assert normalize_time_slot("09:30:00") == "09:30"
    assert normalize_time_slot("null") is None
    assert normalize_time_slot("") is None
    assert normalize_time_slot("25:00") is None
    assert normalize_time_slot(None) is None


def test_valid_request():
    assert validate_checkout_request(body()) is None
    assert validate_checkout_request(body(timeSlot=None)) is None


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"productId": "abc"}, "productId is required and must be a valid UUID"),
        ({"productType": "tour"}, "productType must be one of: experience, class, trip"),
        ({"date": "10/05/2026"}, "date is required and must be a valid date string (YYYY-MM-DD)"),
        ({"timeSlot": 930}, "timeSlot must be a string or null, received type: int"),
        ({"timeSlot": "9.30"}, 'timeSlot must be in format HH:MM or null, received: "9.30"'),
        ({"guests": True}, "guests must be an integer between 0 and 100"),
        ({"dogs": 101}, "dogs must be an integer between 0 and 100"),
        ({"successUrl": "flixdog.it/ok"}, "successUrl is required and must be a valid URL"),
        ({"customer": {"surname": " "}}, "Customer surname is required"),
        ({"customer": {"email": "mario@"}}, "Customer email format is invalid"),
        ({"customer": {"phone": "0123"}}, "Customer phone format is invalid"),
        ({"customer": {"addressCity": ""}}, "Customer city is required"),
    ],
)
def test_invalid_requests(overrides, message):
    assert validate_checkout_request(body(**overrides)) == message


def test_b2b_requests():
    company = {"surname": "", "companyName": "Acme S.r.l.", "vatNumber": ""}

    assert is_b2b_request(body(customer={"companyName": "Acme S.r.l."}))
    assert is_b2b_request(body(isB2B=True))
    assert not is_b2b_request(body())
    assert validate_checkout_request(body(customer=company)) == "VAT number is required for B2B checkout"
    assert validate_checkout_request(body(customer=dict(company, vatNumber="12345678901"))) is None


def test_clean_customer():
    customer = clean_customer({**VALID_BODY["customer"], "addressLine1": "x" * 250, "addressCountry": "ita"})

    assert customer["email"] == "mario.rossi@example.org"
    assert customer["fiscalCode"] == "RSSMRA80A01H501U"
    assert len(customer["addressLine1"]) == 200
    assert customer["addressCountry"] == "IT"
    assert clean_customer({})["addressCountry"] == "IT"


def test_b2b_metadata_drops_fiscal_code_equal_to_vat():
    data = body(customer={"companyName": "Acme S.r.l.", "vatNumber": "12345678901", "fiscalCode": "12345678901"})
    customer = clean_customer(data["customer"])
    breakdown = calculate_checkout_price(PRODUCT, 2, 1)

    session_meta, intent_meta = build_checkout_metadata(data, PRODUCT, customer, breakdown, True, "q-1")

    assert intent_meta["is_b2b"] == "true"
    assert intent_meta["company_name"] == "Acme S.r.l."
    assert intent_meta["company_vat_number"] == "12345678901"
    assert "customer_fiscal_code" not in intent_meta
    assert "company_pec_email" not in intent_meta
    assert intent_meta["booking_time"] == "09:30"
    assert intent_meta["total_amount"] == "125.0"
    assert intent_meta["quotation_id"] == "q-1"
    assert "request_id" in session_meta and "request_id" not in intent_meta


def test_creates_checkout_session():
    store = checkout_store()
    provider = FakeProvider()

    result = create_checkout_session(body(), store, provider)

    assert result == {"sessionId": "cs_test_a1B2c3", "url": "https://checkout.stripe.com/c/pay/cs_test_a1B2c3"}
    [params] = provider.sessions
    assert params["mode"] == "payment"
    assert params["customer"] == "cus_Q1w2e3"
    assert "customer_email" not in params
    assert params["phone_number_collection"] == {"enabled": False}
    assert sum(i["price_data"]["unit_amount"] * i["quantity"] for i in params["line_items"]) == 12500

    metadata = params["payment_intent_data"]["metadata"]
    assert metadata["customer_email"] == "mario.rossi@example.org"
    assert metadata["customer_fiscal_code"] == "RSSMRA80A01H501U"
    [quotation] = store.tables["quotation"]
    assert metadata["quotation_id"] == quotation["id"]
    assert quotation["status"] == "quote"
    assert provider.customers[0]["name"] == "Mario Rossi"


def test_customer_email_used_when_customer_creation_fails():
    provider = FakeProvider(customer_error=stripe.StripeError("rate limited"))

    create_checkout_session(body(), checkout_store(), provider)

    [params] = provider.sessions
    assert "customer" not in params
    assert params["customer_email"] == "mario.rossi@example.org"


def test_stripe_failure_is_a_server_error():
    provider = FakeProvider(session_error=stripe.StripeError("Your card was declined"))

    with pytest.raises(CheckoutError) as excinfo:
        create_checkout_session(body(), checkout_store(), provider)

    assert excinfo.value.status == 500
    assert excinfo.value.message.startswith("Stripe API error")


def test_unknown_product():
    with pytest.raises(CheckoutError) as excinfo:
        create_checkout_session(body(), FakeBookingStore(), FakeProvider())

    assert excinfo.value.status == 404
    assert excinfo.value.message == "Product not found"


def test_inactive_product():
    with pytest.raises(CheckoutError, match="Product is not available"):
        create_checkout_session(body(), checkout_store(product=dict(PRODUCT, active=False)), FakeProvider())


@pytest.mark.parametrize(
    "overrides, slot, message",
    [
        ({"guests": 9}, SLOT, "Not enough capacity. Available: 8 adults, requested: 9"),
        ({"dogs": 6}, SLOT, "Not enough capacity. Available: 5 dogs, requested: 6"),
        ({"date": "2026-05-11"}, SLOT, "Availability slot date does not match requested date"),
        ({}, dict(SLOT, product_type="class"), "Availability slot does not match product"),
        ({"guests": 0}, SLOT, "guests must be at least 1 for this product"),
    ],
)
def test_availability_checks(overrides, slot, message):
    with pytest.raises(CheckoutError) as excinfo:
        create_checkout_session(body(**overrides), checkout_store(slot=slot), FakeProvider())

    assert excinfo.value.status == 400
    assert excinfo.value.message == message


def test_dog_only_product_accepts_zero_guests():
    provider = FakeProvider()
    product = dict(PRODUCT, no_adults=True)

    create_checkout_session(body(guests=0), checkout_store(product=product), provider)

    [item] = provider.sessions[0]["line_items"]
    assert item["quantity"] == 1
    assert item["price_data"]["unit_amount"] == 2500
