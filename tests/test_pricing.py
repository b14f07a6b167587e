import pytest

from pricing import (
    PriceBreakdown,
    PricingError,
    build_line_items,
    calculate_checkout_price,
    round_half_up,
    tax_exclusive_unit_price,
    tax_inclusive_total,
    to_cents,
)


def test_tax_exclusive_price_reproduces_total():
    price = tax_exclusive_unit_price(100.00, 0.22)

    assert price == 81.97
    assert tax_inclusive_total(price, 0.22) == 100.00


@pytest.mark.parametrize("total", [49.90, 12.00, 239.00, 0.61])
def test_tax_exclusive_price_round_trips_common_totals(total):
    assert tax_inclusive_total(tax_exclusive_unit_price(total, 0.22), 0.22) == total


def test_zero_tax_rate_keeps_total():
    assert tax_exclusive_unit_price(57.5, 0) == 57.5


def test_round_half_up():
    assert round_half_up(2.675) == 2.68
    assert round_half_up(0.125) == 0.13
    assert to_cents(19.99) == 1999


def test_linear_pricing_and_line_items():
    product = {"name": "Trekking", "pricing_model": "linear", "price_adult_base": 50, "price_dog_base": 25}

    breakdown = calculate_checkout_price(product, guests=2, dogs=1)
    items = build_line_items(product, breakdown, guests=2, dogs=1)

    assert breakdown.total == 125.00
    assert breakdown.pricing_model == "linear"
    assert [(i["price_data"]["unit_amount"], i["quantity"]) for i in items] == [(5000, 2), (2500, 1)]
    assert sum(i["price_data"]["unit_amount"] * i["quantity"] for i in items) == 12500
    assert items[0]["price_data"]["product_data"]["name"] == "Trekking - 2 persone"
    assert items[1]["price_data"]["product_data"]["name"] == "Trekking - 1 cane"


def test_percentage_pricing_is_the_default():
    product = {"provider_cost_adult_base": 30, "provider_cost_dog_base": 10, "margin_percentage": 20}

    breakdown = calculate_checkout_price(product, guests=2, dogs=1)

    assert breakdown.pricing_model == "percentage"
    assert breakdown.provider_cost_total == 70.00
    assert breakdown.total == 84.00
    assert breakdown.subtotal_adults + breakdown.subtotal_dogs == 84.00


def test_markup_pricing():
    product = {
        "pricing_model": "markup",
        "provider_cost_adult_base": 40,
        "provider_cost_dog_base": 0,
        "markup_adult": 5,
        "markup_dog": 3,
    }

    breakdown = calculate_checkout_price(product, guests=1, dogs=2)

    assert breakdown.total == 51.00
    assert breakdown.price_per_adult == 45.00
    assert breakdown.price_per_dog == 3.00


def test_percentage_without_provider_cost_is_rejected():
    with pytest.raises(PricingError, match="provider cost must be greater than 0"):
        calculate_checkout_price({"margin_percentage": 20}, guests=2, dogs=0)


def test_amount_below_stripe_minimum():
    product = {"pricing_model": "linear", "price_adult_base": 0.2}

    with pytest.raises(PricingError, match="Minimum payment is 0.50 EUR"):
        calculate_checkout_price(product, guests=1, dogs=0)


def test_uneven_split_falls_back_to_single_line():
    breakdown = PriceBreakdown(
        pricing_model="percentage",
        total=10.00,
        price_per_adult=3.33,
        price_per_dog=0,
        provider_cost_total=8.00,
        subtotal_adults=10.00,
    )

    items = build_line_items({"name": "Agility", "description": "Lezione"}, breakdown, guests=3, dogs=0)

    assert len(items) == 1
    assert items[0]["quantity"] == 1
    assert items[0]["price_data"]["unit_amount"] == 1000
    assert items[0]["price_data"]["product_data"]["description"] == "Lezione"
