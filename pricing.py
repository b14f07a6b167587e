import logging
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

MIN_CHARGE_CENTS = 50


def round_half_up(value, places=2) -> float:
    """Round like Odoo and Stripe do (half away from zero), not banker's rounding."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def to_cents(amount) -> int:
    return int(Decimal(str(amount)).scaleb(2).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def tax_inclusive_total(unit_price, tax_rate) -> float:
    return round_half_up(unit_price + round_half_up(unit_price * tax_rate, 2), 2)


def tax_exclusive_unit_price(total, tax_rate=0.22) -> float:
    """
    Pre-tax unit price whose Odoo-computed total equals the amount charged.

    Scans candidate prices around total / (1 + tax_rate) at 2, then 3, then
    4 decimal places and returns the first one where
    round(p + round(p * tax_rate, 2), 2) == total. When no candidate matches,
    the closest one found is returned.
    """
    total = round_half_up(total, 2)
    if tax_rate <= 0:
        return total

    estimate = total / (1 + tax_rate)
    best_price = round_half_up(estimate, 2)
    best_diff = math.inf

    for decimals in (2, 3, 4):
        factor = 10 ** decimals
        start = math.floor(estimate * factor) - 10
        end = math.ceil(estimate * factor) + 10
        for units in range(start, end + 1):
            price = units / factor
            diff = abs(tax_inclusive_total(price, tax_rate) - total)
            if diff < 0.001:
                return round_half_up(price, decimals)
            if diff < best_diff:
                best_diff = diff
                best_price = round_half_up(price, decimals)

    logging.warning(
        "No exact pre-tax price for total %s at rate %s, using %s", total, tax_rate, best_price
    )
    return best_price


@dataclass
class PriceBreakdown:
    pricing_model: str
    total: float
    price_per_adult: float
    price_per_dog: float
    provider_cost_total: float
    subtotal_adults: float = 0.0
    subtotal_dogs: float = 0.0

    @property
    def total_cents(self) -> int:
        return to_cents(self.total)


class PricingError(ValueError):
    pass


def _number(product, key) -> float:
    try:
        return float(product.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def pricing_model_of(product) -> str:
    model = product.get("pricing_model") or product.get("pricing_type") or "percentage"
    if model in ("percentage", "markup"):
        return model
    return "linear"


def calculate_checkout_price(product, guests, dogs) -> PriceBreakdown:
    """
    Price a booking with the product's pricing model.

    percentage: provider cost * (1 + margin_percentage / 100)
    markup:     provider cost + markup_adult * guests + markup_dog * dogs
    linear:     price_adult_base * guests + price_dog_base * dogs
    """
    model = pricing_model_of(product)
    cost_adult = _number(product, "provider_cost_adult_base")
    cost_dog = _number(product, "provider_cost_dog_base")
    provider_cost_total = round_half_up(cost_adult * guests + cost_dog * dogs, 2)

    if model == "percentage":
        if provider_cost_total <= 0:
            raise PricingError("Invalid pricing configuration: provider cost must be greater than 0")
        margin = _number(product, "margin_percentage")
        total = round_half_up(provider_cost_total * (1 + margin / 100), 2)
        ratio = total / provider_cost_total
        price_adult = round_half_up(cost_adult * ratio, 2)
        price_dog = round_half_up(cost_dog * ratio, 2)
    elif model == "markup":
        markup_adult = _number(product, "markup_adult")
        markup_dog = _number(product, "markup_dog")
        total = round_half_up(provider_cost_total + markup_adult * guests + markup_dog * dogs, 2)
        price_adult = round_half_up(cost_adult + markup_adult, 2)
        price_dog = round_half_up(cost_dog + markup_dog, 2)
    else:
        price_adult = _number(product, "price_adult_base")
        price_dog = _number(product, "price_dog_base")
        total = round_half_up(price_adult * guests + price_dog * dogs, 2)

    if total <= 0:
        raise PricingError("Invalid pricing: total amount must be greater than 0")
    if to_cents(total) < MIN_CHARGE_CENTS:
        raise PricingError("Amount too low. Minimum payment is 0.50 EUR")

    subtotal_adults = round_half_up(price_adult * guests, 2)
    subtotal_dogs = round_half_up(price_dog * dogs, 2)
    difference = round_half_up(total - (subtotal_adults + subtotal_dogs), 2)
    if difference:
        # the larger subtotal absorbs the rounding difference
        if abs(subtotal_adults) >= abs(subtotal_dogs):
            subtotal_adults = round_half_up(subtotal_adults + difference, 2)
        else:
            subtotal_dogs = round_half_up(subtotal_dogs + difference, 2)

    return PriceBreakdown(
        pricing_model=model,
        total=total,
        price_per_adult=price_adult,
        price_per_dog=price_dog,
        provider_cost_total=provider_cost_total,
        subtotal_adults=subtotal_adults,
        subtotal_dogs=subtotal_dogs,
    )


def _line_item(name, unit_cents, quantity, currency, description=None, image=None):
    product_data = {"name": name}
    if description:
        product_data["description"] = description
    if image:
        product_data["images"] = [image]
    return {
        "price_data": {
            "currency": currency,
            "product_data": product_data,
            "unit_amount": unit_cents,
        },
        "quantity": quantity,
    }


def build_line_items(product, breakdown: PriceBreakdown, guests, dogs, currency="eur") -> list:
    """
    Stripe line items whose amounts sum exactly to the booking total in cents.

    Falls back to a single line for the whole total when a subtotal cannot be
    split evenly across its quantity.
    """
    name = product.get("name") or "Prenotazione"
    images = product.get("images")
    image = str(images[0]) if isinstance(images, list) and images else None
    total_cents = breakdown.total_cents

    items = []
    adult_cents = to_cents(breakdown.subtotal_adults)
    dog_cents = to_cents(breakdown.subtotal_dogs)
    if guests > 0 and adult_cents > 0:
        label = "persona" if guests == 1 else "persone"
        items.append(
            _line_item(
                f"{name} - {guests} {label}",
                adult_cents // guests,
                guests,
                currency,
                description=f"Prenotazione per {guests} {label}",
                image=image,
            )
        )
    if dogs > 0 and dog_cents > 0:
        label = "cane" if dogs == 1 else "cani"
        items.append(
            _line_item(
                f"{name} - {dogs} {label}",
                dog_cents // dogs,
                dogs,
                currency,
                description=f"Prenotazione per {dogs} {label}",
            )
        )

    items_sum = sum(item["price_data"]["unit_amount"] * item["quantity"] for item in items)
    if items_sum != total_cents:
        if items:
            logging.warning(
                "Line items sum %s does not match total %s, using a single line",
                items_sum,
                total_cents,
            )
        items = [
            _line_item(
                name,
                total_cents,
                1,
                currency,
                description=product.get("description") or None,
                image=image,
            )
        ]
    return items
