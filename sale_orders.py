import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import config
from models import BookingData, PartnerData
from odoo_client import RemoteRpcError, is_schema_drift_error
from pricing import tax_exclusive_unit_price
from results import ErrorKind, StepResult

SALE_ORDER_MODEL = "sale.order"

SALE_ORDER_CUSTOM_FIELDS = (
    "x_provider_id",
    "x_product_id",
    "x_customer_email",
    "x_product_type",
    "x_stripe_payment_id",
    "x_customer_fiscal_code",
    "x_customer_address",
    "x_booking_date",
    "x_booking_time",
    "x_order_number",
)


@dataclass
class SaleOrderRequest:
    payment_intent_id: str
    partner_id: int
    product_id: Optional[int]
    booking: BookingData
    partner: PartnerData
    provider_partner_id: Optional[int] = None


def format_odoo_datetime(value) -> Optional[str]:
    """Format a date or ISO datetime as Odoo's UTC 'YYYY-MM-DD HH:MM:SS'."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.strftime("%Y-%m-%d %H:%M:%S")


def _fmt_number(value) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_order_note(booking: BookingData, partner: PartnerData) -> str:
    address = partner.address
    address_line = (
        f"Indirizzo: {address.street or 'n/a'}, {address.city or 'n/a'} "
        f"{address.zip or ''} {address.province or ''}"
    )

    parts = []
    if booking.order_number:
        parts.append(f"Numero Ordine: #{booking.order_number}")
    parts += [
        f"Product: {booking.product.name or 'n/a'}",
        f"Provider: {booking.provider.name or 'n/a'}",
        f"Type: {booking.product.type or 'n/a'}",
        f"Guests: {_fmt_number(booking.number_of_adults)}",
        f"Dogs: {_fmt_number(booking.number_of_dogs)}",
        f"Total: {_fmt_number(booking.total_amount)} {booking.currency or ''}",
        f"Date: {booking.order_date or booking.booking_date or 'n/a'}",
        f"ProductId: {booking.product.id or 'n/a'}",
        f"Email: {partner.email or 'n/a'}",
    ]

    if partner.is_b2b:
        parts += ["B2B: Sì", f"Ragione Sociale: {partner.name or 'n/a'}"]
        if partner.contact_name or partner.contact_surname:
            parts += [
                f"Nome contatto: {partner.contact_name or 'n/a'}",
                f"Cognome contatto: {partner.contact_surname or 'n/a'}",
            ]
        parts.append(f"P.IVA: {partner.vat_number or 'n/a'}")
        if partner.fiscal_code:
            parts.append(f"CF: {partner.fiscal_code}")
        if partner.sdi_code:
            parts.append(f"SDI: {partner.sdi_code}")
        if partner.pec_email:
            parts.append(f"PEC: {partner.pec_email}")
    else:
        parts += ["B2B: No", f"Nome: {partner.name or 'n/a'}"]
        if partner.fiscal_code:
            parts.append(f"CF: {partner.fiscal_code}")
    parts.append(address_line)

    return " | ".join(parts)


def build_line_description(product_name, guests, dogs) -> str:
    """Guests and dogs go in the description, the line quantity stays 1."""
    name = product_name or "Order line"
    if guests and guests > 0:
        name = f"{name} ({guests} {'persona' if guests == 1 else 'persone'})"
    if dogs and dogs > 0:
        name = f"{name}, {dogs} {'cane' if dogs == 1 else 'cani'}"
    return name


def build_order_line(request: SaleOrderRequest) -> list:
    booking = request.booking
    total = booking.total_amount or 0.0
    if config.ODOO_TAX_ID:
        price_unit = tax_exclusive_unit_price(total, config.ODOO_TAX_RATE)
    else:
        price_unit = total

    line = {
        "product_id": request.product_id,
        "name": build_line_description(
            booking.product.name, booking.number_of_adults, booking.number_of_dogs
        ),
        "product_uom_qty": 1,
        "price_unit": price_unit,
    }
    if config.ODOO_TAX_ID:
        line["tax_ids"] = [[6, 0, [config.ODOO_TAX_ID]]]
    return [0, 0, line]


def build_order_values(request: SaleOrderRequest):
    """Return (standard values, custom x_ values) for the sale.order header."""
    booking = request.booking
    partner = request.partner
    values = {
        "partner_id": request.partner_id,
        "partner_shipping_id": request.partner_id,
        "partner_invoice_id": request.partner_id,
        "client_order_ref": request.payment_intent_id,
        "origin": booking.product.name or "Stripe Order",
        "note": build_order_note(booking, partner),
        "date_order": format_odoo_datetime(booking.order_date or booking.booking_date),
        "pricelist_id": config.ODOO_PRICELIST_ID,
        "payment_term_id": config.ODOO_PAYMENT_TERM_ID,
        "company_id": config.ODOO_COMPANY_ID,
        "team_id": config.ODOO_TEAM_ID,
    }
    custom = {
        "x_provider_id": request.provider_partner_id,
        "x_product_id": booking.product.id,
        "x_customer_email": partner.email,
        "x_product_type": booking.product.type,
        "x_stripe_payment_id": request.payment_intent_id,
        "x_customer_fiscal_code": partner.fiscal_code,
        "x_customer_address": partner.address.as_text() or booking.customer.address,
        "x_booking_date": booking.booking_date,
        "x_booking_time": booking.booking_time,
        "x_order_number": booking.order_number,
    }
    values = {key: value for key, value in values.items() if value is not None}
    custom = {key: value for key, value in custom.items() if value}
    return values, custom


def find_sale_order_by_payment(client, payment_intent_id) -> Optional[int]:
    ids = client.search(
        SALE_ORDER_MODEL, [["client_order_ref", "=", payment_intent_id]], limit=1
    )
    return ids[0] if ids else None


def _save_order(client, values, custom, order_id=None) -> int:
    """
    Create or update an order, stripping custom fields on schema drift.

    The custom fields are then attached with a separate best-effort write.
    """
    try:
        if order_id:
            client.write(SALE_ORDER_MODEL, [order_id], {**values, **custom})
            return order_id
        return client.create(SALE_ORDER_MODEL, {**values, **custom})
    except RemoteRpcError as e:
        if not custom or not is_schema_drift_error(e, SALE_ORDER_CUSTOM_FIELDS):
            raise
        logging.warning("Sale order rejected custom fields, retrying without them: %s", e)

    if order_id:
        client.write(SALE_ORDER_MODEL, [order_id], values)
    else:
        order_id = client.create(SALE_ORDER_MODEL, values)

    try:
        client.write(SALE_ORDER_MODEL, [order_id], custom)
    except RemoteRpcError as e:
        logging.warning("Could not attach custom fields to sale order %s: %s", order_id, e)
    return order_id


def confirm_sale_order(client, order_id) -> bool:
    """
    Move the order to the confirmed state.

    An order that is already confirmed makes action_confirm fail, which is
    fine: the state write afterwards is the safety net.
    """
    confirmed = False
    try:
        client.execute_kw(SALE_ORDER_MODEL, "action_confirm", [[order_id]])
        confirmed = True
    except RemoteRpcError as e:
        logging.warning("action_confirm failed for sale order %s (already confirmed?): %s", order_id, e)

    try:
        client.write(SALE_ORDER_MODEL, [order_id], {"state": "sale"})
        confirmed = True
    except RemoteRpcError as e:
        logging.warning("Could not force state on sale order %s: %s", order_id, e)
    return confirmed


def reconcile_sale_order(client, request: SaleOrderRequest) -> StepResult:
    """
    Create or update the single sale order of a payment intent and confirm it.

    A replayed payment finds the existing order by client_order_ref and only
    rewrites its header, so the order lines never change on re-delivery.
    """
    if not request.payment_intent_id:
        return StepResult.failure("Payment intent id is required", ErrorKind.VALIDATION)
    if not request.product_id:
        return StepResult.failure(
            "Product id is required to create the order line", ErrorKind.VALIDATION
        )

    values, custom = build_order_values(request)

    try:
        order_id = find_sale_order_by_payment(client, request.payment_intent_id)
        if order_id:
            logging.info("Sale order %s already exists for %s, updating", order_id, request.payment_intent_id)
            _save_order(client, values, custom, order_id=order_id)
            created = False
        else:
            values["order_line"] = [build_order_line(request)]
            order_id = _save_order(client, values, custom)
            created = True
            logging.info("Created sale order %s for %s", order_id, request.payment_intent_id)
    except RemoteRpcError as e:
        kind = ErrorKind.SCHEMA_DRIFT if is_schema_drift_error(e) else ErrorKind.UPSTREAM
        logging.error("Sale order reconciliation failed for %s: %s", request.payment_intent_id, e)
        return StepResult.failure(e, kind, paymentIntentId=request.payment_intent_id)

    confirmed = confirm_sale_order(client, order_id)
    return StepResult.success({"order_id": order_id, "created": created, "confirmed": confirmed})
