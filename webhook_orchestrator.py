import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import stripe

from booking_store import BookingStoreError
from metadata import (
    CustomFieldValues,
    build_booking_from_metadata,
    build_partner_from_metadata,
    customer_fields_from_metadata,
    first_value,
    has_b2b_metadata,
    has_internal_checkout_metadata,
    merge_b2b_metadata,
    parse_custom_fields,
)
from models import BookingData, CustomerInfo, PartnerData
from odoo_client import RemoteRpcError
from partners import (
    UNKNOWN_PROVIDER_NAMES,
    create_minimal_partner,
    find_partner_by_email,
    internal_fallback_email,
    is_placeholder_email,
    resolve_customer_partner,
    resolve_supplier_partner,
)
from payment_gateway import PaymentGatewayError, as_dict
from products import resolve_product
from purchase_orders import upsert_purchase_order
from sale_orders import SaleOrderRequest, reconcile_sale_order

HANDLED_EVENT = "payment_intent.succeeded"
WEBHOOK_ENDPOINT = "/api/stripe-webhook-odoo"
FALLBACK_PROVIDER_NAME = "Unknown provider"


@dataclass
class OrderContext:
    """Everything known about a paid order once metadata has been extracted."""

    payment_intent_id: str
    metadata: dict
    partner: PartnerData
    booking: BookingData
    customer_fields: CustomFieldValues = field(default_factory=CustomFieldValues)
    checkout_session_id: Optional[str] = None


def _iso_from_timestamp(timestamp) -> Optional[str]:
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError):
        return None


def _looks_like_person_name(name) -> bool:
    if not name:
        return False
    name = name.strip()
    return len(name) >= 2 and "@" not in name and "/" not in name


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class WebhookOrchestrator:
    """
    Turns a verified payment_intent.succeeded event into Odoo records.

    received -> signature verified -> event filtered -> metadata extracted
    -> reconciled (partner, product, sale order, purchase order)
    -> persisted (booking row) -> notified (confirmation e-mail)

    Only the partner, product and sale order steps can fail the request.
    Everything after the sale order is best effort and only logged.
    """

    def __init__(self, odoo_client, booking_store=None, gateway=None, notifier=None, webhook_secret=None):
        self.odoo = odoo_client
        self.store = booking_store
        self.gateway = gateway
        self.notifier = notifier
        self.webhook_secret = webhook_secret

    @staticmethod
    def health() -> dict:
        return {
            "status": "ok",
            "message": "Stripe webhook endpoint is ready",
            "endpoint": WEBHOOK_ENDPOINT,
            "methods": ["POST"],
        }

    def handle(self, raw_body, signature):
        """Verify and dispatch one webhook delivery. Returns (payload, status)."""
        if not signature:
            return {"error": "Missing stripe-signature header"}, 400
        if not raw_body:
            return {"error": "Empty request body"}, 400

        try:
            event = self.gateway.construct_event(raw_body, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logging.warning("Stripe webhook signature verification failed: %s", e)
            return {"error": "Invalid signature"}, 400

        event_type = event.get("type")
        if event_type != HANDLED_EVENT:
            logging.info("Ignoring Stripe event %s", event_type)
            return {"received": True, "ignored": True}, 200

        payment_intent = (event.get("data") or {}).get("object") or {}
        return self.process_payment_intent(payment_intent)

    # Extraction

    def _find_checkout_session(self, payment_intent_id) -> Optional[dict]:
        if self.gateway is None or not payment_intent_id:
            return None
        try:
            return self.gateway.find_checkout_session_for_payment_intent(payment_intent_id)
        except (stripe.StripeError, PaymentGatewayError) as e:
            logging.warning("Could not load checkout session for %s: %s", payment_intent_id, e)
            return None

    def _lookup_provider(self, booking: BookingData):
        """Provider name and e-mail from the product's owner profile in the booking store."""
        if self.store is None or not booking.product.id:
            return
        try:
            row, product_type = self.store.find_product_any_type(booking.product.id)
            if not row:
                return
            booking.product.type = booking.product.type or product_type
            booking.product.name = booking.product.name or row.get("name")
            provider_id = row.get("provider_id")
            profile = self.store.get_provider_profile(provider_id)
        except BookingStoreError as e:
            logging.warning("Provider lookup failed for product %s: %s", booking.product.id, e)
            return

        booking.provider.id = booking.provider.id or provider_id
        if profile:
            booking.provider.name = profile.get("company_name") or profile.get("contact_name")
            booking.provider.email = booking.provider.email or profile.get("email")

    def extract_order(self, payment_intent) -> OrderContext:
        payment_intent = as_dict(payment_intent)
        payment_intent_id = payment_intent.get("id")
        metadata = dict(payment_intent.get("metadata") or {})
        internal = has_internal_checkout_metadata(metadata)
        customer_fields = customer_fields_from_metadata(metadata) if internal else CustomFieldValues()
        session_email = None
        checkout_session_id = None

        if not internal or not has_b2b_metadata(metadata):
            session = self._find_checkout_session(payment_intent_id)
            if session:
                checkout_session_id = session.get("id")
                if not has_b2b_metadata(metadata):
                    metadata = merge_b2b_metadata(metadata, session.get("metadata") or {})
                details = session.get("customer_details") or {}
                session_email = session.get("customer_email") or details.get("email")
                parsed = parse_custom_fields(session.get("custom_fields"))
                # custom fields the customer typed win over metadata
                for name in ("first_name", "last_name", "fiscal_code", "address"):
                    value = getattr(parsed, name)
                    if value:
                        setattr(customer_fields, name, value)

        if checkout_session_id and not first_value(metadata, "order_number"):
            metadata["order_number"] = checkout_session_id[-8:].upper()

        partner = build_partner_from_metadata(metadata)
        booking = build_booking_from_metadata(metadata)
        booking.stripe_payment_intent_id = payment_intent_id
        shipping = payment_intent.get("shipping") or {}

        if customer_fields.fiscal_code:
            partner.fiscal_code = customer_fields.fiscal_code.strip()
        if customer_fields.address and not partner.address.street and not internal:
            partner.address.street = customer_fields.address

        if is_placeholder_email(partner.email):
            candidates = (
                session_email,
                first_value(metadata, "customer_email", "email"),
                payment_intent.get("receipt_email"),
            )
            enriched = next((email for email in candidates if not is_placeholder_email(email)), None)
            if enriched:
                partner.email = enriched
            elif not partner.email:
                partner.email = f"missing-{payment_intent_id}@example.com"

        if not partner.is_b2b:
            name = (
                customer_fields.full_name
                or first_value(metadata, "customer_name", "name")
                or shipping.get("name")
            )
            partner.name = name.strip() if _looks_like_person_name(name) else "Cliente"
        if not partner.phone:
            partner.phone = shipping.get("phone") or ""

        if booking.total_amount <= 0:
            amount = payment_intent.get("amount_received") or payment_intent.get("amount") or 0
            booking.total_amount = amount / 100
        if not booking.currency:
            booking.currency = (payment_intent.get("currency") or "eur").upper()
        booking.order_date = _iso_from_timestamp(payment_intent.get("created"))
        if not booking.booking_date and booking.order_date:
            booking.booking_date = booking.order_date[:10]
        booking.product.name = booking.product.name or payment_intent.get("description")
        booking.order_number = first_value(metadata, "order_number")

        provider_name = (booking.provider.name or "").strip().lower()
        if not provider_name or provider_name in UNKNOWN_PROVIDER_NAMES:
            self._lookup_provider(booking)
        booking.provider.name = booking.provider.name or FALLBACK_PROVIDER_NAME
        booking.product.name = booking.product.name or "Stripe Order"
        booking.product.type = booking.product.type or "experience"

        booking.customer = CustomerInfo(
            email=partner.email,
            full_name=customer_fields.full_name or partner.name,
            first_name=customer_fields.first_name,
            last_name=customer_fields.last_name,
            phone=partner.phone or None,
            fiscal_code=partner.fiscal_code,
            address=customer_fields.address or partner.address.as_text() or None,
        )

        return OrderContext(
            payment_intent_id=payment_intent_id,
            metadata=metadata,
            partner=partner,
            booking=booking,
            customer_fields=customer_fields,
            checkout_session_id=checkout_session_id,
        )

    # Reconciliation

    def _resolve_partner(self, partner: PartnerData) -> Optional[int]:
        result = resolve_customer_partner(self.odoo, partner)
        if result.ok:
            return result.value
        logging.warning("Partner resolution failed (%s), trying fallbacks", result.error)

        email = partner.email
        if not is_placeholder_email(email):
            try:
                partner_id = find_partner_by_email(self.odoo, email)
                if partner_id:
                    logging.info("Using existing partner %s found by e-mail", partner_id)
                    return partner_id
            except RemoteRpcError as e:
                logging.warning("Fallback partner search failed: %s", e)
        else:
            email = internal_fallback_email()

        try:
            partner_id = create_minimal_partner(self.odoo, email, partner.is_b2b, partner.name)
        except RemoteRpcError as e:
            logging.error("Could not create minimal partner for %s: %s", email, e)
            return None
        logging.info("Created minimal partner %s", partner_id)
        return partner_id

    def _resolve_supplier(self, booking: BookingData) -> Optional[int]:
        name = (booking.provider.name or "").strip().lower()
        if not name or name in UNKNOWN_PROVIDER_NAMES:
            return None
        result = resolve_supplier_partner(self.odoo, booking.provider)
        if not result.ok:
            logging.warning("Supplier partner not resolved for %s: %s", booking.provider.name, result.error)
            return None
        return result.value

    def _find_booking_row(self, payment_intent_id):
        if self.store is None:
            return None
        try:
            return self.store.find_booking_by_payment_intent(payment_intent_id)
        except BookingStoreError as e:
            logging.warning("Could not load booking for %s: %s", payment_intent_id, e)
            return None

    def _upsert_purchase_order(self, booking: BookingData, booking_row):
        cost = booking.provider_cost_total
        if not cost and booking_row:
            cost = _to_float(booking_row.get("provider_cost_total"))
        if not cost or cost <= 0:
            logging.info("No provider cost for %s, skipping purchase order", booking.stripe_payment_intent_id)
            return None

        booking.provider_cost_total = cost
        if booking_row:
            booking.booking_id = booking.booking_id or booking_row.get("id")
            booking.product.id = booking.product.id or booking_row.get("product_id")

        result = upsert_purchase_order(self.odoo, booking, self.store)
        if result.ok:
            logging.info(
                "Purchase order %s %s for %s",
                result.value["purchase_order_id"],
                "unchanged" if result.skipped else "updated",
                booking.stripe_payment_intent_id,
            )
        else:
            logging.warning("Purchase order step failed for %s: %s", booking.stripe_payment_intent_id, result.error)
        return result

    def _persist_booking(self, context: OrderContext, booking_row):
        """Correct the customer name on the booking row, or insert a fallback row."""
        if self.store is None:
            return booking_row
        booking = context.booking
        first_name = context.customer_fields.first_name
        last_name = context.customer_fields.last_name

        try:
            if booking_row:
                updates = {}
                if first_name and booking_row.get("customer_name") != first_name:
                    updates["customer_name"] = first_name
                if last_name and booking_row.get("customer_surname") != last_name:
                    updates["customer_surname"] = last_name
                if not updates:
                    return booking_row
                rows = self.store.update("booking", {"id": booking_row["id"]}, updates)
                logging.info("Updated customer name on booking %s", booking_row["id"])
                return rows[0] if rows else {**booking_row, **updates}

            row = {
                "stripe_payment_intent_id": context.payment_intent_id,
                "stripe_checkout_session_id": context.checkout_session_id,
                "product_id": booking.product.id,
                "product_type": booking.product.type,
                "product_name": booking.product.name,
                "provider_id": booking.provider.id,
                "number_of_adults": booking.number_of_adults,
                "number_of_dogs": booking.number_of_dogs,
                "total_amount_paid": booking.total_amount,
                "currency": booking.currency,
                "booking_date": booking.booking_date,
                "booking_time": booking.booking_time,
                "order_number": booking.order_number,
                "customer_email": context.partner.email,
                "customer_name": first_name or context.partner.name,
                "customer_surname": last_name,
            }
            inserted = self.store.insert("booking", {k: v for k, v in row.items() if v is not None})
            logging.info("Inserted fallback booking for %s", context.payment_intent_id)
            return inserted
        except BookingStoreError as e:
            logging.error("Could not persist booking for %s: %s", context.payment_intent_id, e)
            return booking_row

    def _notify(self, booking_row, checkout_session_id):
        if self.notifier is None or not booking_row:
            return
        try:
            self.notifier.send_order_confirmation(booking_row, checkout_session_id)
        except BookingStoreError as e:
            logging.error("Could not record confirmation e-mail status: %s", e)

    def process_payment_intent(self, payment_intent):
        context = self.extract_order(payment_intent)
        payment_intent_id = context.payment_intent_id
        order_number = context.booking.order_number
        logging.info("Processing payment intent %s (order %s)", payment_intent_id, order_number)

        def failure(message):
            return {"error": message, "paymentIntentId": payment_intent_id, "orderNumber": order_number}, 500

        partner_id = self._resolve_partner(context.partner)
        if not partner_id:
            return failure("Could not create or find partner")

        provider_partner_id = self._resolve_supplier(context.booking)

        product = resolve_product(self.odoo, context.booking.product, self.store)
        if not product.ok:
            logging.error("Product resolution failed for %s: %s", payment_intent_id, product.error)
            return failure(f"Product resolution failed: {product.error}")

        order = reconcile_sale_order(
            self.odoo,
            SaleOrderRequest(
                payment_intent_id=payment_intent_id,
                partner_id=partner_id,
                product_id=product.value,
                booking=context.booking,
                partner=context.partner,
                provider_partner_id=provider_partner_id,
            ),
        )
        if not order.ok:
            return failure(f"Sale order failed: {order.error}")
        order_id = order.value["order_id"]

        booking_row = self._find_booking_row(payment_intent_id)
        self._upsert_purchase_order(context.booking, booking_row)
        booking_row = self._persist_booking(context, booking_row)
        self._notify(booking_row, context.checkout_session_id)

        return {"success": True, "orderId": order_id, "paymentIntentId": payment_intent_id}, 200
