import logging
import re
from datetime import datetime, timezone
from typing import Optional

from booking_mapper import map_booking_record, validate_booking_data
from booking_store import BookingStoreError
from models import BookingData
from odoo_client import RemoteRpcError, is_schema_drift_error
from partners import UNKNOWN_PROVIDER_NAMES, resolve_supplier_partner
from products import resolve_product
from results import ErrorKind, StepResult
from sale_orders import SALE_ORDER_MODEL

PURCHASE_ORDER_MODEL = "purchase.order"
PURCHASE_LINE_MODEL = "purchase.order.line"

# Reference tokens embedded in purchase line descriptions. They are the dedup
# keys when the line model has no queryable booking field.
SO_TOKEN = "[SO:{}]"
BOOKING_TOKEN = "[BK:{}]"
BOOKING_TOKEN_LENGTH = 8

TOKEN_RE = re.compile(r"\[(SO|BK):([^\]\s]+)\]")
# Lines written before the tokens existed read "SO: S00052 - Cliente: ..."
LEGACY_SO_RE = re.compile(r"(?<![\[\w])SO:\s+([A-Za-z0-9/_-]+)")

DRAFT_SCAN_LIMIT = 10

PO_CUSTOM_FIELDS = ("x_product_id", "x_product_type", "x_provider_id")
LINE_CUSTOM_FIELDS = (
    "x_booking_id",
    "x_stripe_payment_id",
    "x_sale_order_id",
    "x_customer_email",
    "x_customer_name",
)


def so_token(so_name) -> str:
    return SO_TOKEN.format(so_name)


def booking_token(booking_ref) -> str:
    return BOOKING_TOKEN.format(str(booking_ref)[:BOOKING_TOKEN_LENGTH])


def parse_reference_tokens(text) -> dict:
    """Extract {"so": [...], "bk": [...]} from a line description."""
    refs = {"so": [], "bk": []}
    if not text:
        return refs
    for kind, value in TOKEN_RE.findall(text):
        refs[kind.lower()].append(value)
    for value in LEGACY_SO_RE.findall(text):
        if value not in refs["so"]:
            refs["so"].append(value)
    return refs


def _booking_ref(booking: BookingData) -> str:
    if booking.booking_id:
        return str(booking.booking_id)
    payment_intent_id = booking.stripe_payment_intent_id or ""
    if payment_intent_id.startswith("pi_"):
        payment_intent_id = payment_intent_id[3:]
    return payment_intent_id


def _plural(count, singular, plural) -> str:
    return f"{count} {singular if count == 1 else plural}"


def build_purchase_line_description(booking: BookingData, so_name=None) -> str:
    tokens = []
    if so_name:
        tokens.append(so_token(so_name))
    booking_ref = _booking_ref(booking)
    if booking_ref:
        tokens.append(booking_token(booking_ref))

    customer = booking.customer.full_name or booking.customer.email or "n/a"
    guests = _plural(booking.number_of_adults, "persona", "persone")
    dogs = _plural(booking.number_of_dogs, "cane", "cani")
    description = (
        f"Cliente: {customer} - {booking.product.name} - ({guests}, {dogs})"
        f" - Data: {booking.booking_date or 'n/a'}"
    )
    return " ".join(tokens + [description])


def is_duplicate_line(line_names, so_name, booking_ref) -> bool:
    """
    True when one of the PO's lines already carries this booking.

    The sale order reference is the primary key, the booking fragment the
    secondary one.
    """
    fragment = str(booking_ref)[:BOOKING_TOKEN_LENGTH] if booking_ref else None
    for name in line_names:
        refs = parse_reference_tokens(name)
        if so_name and so_name in refs["so"]:
            return True
        if fragment and fragment in refs["bk"]:
            return True
    return False


def _many2one_id(value) -> Optional[int]:
    # many2one fields are read back as [id, display_name]
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value or None


def _now_odoo() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def find_sale_order_reference(client, payment_intent_id):
    """Return (order id, order name, first line id) of the payment's sale order, best effort."""
    if not payment_intent_id:
        return None, None, None
    try:
        ids = client.search(
            SALE_ORDER_MODEL, [["client_order_ref", "=", payment_intent_id]], limit=1
        )
        if not ids:
            return None, None, None
        orders = client.read(SALE_ORDER_MODEL, ids, ["name", "order_line"])
    except RemoteRpcError as e:
        logging.warning("Could not look up sale order for %s: %s", payment_intent_id, e)
        return None, None, None
    if not orders:
        return ids[0], None, None
    order = orders[0]
    line_ids = order.get("order_line") or []
    return ids[0], order.get("name"), line_ids[0] if line_ids else None


def find_draft_purchase_order(client, supplier_id, product_uuid, product_id) -> Optional[int]:
    """
    Find the open draft PO of a (supplier, product) pair.

    Uses x_product_id when the schema has it, then scans the supplier's first
    draft orders and compares their lines' products.
    """
    try:
        ids = client.search(
            PURCHASE_ORDER_MODEL,
            [
                ["partner_id", "=", supplier_id],
                ["state", "=", "draft"],
                ["x_product_id", "=", product_uuid],
            ],
            limit=1,
        )
        if ids:
            return ids[0]
    except RemoteRpcError as e:
        if not is_schema_drift_error(e, ("x_product_id",)):
            raise
        logging.warning("x_product_id not available on purchase.order, scanning drafts")

    draft_ids = client.search(
        PURCHASE_ORDER_MODEL,
        [["partner_id", "=", supplier_id], ["state", "=", "draft"]],
        limit=DRAFT_SCAN_LIMIT,
    )
    if not draft_ids:
        return None

    orders = client.read(PURCHASE_ORDER_MODEL, draft_ids, ["id", "name", "partner_id", "order_line"])
    for order in orders:
        line_ids = order.get("order_line") or []
        if not line_ids:
            continue
        lines = client.read(PURCHASE_LINE_MODEL, line_ids, ["product_id"])
        if any(_many2one_id(line.get("product_id")) == product_id for line in lines):
            return order["id"]
    return None


def _line_names(client, purchase_order_id) -> list:
    orders = client.read(PURCHASE_ORDER_MODEL, [purchase_order_id], ["order_line"])
    line_ids = orders[0].get("order_line") if orders else None
    if not line_ids:
        return []
    lines = client.read(PURCHASE_LINE_MODEL, line_ids, ["name"])
    return [line.get("name") or "" for line in lines]


def link_sale_order(client, purchase_order_id, sale_order_id):
    """Add the sale order to the PO's sale_order_ids, best effort."""
    if not sale_order_id:
        return
    try:
        orders = client.read(PURCHASE_ORDER_MODEL, [purchase_order_id], ["sale_order_ids"])
        current = list(orders[0].get("sale_order_ids") or []) if orders else []
        if sale_order_id in current:
            return
        client.write(
            PURCHASE_ORDER_MODEL,
            [purchase_order_id],
            {"sale_order_ids": [[6, 0, current + [sale_order_id]]]},
        )
    except RemoteRpcError as e:
        logging.warning("Could not link sale order %s to PO %s: %s", sale_order_id, purchase_order_id, e)


def _line_values(booking: BookingData, product_id, description):
    base = {
        "product_id": product_id,
        "name": description,
        "product_qty": 1,
        "price_unit": booking.provider_cost_total,
    }
    custom = {
        "x_booking_id": booking.booking_id,
        "x_stripe_payment_id": booking.stripe_payment_intent_id,
        "x_customer_email": booking.customer.email,
        "x_customer_name": booking.customer.full_name or None,
    }
    return base, {key: value for key, value in custom.items() if value}


def _append_line(client, purchase_order_id, booking, product_id, description, sale_order):
    sale_order_id, _, sale_line_id = sale_order
    base, custom = _line_values(booking, product_id, description)
    base["order_id"] = purchase_order_id
    if sale_order_id:
        custom["x_sale_order_id"] = sale_order_id
    extra = {"sale_line_id": sale_line_id} if sale_line_id else {}

    # lines are created on the line model directly, rewriting the parent's
    # order_line fails server side with an unhashable list
    try:
        line_id = client.create(PURCHASE_LINE_MODEL, {**base, **custom, **extra})
    except RemoteRpcError as e:
        if not is_schema_drift_error(e, LINE_CUSTOM_FIELDS + ("sale_line_id",)):
            raise
        logging.warning("PO line rejected custom fields, retrying with base fields: %s", e)
        line_id = client.create(PURCHASE_LINE_MODEL, base)

    link_sale_order(client, purchase_order_id, sale_order_id)
    return line_id


def _create_purchase_order(client, booking, supplier_id, product_id, description, sale_order):
    sale_order_id, so_name, sale_line_id = sale_order
    base_line, line_custom = _line_values(booking, product_id, description)
    if sale_order_id:
        line_custom["x_sale_order_id"] = sale_order_id

    origin = f"Product: {booking.product.name}"
    if so_name:
        origin = f"{so_token(so_name)} | {origin}"
    header = {
        "partner_id": supplier_id,
        "date_order": _now_odoo(),
        "origin": origin,
        "note": (
            f"PO for {booking.product.name} - {booking.provider.name}\n"
            "All bookings for this product will be added to this PO."
        ),
    }
    custom = {
        "x_product_id": booking.product.id,
        "x_product_type": booking.product.type,
        "x_provider_id": booking.provider.id,
    }
    custom = {key: value for key, value in custom.items() if value}

    try:
        purchase_order_id = client.create(
            PURCHASE_ORDER_MODEL,
            {**header, **custom, "order_line": [[0, 0, {**base_line, **line_custom}]]},
        )
    except RemoteRpcError as e:
        if not is_schema_drift_error(e, PO_CUSTOM_FIELDS + LINE_CUSTOM_FIELDS):
            raise
        logging.warning("PO rejected custom fields, retrying without them: %s", e)
        purchase_order_id = client.create(
            PURCHASE_ORDER_MODEL, {**header, "order_line": [[0, 0, base_line]]}
        )
        try:
            client.write(PURCHASE_ORDER_MODEL, [purchase_order_id], custom)
        except RemoteRpcError as write_error:
            logging.warning("Could not set custom fields on PO %s: %s", purchase_order_id, write_error)

    link_sale_order(client, purchase_order_id, sale_order_id)
    if sale_line_id:
        try:
            orders = client.read(PURCHASE_ORDER_MODEL, [purchase_order_id], ["order_line"])
            line_ids = orders[0].get("order_line") if orders else None
            if line_ids:
                client.write(PURCHASE_LINE_MODEL, [line_ids[0]], {"sale_line_id": sale_line_id})
        except RemoteRpcError as e:
            logging.warning("Could not link PO line to sale line %s: %s", sale_line_id, e)
    return purchase_order_id


def upsert_purchase_order(client, booking: BookingData, store=None) -> StepResult:
    """
    Add a booking's supplier cost to the draft PO of its (product, supplier) pair.

    Creates the PO when the pair has no draft order yet. A booking whose
    reference token is already on one of the PO's lines is skipped, so
    repeated deliveries never add a second line.
    """
    if booking.provider_cost_total is None or booking.provider_cost_total <= 0:
        return StepResult.failure(
            "providerCostTotal must be greater than 0", ErrorKind.VALIDATION
        )
    provider_name = (booking.provider.name or "").strip()
    if not provider_name or provider_name.lower() in UNKNOWN_PROVIDER_NAMES:
        return StepResult.failure("Provider name is required", ErrorKind.VALIDATION)
    if not booking.product.id:
        return StepResult.failure("Product id is required", ErrorKind.VALIDATION)

    supplier = resolve_supplier_partner(client, booking.provider)
    if not supplier.ok:
        return StepResult.failure(
            f"Could not resolve supplier: {supplier.error}", supplier.kind or ErrorKind.UPSTREAM
        )
    product = resolve_product(client, booking.product, store)
    if not product.ok:
        return StepResult.failure(
            f"Could not resolve product: {product.error}", product.kind or ErrorKind.UPSTREAM
        )
    supplier_id, product_id = supplier.value, product.value

    sale_order = find_sale_order_reference(client, booking.stripe_payment_intent_id)
    so_name = sale_order[1]
    description = build_purchase_line_description(booking, so_name)

    try:
        purchase_order_id = find_draft_purchase_order(client, supplier_id, booking.product.id, product_id)

        if purchase_order_id:
            if is_duplicate_line(_line_names(client, purchase_order_id), so_name, _booking_ref(booking)):
                logging.info("Booking %s already on PO %s, skipping", _booking_ref(booking), purchase_order_id)
                return StepResult.skip(
                    {"purchase_order_id": purchase_order_id, "created": False},
                    reason="Booking already present on purchase order",
                )
            _append_line(client, purchase_order_id, booking, product_id, description, sale_order)
            logging.info("Added booking %s to PO %s", _booking_ref(booking), purchase_order_id)
            return StepResult.success({"purchase_order_id": purchase_order_id, "created": False})

        purchase_order_id = _create_purchase_order(
            client, booking, supplier_id, product_id, description, sale_order
        )
    except RemoteRpcError as e:
        kind = ErrorKind.SCHEMA_DRIFT if is_schema_drift_error(e) else ErrorKind.UPSTREAM
        logging.error("Purchase order upsert failed for booking %s: %s", _booking_ref(booking), e)
        return StepResult.failure(e, kind, bookingId=booking.booking_id)

    logging.info("Created PO %s for booking %s", purchase_order_id, _booking_ref(booking))
    return StepResult.success({"purchase_order_id": purchase_order_id, "created": True})


def load_booking_data(store, row) -> BookingData:
    """Join a booking row with its product and provider rows from the booking store."""
    row = dict(row)
    if not row.get("product_id") and row.get("availability_slot_id"):
        slot = store.get_availability_slot(row["availability_slot_id"])
        if slot:
            row["product_id"] = slot.get("product_id")
            row.setdefault("product_type", slot.get("product_type"))

    product = None
    if row.get("product_id"):
        product = store.get_product(row.get("product_type"), row["product_id"])
    provider = store.get_provider_profile(row.get("provider_id"))
    return map_booking_record(row, provider, product)


def _sync_one(client, store, row) -> dict:
    outcome = {"bookingId": row.get("id")}
    try:
        booking = load_booking_data(store, row)
    except BookingStoreError as e:
        return {**outcome, "success": False, "error": str(e)}

    errors = validate_booking_data(booking)
    if errors:
        return {**outcome, "success": False, "error": "; ".join(errors)}

    result = upsert_purchase_order(client, booking, store)
    outcome["success"] = result.ok
    if result.ok:
        outcome["purchaseOrderId"] = result.value["purchase_order_id"]
        outcome["skipped"] = result.skipped
        if result.skipped:
            outcome["reason"] = result.reason
    else:
        outcome["error"] = result.error
    return outcome


def sync_purchase_orders(client, store, booking_id=None) -> Optional[dict]:
    """
    Upsert purchase orders for one booking or for every booking with a supplier cost.

    Returns None when a single booking was requested and does not exist.
    """
    if booking_id:
        row = store.get_booking(booking_id)
        if not row:
            return None
        rows = [row]
    else:
        rows = store.list_bookings_for_purchase_orders()

    results = [_sync_one(client, store, row) for row in rows]
    return {
        "total": len(results),
        "successful": sum(1 for r in results if r["success"] and not r.get("skipped")),
        "skipped": sum(1 for r in results if r["success"] and r.get("skipped")),
        "failed": sum(1 for r in results if not r["success"]),
        "results": results,
    }
