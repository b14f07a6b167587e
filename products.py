import logging
from typing import Optional

import config
from booking_store import BookingStoreError
from models import ProductForSync, ProductRef
from odoo_client import RemoteRpcError, is_schema_drift_error
from results import ErrorKind, StepResult

PRODUCT_MODEL = "product.product"
PRODUCT_TYPES = ("experience", "class", "trip")


def _standard_values(name, description, active=True) -> dict:
    return {
        "name": name,
        "type": "service",
        "sale_ok": bool(active),
        "purchase_ok": False,
        # prices depend on guests and dogs, they live on the order line
        "list_price": 0,
        "description": description or "",
    }


def _custom_values(product_uuid, product_type) -> dict:
    return {"x_product_id": product_uuid, "x_product_type": product_type}


def escape_like(value) -> str:
    """Make % and _ literal in an =ilike pattern."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def find_product_id(client, product_uuid, name=None, product_type=None) -> Optional[int]:
    """
    Find the Odoo product mapped to a source product UUID.

    Falls back to a case-insensitive exact name search when the x_product_id
    field is unsupported, and backfills the UUID on the product found by name.
    """
    try:
        ids = client.search(PRODUCT_MODEL, [["x_product_id", "=", product_uuid]], limit=1)
        return ids[0] if ids else None
    except RemoteRpcError as e:
        if not is_schema_drift_error(e, ("x_product_id",)):
            raise
        logging.warning("x_product_id not available on %s, searching by name", PRODUCT_MODEL)

    if not name:
        return None

    ids = client.search(PRODUCT_MODEL, [["name", "=ilike", escape_like(name)]], limit=1)
    if not ids:
        return None

    product_id = ids[0]
    try:
        client.write(PRODUCT_MODEL, [product_id], _custom_values(product_uuid, product_type))
        logging.info("Backfilled x_product_id on product %s", product_id)
    except RemoteRpcError as e:
        logging.warning("Could not backfill x_product_id on product %s: %s", product_id, e)
    return product_id


def _enrich_from_store(store, product: ProductRef):
    """Name, description and active flag from the booking store, best effort."""
    if store is None or product.type not in PRODUCT_TYPES:
        return product.name, product.description, True
    try:
        row = store.get_product(product.type, product.id)
    except BookingStoreError as e:
        logging.warning("Could not load product %s from booking store: %s", product.id, e)
        row = None
    if not row:
        return product.name, product.description, True
    return (
        row.get("name") or product.name,
        row.get("description") or product.description,
        row.get("active", True) is not False,
    )


def _create_with_fallback(client, standard, custom) -> int:
    """Create with custom fields, else standard fields then a best-effort custom write."""
    try:
        return client.create(PRODUCT_MODEL, {**standard, **custom})
    except RemoteRpcError as e:
        if not is_schema_drift_error(e, tuple(custom)):
            raise
        logging.warning("Product create with custom fields failed, retrying without: %s", e)

    product_id = client.create(PRODUCT_MODEL, standard)
    try:
        client.write(PRODUCT_MODEL, [product_id], custom)
    except RemoteRpcError as e:
        logging.warning("Could not set custom fields on product %s: %s", product_id, e)
    return product_id


def resolve_product(client, product: ProductRef, store=None) -> StepResult:
    """
    Find or create the Odoo product for a source product UUID.

    Every order for the same UUID resolves to the same Odoo product id.
    """
    if config.ODOO_PRODUCT_ID:
        return StepResult.success(config.ODOO_PRODUCT_ID, created=False)

    if not product or not product.id:
        return StepResult.failure("Product id is required", ErrorKind.VALIDATION)

    try:
        product_id = find_product_id(client, product.id, product.name, product.type)
        if product_id:
            return StepResult.success(product_id, created=False)

        name, description, active = _enrich_from_store(store, product)
        if not name:
            return StepResult.failure("Product name is required", ErrorKind.VALIDATION)

        product_id = _create_with_fallback(
            client,
            _standard_values(name, description, active),
            _custom_values(product.id, product.type),
        )
    except RemoteRpcError as e:
        kind = ErrorKind.SCHEMA_DRIFT if is_schema_drift_error(e) else ErrorKind.UPSTREAM
        logging.error("Could not resolve product %s: %s", product.id, e)
        return StepResult.failure(e, kind, productId=product.id)

    logging.info("Created Odoo product %s for %s", product_id, product.id)
    return StepResult.success(product_id, created=True)


def product_for_sync_from_row(row, product_type) -> ProductForSync:
    return ProductForSync(
        id=row["id"],
        type=product_type,
        name=row.get("name") or "",
        description=row.get("description"),
        active=row.get("active", True) is not False,
        max_adults=row.get("max_adults"),
        max_dogs=row.get("max_dogs"),
        duration_hours=row.get("duration_hours"),
        duration_days=row.get("duration_days"),
        meeting_point=row.get("meeting_point"),
        location=row.get("location"),
    )


def _sync_values(product: ProductForSync):
    standard = _standard_values(product.name, product.description, product.active)
    custom = _custom_values(product.id, product.type)
    optional = {
        "x_max_adults": product.max_adults,
        "x_max_dogs": product.max_dogs,
        "x_duration_hours": product.duration_hours,
        "x_duration_days": product.duration_days,
        "x_meeting_point": product.meeting_point or None,
        "x_location": product.location or None,
    }
    custom.update({key: value for key, value in optional.items() if value is not None})
    return standard, custom


def sync_product(client, product: ProductForSync) -> dict:
    """
    Push one source product to Odoo.

    Returns {success, productId, action, error, errorDetails} where action is
    created, updated or skipped.
    """
    logging.info("Syncing product %s (%s) to Odoo", product.id, product.type)
    standard, custom = _sync_values(product)

    try:
        product_id = find_product_id(client, product.id, product.name, product.type)
    except RemoteRpcError as e:
        logging.error("Product search failed for %s: %s", product.id, e)
        return {
            "success": False,
            "action": "skipped",
            "error": "Failed to search product",
            "errorDetails": str(e),
        }

    if product_id:
        try:
            client.write(PRODUCT_MODEL, [product_id], {**standard, **custom})
        except RemoteRpcError as e:
            logging.warning("Product update with custom fields failed, retrying without: %s", e)
            try:
                client.write(PRODUCT_MODEL, [product_id], standard)
            except RemoteRpcError as standard_error:
                logging.error("Error updating product %s: %s", product_id, standard_error)
                return {
                    "success": False,
                    "action": "skipped",
                    "error": "Failed to update product",
                    "errorDetails": str(standard_error),
                }
        return {"success": True, "productId": product_id, "action": "updated"}

    try:
        product_id = _create_with_fallback(client, standard, custom)
    except RemoteRpcError as e:
        logging.error("Error creating product %s: %s", product.id, e)
        return {
            "success": False,
            "action": "skipped",
            "error": "Failed to create product",
            "errorDetails": str(e),
        }
    return {"success": True, "productId": product_id, "action": "created"}


def sync_products_batch(client, products) -> dict:
    results = []
    for product in products:
        result = sync_product(client, product)
        result["sourceProductId"] = product.id
        results.append(result)

    summary = {
        "total": len(results),
        "successful": sum(1 for r in results if r["success"] and r["action"] != "skipped"),
        "failed": sum(1 for r in results if not r["success"]),
        "skipped": sum(1 for r in results if r["success"] and r["action"] == "skipped"),
        "results": results,
    }
    logging.info(
        "Product sync finished: %s total, %s successful, %s failed",
        summary["total"],
        summary["successful"],
        summary["failed"],
    )
    return summary
