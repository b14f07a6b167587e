from flask import Flask, request, jsonify
from flask_cors import CORS
import logging
import time
import traceback

import stripe

import config
from booking_store import BookingStore, BookingStoreError
from checkout import CheckoutError, create_checkout_session
from notifications import ConfirmationNotifier
from odoo_client import OdooClient, RemoteRpcError
from payment_gateway import PaymentGatewayError, get_payment_provider
from products import product_for_sync_from_row, sync_product, sync_products_batch
from purchase_orders import sync_purchase_orders
from rate_limiter import build_rate_limiter, get_client_identifier
from webhook_orchestrator import WEBHOOK_ENDPOINT, WebhookOrchestrator

# Initialize Flask app
app = Flask(__name__)
CORS(app, origins=config.ALLOWED_ORIGINS)

# Set up logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)

checkout_limiter = build_rate_limiter("checkout")
products_limiter = build_rate_limiter("products")

# one client per Odoo account, so the authenticated uid is reused across requests
_odoo_clients = {}


def get_odoo_client():
    """OdooClient for the active account, or None when it is not configured."""
    account = config.get_active_odoo_account()
    if account not in _odoo_clients:
        odoo_config = config.get_active_odoo_config()
        if not config.validate_odoo_config(odoo_config):
            logging.error("Odoo account '%s' is not configured", account)
            return None
        _odoo_clients[account] = OdooClient(odoo_config)
    return _odoo_clients[account]


def get_booking_store():
    if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE_KEY:
        logging.error("Booking store is not configured (SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY)")
        return None
    return BookingStore(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY)


def get_webhook_orchestrator():
    store = get_booking_store()
    return WebhookOrchestrator(
        odoo_client=get_odoo_client(),
        booking_store=store,
        gateway=get_payment_provider(),
        notifier=ConfirmationNotifier(store) if store else None,
        webhook_secret=config.STRIPE_WEBHOOK_SECRET,
    )


def _rate_limited(limiter):
    result = limiter.hit(get_client_identifier(request.headers, request.remote_addr))
    if result.allowed:
        return result, None
    response = jsonify(
        {
            "error": "Too many requests. Please try again later.",
            "retryAfter": result.retry_after(time.time()),
        }
    )
    return result, (response, 429, result.headers)


@app.route(WEBHOOK_ENDPOINT, methods=["GET"], strict_slashes=False)
def stripe_webhook_health():
    return jsonify(WebhookOrchestrator.health()), 200


@app.route(WEBHOOK_ENDPOINT, methods=["POST"], strict_slashes=False)
def stripe_webhook_handler():
    """
    Endpoint to receive Stripe webhooks and reconcile paid orders into Odoo.
    """
    missing = config.missing_webhook_settings()
    if missing:
        logging.error("Webhook is missing configuration: %s", ", ".join(missing))
        return jsonify({"error": "Server configuration error", "missing": missing}), 500

    try:
        orchestrator = get_webhook_orchestrator()
        payload, status = orchestrator.handle(
            request.get_data(), request.headers.get("Stripe-Signature")
        )
        return jsonify(payload), status
    except PaymentGatewayError as e:
        logging.error("Payment gateway error: %s", str(e))
        return jsonify({"error": "Payment gateway configuration error"}), 500
    except Exception:
        logging.error("Error processing Stripe webhook: %s", traceback.format_exc())
        return jsonify({"error": "Internal error"}), 500


@app.route("/checkout/session", methods=["POST"], strict_slashes=False)
def checkout_session_handler():
    limit, blocked = _rate_limited(checkout_limiter)
    if blocked:
        return blocked

    body = request.get_json(silent=True)
    if body is None:
        return jsonify({"error": "Invalid JSON in request body"}), 400, limit.headers

    store = get_booking_store()
    if store is None:
        return jsonify({"error": "Server configuration error: Database not configured"}), 500

    try:
        provider = get_payment_provider()
        result = create_checkout_session(body, store, provider)
        return jsonify(result), 200, limit.headers
    except CheckoutError as e:
        return jsonify({"error": e.message}), e.status, limit.headers
    except PaymentGatewayError as e:
        logging.error("Payment gateway error: %s", str(e))
        return jsonify({"error": "Server configuration error: Stripe key not configured"}), 500
    except Exception:
        logging.error("Error creating checkout session: %s", traceback.format_exc())
        return jsonify({"error": "Internal Server Error"}), 500


@app.route("/checkout/session/<session_id>", methods=["GET"], strict_slashes=False)
def checkout_session_details(session_id):
    """
    Normalized checkout session for the thank-you page, without waiting for the webhook.
    """
    try:
        provider = get_payment_provider(
            gateway=request.args.get("payment_gateway"), checkout_session_id=session_id
        )
        raw = provider.get_checkout_session(session_id)
        session = provider.normalize_checkout_session(raw)
        logging.info("Fetched checkout session %s (%s)", session_id, session.payment_status)
        return jsonify(session.to_dict()), 200
    except PaymentGatewayError as e:
        logging.error("Payment gateway error: %s", str(e))
        return jsonify({"error": "Payment gateway configuration error"}), 500
    except stripe.InvalidRequestError as e:
        logging.warning("Checkout session %s not found: %s", session_id, str(e))
        return jsonify({"error": "Checkout session not found"}), 404
    except stripe.StripeError as e:
        logging.error("Stripe request failed for session %s: %s", session_id, str(e))
        return jsonify({"error": "External API request failed"}), 500
    except Exception:
        logging.error("Error fetching checkout session: %s", traceback.format_exc())
        return jsonify({"error": "Internal Server Error"}), 500


@app.route("/odoo/products/sync", methods=["POST"], strict_slashes=False)
def products_sync_handler():
    """
    Sync one product (productId, optional productType) or every active product to Odoo.
    """
    limit, blocked = _rate_limited(products_limiter)
    if blocked:
        return blocked

    body = request.get_json(silent=True) or {}
    product_id = body.get("productId") or request.args.get("productId")
    product_type = body.get("productType") or request.args.get("productType")

    client = get_odoo_client()
    store = get_booking_store()
    if client is None or store is None:
        return jsonify({"error": "Server configuration error"}), 500

    try:
        if product_id:
            logging.info("Single product sync requested for %s", product_id)
            if product_type:
                row = store.get_product(product_type, product_id)
            else:
                row, product_type = store.find_product_any_type(product_id)
            if not row:
                return jsonify({"success": False, "error": "Product not found"}), 404

            result = sync_product(client, product_for_sync_from_row(row, product_type))
            result["sourceProductId"] = product_id
            return jsonify(result), 200 if result["success"] else 500, limit.headers

        products = [product_for_sync_from_row(row, kind) for row, kind in store.list_active_products()]
        summary = sync_products_batch(client, products)
        status = 200 if summary["failed"] == 0 else 207
        return jsonify(summary), status, limit.headers

    except (BookingStoreError, RemoteRpcError) as e:
        logging.error("Product sync failed: %s", str(e))
        return jsonify({"error": "External API request failed"}), 500
    except Exception:
        logging.error("Error syncing products: %s", traceback.format_exc())
        return jsonify({"error": "Internal Server Error"}), 500


@app.route("/odoo/purchase-orders/sync", methods=["POST"], strict_slashes=False)
def purchase_orders_sync_handler():
    """
    Group bookings with a supplier cost into draft purchase orders.
    """
    body = request.get_json(silent=True) or {}
    booking_id = body.get("bookingId") or request.args.get("bookingId")

    client = get_odoo_client()
    store = get_booking_store()
    if client is None or store is None:
        return jsonify({"error": "Server configuration error"}), 500

    try:
        summary = sync_purchase_orders(client, store, booking_id=booking_id)
        if summary is None:
            return jsonify({"success": False, "error": "Booking not found"}), 404
        status = 200 if summary["failed"] == 0 else 207
        return jsonify(summary), status

    except (BookingStoreError, RemoteRpcError) as e:
        logging.error("Purchase order sync failed: %s", str(e))
        return jsonify({"error": "External API request failed"}), 500
    except Exception:
        logging.error("Error syncing purchase orders: %s", traceback.format_exc())
        return jsonify({"error": "Internal Server Error"}), 500


if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=4321)
