import logging

import requests

from booking_store import BookingStoreError

EMAIL_FUNCTION = "send-transactional-email"


def format_order_number(booking_row, checkout_session_id=None) -> str:
    session_id = checkout_session_id or booking_row.get("stripe_checkout_session_id")
    if session_id:
        return session_id[-8:].upper()
    return booking_row.get("order_number") or str(booking_row.get("id", ""))[-8:].upper()


def _product_time(product) -> str:
    start = (product.get("full_day_start_time") or "")[:5]
    end = (product.get("full_day_end_time") or "")[:5]
    if start and end:
        return f"{start} - {end}"
    return start or None


def build_confirmation_payload(booking_row, product=None, checkout_session_id=None) -> dict:
    """Order-confirmation e-mail payload. Product rows win over booking columns."""
    product = product or {}
    return {
        "type": "order_confirmation",
        "bookingId": booking_row.get("id"),
        "customerEmail": booking_row.get("customer_email"),
        "customerName": booking_row.get("customer_name"),
        "customerSurname": booking_row.get("customer_surname"),
        "customerPhone": booking_row.get("customer_phone"),
        "productName": product.get("name") or booking_row.get("product_name"),
        "productDescription": product.get("description") or booking_row.get("product_description"),
        "productType": booking_row.get("product_type"),
        "bookingDate": booking_row.get("booking_date"),
        "bookingTime": _product_time(product),
        "numberOfAdults": booking_row.get("number_of_adults"),
        "numberOfDogs": booking_row.get("number_of_dogs"),
        "totalAmount": booking_row.get("total_amount_paid"),
        "currency": booking_row.get("currency"),
        "orderNumber": format_order_number(booking_row, checkout_session_id),
        "noAdults": product.get("no_adults") is True,
        "includedItems": product.get("included_items"),
        "excludedItems": product.get("excluded_items"),
        "meetingInfo": product.get("meeting_info"),
        "showMeetingInfo": bool(product.get("show_meeting_info")),
        "cancellationPolicy": product.get("cancellation_policy"),
    }


class ConfirmationNotifier:
    """Triggers the order-confirmation e-mail once per booking."""

    def __init__(self, store):
        self.store = store

    def _load_product(self, booking_row):
        product_id = booking_row.get("product_id")
        if not product_id:
            return None
        try:
            return self.store.get_product(booking_row.get("product_type"), product_id)
        except BookingStoreError as e:
            logging.warning("Could not load product %s for confirmation e-mail: %s", product_id, e)
            return None

    def send_order_confirmation(self, booking_row, checkout_session_id=None) -> bool:
        """
        Send the e-mail unless the booking is already flagged as sent.

        The confirmation_email_sent flag is set afterwards either way, false on
        failure so a later job can retry.
        """
        if not booking_row or booking_row.get("confirmation_email_sent"):
            return False

        payload = build_confirmation_payload(
            booking_row, self._load_product(booking_row), checkout_session_id
        )
        try:
            response = self.store.invoke_function(EMAIL_FUNCTION, payload)
            sent = response.ok
            if not sent:
                logging.error(
                    "Confirmation e-mail for booking %s failed with status %s",
                    booking_row.get("id"),
                    response.status_code,
                )
        except requests.exceptions.RequestException as e:
            logging.error("Confirmation e-mail request for booking %s failed: %s", booking_row.get("id"), e)
            sent = False

        self.store.update("booking", {"id": booking_row["id"]}, {"confirmation_email_sent": sent})
        if sent:
            logging.info("Confirmation e-mail sent for booking %s", booking_row.get("id"))
        return sent
