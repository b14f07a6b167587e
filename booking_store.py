import logging

import requests


PRODUCT_TABLES = ("experience", "class", "trip")


class BookingStoreError(Exception):
    """A PostgREST request to the booking store failed."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


def _filter_value(value) -> str:
    if isinstance(value, tuple):
        operator, operand = value
        return f"{operator}.{operand}"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


class BookingStore:
    """
    Thin client for the Supabase REST (PostgREST) API.

    Filters are passed as {column: value} for equality, or
    {column: (operator, value)} for other PostgREST operators, e.g.
    {"provider_cost_total": ("gt", 0)}.
    """

    def __init__(self, url, service_key, session=None, timeout=30):
        self.url = (url or "").rstrip("/")
        self.service_key = service_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self, prefer=None) -> dict:
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(self, method, table, params=None, payload=None, prefer=None):
        try:
            response = self.session.request(
                method,
                f"{self.url}/rest/v1/{table}",
                headers=self._headers(prefer),
                params=params,
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logging.error("Booking store %s %s failed with status %s", method, table, status)
            raise BookingStoreError(f"Booking store request failed: {e}", status=status) from e
        except requests.exceptions.RequestException as e:
            logging.error("Booking store %s %s failed: %s", method, table, e)
            raise BookingStoreError(f"Booking store request failed: {e}") from e

        if not response.content:
            return []
        return response.json()

    def select(self, table, filters=None, columns="*", limit=None, order=None) -> list:
        params = {"select": columns}
        for column, value in (filters or {}).items():
            params[column] = _filter_value(value)
        if limit is not None:
            params["limit"] = limit
        if order:
            params["order"] = order
        return self._request("GET", table, params=params)

    def select_one(self, table, filters, columns="*"):
        rows = self.select(table, filters, columns=columns, limit=1)
        return rows[0] if rows else None

    def insert(self, table, row):
        rows = self._request("POST", table, payload=row, prefer="return=representation")
        return rows[0] if rows else None

    def update(self, table, filters, values) -> list:
        params = {column: _filter_value(value) for column, value in filters.items()}
        return self._request(
            "PATCH", table, params=params, payload=values, prefer="return=representation"
        )

    def invoke_function(self, name, payload, timeout=None):
        """POST to an edge function. Returns the raw requests response."""
        return self.session.post(
            f"{self.url}/functions/v1/{name}",
            headers=self._headers(),
            json=payload,
            timeout=timeout or self.timeout,
        )

    # Domain lookups

    def get_product(self, product_type, product_id):
        if product_type not in PRODUCT_TABLES:
            return None
        return self.select_one(product_type, {"id": product_id})

    def find_product_any_type(self, product_id):
        """Return (row, product_type) for the first product table holding the id."""
        for product_type in PRODUCT_TABLES:
            row = self.get_product(product_type, product_id)
            if row:
                return row, product_type
        return None, None

    def list_active_products(self) -> list:
        products = []
        for product_type in PRODUCT_TABLES:
            for row in self.select(product_type, {"active": True}):
                products.append((row, product_type))
        return products

    def get_provider_profile(self, provider_id):
        if not provider_id:
            return None
        return self.select_one(
            "profile", {"id": provider_id}, columns="id,company_name,email,contact_name"
        )

    def get_booking(self, booking_id):
        return self.select_one("booking", {"id": booking_id})

    def find_booking_by_payment_intent(self, payment_intent_id):
        return self.select_one("booking", {"stripe_payment_intent_id": payment_intent_id})

    def list_bookings_for_purchase_orders(self) -> list:
        return self.select(
            "booking",
            {"provider_cost_total": ("gt", 0)},
            order="created_at.asc",
        )

    def get_availability_slot(self, slot_id):
        return self.select_one("availability_slot", {"id": slot_id})

    def insert_quotation(self, row):
        return self.insert("quotation", row)
