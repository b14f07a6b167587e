import itertools
import re
import sys
import uuid
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import config  # noqa: E402
from booking_store import BookingStore  # noqa: E402
from models import (  # noqa: E402
    Address,
    BookingData,
    CustomerInfo,
    PartnerData,
    ProductRef,
    ProviderInfo,
)
from odoo_client import OdooClient, RemoteRpcError, SchemaDriftError  # noqa: E402

# one2many fields computed from the child model's order_id
ONE2MANY = {
    ("sale.order", "order_line"): "sale.order.line",
    ("purchase.order", "order_line"): "purchase.order.line",
}
NAME_PREFIX = {"sale.order": "S", "purchase.order": "P"}


def _like_regex(pattern):
    """SQL LIKE pattern with backslash escapes as a regular expression."""
    parts = []
    escaped = False
    for char in pattern:
        if escaped:
            parts.append(re.escape(char))
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return "".join(parts)


def _matches(record, condition):
    field, operator, value = condition
    current = record.get(field)
    if isinstance(current, (list, tuple)) and field.endswith("_id"):
        current = current[0] if current else None
    if operator == "=":
        return current == value
    if operator == "!=":
        return current != value
    if operator == "in":
        return current in value
    if operator == "ilike":
        return current is not None and str(value).lower() in str(current).lower()
    if operator == "=ilike":
        return current is not None and re.fullmatch(_like_regex(str(value)), str(current), re.I | re.S) is not None
    raise AssertionError(f"unsupported operator {operator}")


class FakeOdoo(OdooClient):
    """
    In-memory Odoo speaking the execute_kw protocol.

    unknown_fields maps a model to field names that raise schema drift errors
    when written, created or searched on, like a server without the custom
    module installed.
    """

    def __init__(self, unknown_fields=None, fail_methods=None):
        super().__init__(config.OdooConfig("https://odoo.test", "db", "user", "key"))
        self.records = {}
        self.unknown_fields = {model: set(fields) for model, fields in (unknown_fields or {}).items()}
        # {(model, method): message} makes that call fail with a plain RPC error
        self.fail_methods = dict(fail_methods or {})
        self.calls = []
        self._ids = itertools.count(1)
        self.seed("res.country", {"code": "IT", "name": "Italy"})

    # test helpers

    def seed(self, model, values) -> int:
        record_id = next(self._ids)
        self.records.setdefault(model, {})[record_id] = {"id": record_id, **values}
        return record_id

    def all(self, model) -> list:
        return list(self.records.get(model, {}).values())

    def get(self, model, record_id) -> dict:
        return self.records[model][record_id]

    def count_calls(self, model, method) -> int:
        return sum(1 for call in self.calls if call[0] == model and call[1] == method)

    # protocol

    def _check_fields(self, model, fields):
        rejected = self.unknown_fields.get(model, set()) & set(fields)
        if rejected:
            name = sorted(rejected)[0]
            raise SchemaDriftError(
                f"Odoo RPC error: Invalid field '{name}' on model '{model}'",
                code=200,
                data={"name": "builtins.ValueError", "message": f"Invalid field '{name}' on model '{model}'"},
            )

    def _apply(self, model, record, values):
        for field, value in values.items():
            child_model = ONE2MANY.get((model, field))
            if child_model:
                for command in value:
                    if command[0] == 0:
                        self._create(child_model, {**command[2], "order_id": record["id"]})
                continue
            if isinstance(value, list) and value and isinstance(value[0], (list, tuple)) and value[0][0] == 6:
                value = list(value[0][2])
            record[field] = value

    def _create(self, model, values) -> int:
        self._check_fields(model, values)
        for (parent, field), child_model in ONE2MANY.items():
            if parent == model and field in values:
                for command in values[field]:
                    self._check_fields(child_model, command[2])
        record_id = next(self._ids)
        record = {"id": record_id}
        if model in NAME_PREFIX:
            record.update(name=f"{NAME_PREFIX[model]}{record_id:05d}", state="draft")
        self.records.setdefault(model, {})[record_id] = record
        self._apply(model, record, values)
        return record_id

    def _read_field(self, model, record, field):
        child_model = ONE2MANY.get((model, field))
        if child_model:
            return [child["id"] for child in self.all(child_model) if child.get("order_id") == record["id"]]
        return record.get(field, False)

    def execute_kw(self, model, method, args=None, kwargs=None):
        args = args or []
        kwargs = kwargs or {}
        self.calls.append((model, method, args, kwargs))
        if (model, method) in self.fail_methods:
            raise RemoteRpcError(self.fail_methods[(model, method)])

        table = self.records.setdefault(model, {})
        if method == "search":
            domain = args[0]
            self._check_fields(model, [condition[0] for condition in domain])
            ids = sorted(record_id for record_id, record in table.items() if all(_matches(record, c) for c in domain))
            offset = kwargs.get("offset") or 0
            limit = kwargs.get("limit")
            return ids[offset: offset + limit if limit else None]
        if method == "read":
            fields = kwargs.get("fields")
            result = []
            for record_id in args[0]:
                record = table.get(record_id)
                if record is None:
                    continue
                names = fields or list(record)
                result.append({"id": record_id, **{f: self._read_field(model, record, f) for f in names}})
            return result
        if method == "create":
            return [self._create(model, values) for values in args[0]]
        if method == "write":
            ids, values = args
            self._check_fields(model, values)
            for record_id in ids:
                self._apply(model, table[record_id], values)
            return True
        if method == "unlink":
            for record_id in args[0]:
                table.pop(record_id, None)
            return True
        if method == "action_confirm":
            for record_id in args[0]:
                table[record_id]["state"] = "sale"
            return True
        raise AssertionError(f"unexpected method {model}.{method}")


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload or {}

    def json(self):
        return self._payload


class FakeBookingStore(BookingStore):
    """BookingStore with in-memory tables instead of PostgREST."""

    def __init__(self, tables=None, function_status=200):
        super().__init__("https://store.test", "service-key")
        self.tables = {name: [dict(row) for row in rows] for name, rows in (tables or {}).items()}
        self.function_status = function_status
        self.invocations = []

    @staticmethod
    def _match(row, filters):
        for column, expected in (filters or {}).items():
            value = row.get(column)
            if isinstance(expected, tuple):
                operator, operand = expected
                if operator == "gt" and not (value is not None and value > operand):
                    return False
            elif value != expected:
                return False
        return True

    def select(self, table, filters=None, columns="*", limit=None, order=None):
        rows = [dict(row) for row in self.tables.get(table, []) if self._match(row, filters)]
        if order:
            column = order.split(".")[0]
            rows.sort(key=lambda row: row.get(column) or "")
        return rows[:limit] if limit else rows

    def insert(self, table, row):
        row = {"id": str(uuid.uuid4()), **row}
        self.tables.setdefault(table, []).append(row)
        return dict(row)

    def update(self, table, filters, values):
        updated = []
        for row in self.tables.get(table, []):
            if self._match(row, filters):
                row.update(values)
                updated.append(dict(row))
        return updated

    def invoke_function(self, name, payload, timeout=None):
        self.invocations.append((name, payload))
        return FakeResponse(self.function_status)


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Tests never see ids or overrides from a developer's .env."""
    for name in (
        "ODOO_PRODUCT_ID",
        "ODOO_TAX_ID",
        "ODOO_PRICELIST_ID",
        "ODOO_PAYMENT_TERM_ID",
        "ODOO_COMPANY_ID",
        "ODOO_TEAM_ID",
    ):
        monkeypatch.setattr(config, name, None)
    monkeypatch.setattr(config, "ODOO_TAX_RATE", 0.22)
    monkeypatch.setattr(config, "DEFAULT_COUNTRY_CODE", "IT")
    monkeypatch.setattr(config, "INTERNAL_EMAIL_DOMAIN", "flixdog.internal")


@pytest.fixture
def odoo():
    return FakeOdoo()


@pytest.fixture
def store():
    return FakeBookingStore()


def make_booking(**overrides) -> BookingData:
    values = dict(
        booking_id="0f8fad5b-d9cb-469f-a165-70867728950e",
        stripe_payment_intent_id="pi_3Abc123",
        customer=CustomerInfo(email="mario.rossi@example.org", full_name="Mario Rossi", first_name="Mario", last_name="Rossi"),
        product=ProductRef(id="7c9e6679-7425-40de-944b-e07fc1f90ae7", name="Trekking con il cane", type="experience"),
        provider=ProviderInfo(id="prov-1", name="Dog Adventures Srl", email="info@dogadventures.it"),
        booking_date="2026-05-10",
        booking_time="10:00",
        number_of_adults=2,
        number_of_dogs=1,
        total_amount=100.0,
        currency="EUR",
        provider_cost_total=60.0,
        order_number="ABCD1234",
    )
    values.update(overrides)
    return BookingData(**values)


def make_partner(**overrides) -> PartnerData:
    values = dict(
        email="mario.rossi@example.org",
        name="Mario Rossi",
        phone="+393331234567",
        fiscal_code="RSSMRA80A01H501U",
        address=Address(street="Via Roma 1", city="Milano", zip="20100", province="MI", country_code="IT"),
    )
    values.update(overrides)
    return PartnerData(**values)
