from conftest import FakeOdoo, make_partner

from models import ProviderInfo
from partners import (
    internal_fallback_email,
    is_placeholder_email,
    normalize_vat,
    resolve_customer_partner,
    resolve_supplier_partner,
    strip_country_prefix,
)
from results import ErrorKind


def test_creates_consumer_partner(odoo):
    milano = odoo.seed("res.country.state", {"code": "MI", "name": "Milano", "country_id": 1})

    result = resolve_customer_partner(odoo, make_partner())

    assert result.ok and result.details["created"] is True
    partner = odoo.get("res.partner", result.value)
    assert partner["name"] == "Mario Rossi"
    assert partner["is_company"] is False
    assert partner["l10n_it_codice_fiscale"] == "RSSMRA80A01H501U"
    assert "vat" not in partner
    assert partner["country_id"] == 1
    assert partner["state_id"] == milano


def test_existing_partner_found_by_email(odoo):
    existing = odoo.seed("res.partner", {"name": "M. Rossi", "email": "mario.rossi@example.org"})

    result = resolve_customer_partner(odoo, make_partner(phone="+390212345"))

    assert result.value == existing
    assert result.details["created"] is False
    assert odoo.get("res.partner", existing)["phone"] == "+390212345"
    assert len(odoo.all("res.partner")) == 1


def test_b2b_partner_matched_by_vat_keeps_legal_name(odoo):
    existing = odoo.seed(
        "res.partner",
        {"name": "Acme S.r.l.", "vat": "IT12345678901", "email": "old@acme.it", "is_company": True},
    )
    partner = make_partner(
        email="ordini@acme.it",
        name="Acme Dog Services",
        is_b2b=True,
        vat_number="12345678901",
        contact_name="Giulia",
        contact_surname="Bianchi",
    )

    result = resolve_customer_partner(odoo, partner)

    record = odoo.get("res.partner", result.value)
    assert result.value == existing
    assert record["name"] == "Acme S.r.l."
    assert record["email"] == "ordini@acme.it"
    assert "Nome contatto: Giulia" in record["comment"]


def test_consumer_record_found_by_email_takes_company_name(odoo):
    existing = odoo.seed(
        "res.partner", {"name": "Mario Rossi", "email": "mario.rossi@example.org", "is_company": False}
    )
    partner = make_partner(is_b2b=True, name="Acme SRL", vat_number="12345678901", contact_name="Mario")

    result = resolve_customer_partner(odoo, partner)

    record = odoo.get("res.partner", existing)
    assert result.value == existing
    assert record["name"] == "Acme SRL"
    assert record["is_company"] is True
    assert record["vat"] == "IT12345678901"


def test_company_found_by_email_keeps_legal_name(odoo):
    existing = odoo.seed(
        "res.partner", {"name": "Acme S.r.l.", "email": "mario.rossi@example.org", "is_company": True}
    )

    result = resolve_customer_partner(odoo, make_partner(is_b2b=True, name="Acme Dog Services"))

    assert result.value == existing
    assert odoo.get("res.partner", existing)["name"] == "Acme S.r.l."


def test_b2b_fiscal_code_equal_to_vat_is_not_duplicated(odoo):
    partner = make_partner(is_b2b=True, vat_number="12345678901", fiscal_code="12345678901", name="Acme S.r.l.")

    result = resolve_customer_partner(odoo, partner)

    record = odoo.get("res.partner", result.value)
    assert record["vat"] == "IT12345678901"
    assert "l10n_it_codice_fiscale" not in record
    assert record["is_company"] is True


def test_b2b_fiscal_code_compared_without_country_prefix(odoo):
    partner = make_partner(is_b2b=True, vat_number="IT12345678901", fiscal_code="12345678901", name="Acme S.r.l.")

    result = resolve_customer_partner(odoo, partner)

    record = odoo.get("res.partner", result.value)
    assert record["vat"] == "IT12345678901"
    assert "l10n_it_codice_fiscale" not in record


def test_placeholder_email_replaced_with_internal_address(odoo):
    result = resolve_customer_partner(odoo, make_partner(email="missing-pi_123@example.com"))

    email = odoo.get("res.partner", result.value)["email"]
    assert email.startswith("order-")
    assert email.endswith("@flixdog.internal")


def test_schema_drift_degrades_field_set():
    odoo = FakeOdoo(unknown_fields={"res.partner": {"l10n_it_codice_fiscale"}})

    result = resolve_customer_partner(odoo, make_partner())

    assert result.ok
    record = odoo.get("res.partner", result.value)
    assert record["email"] == "mario.rossi@example.org"
    assert "l10n_it_codice_fiscale" not in record


def test_partner_failure_is_reported():
    odoo = FakeOdoo(fail_methods={("res.partner", "search"): "Access Denied"})

    result = resolve_customer_partner(odoo, make_partner())

    assert not result.ok
    assert result.kind is ErrorKind.UPSTREAM


def test_supplier_created_once(odoo):
    provider = ProviderInfo(id="prov-1", name="Dog Adventures Srl", email="info@dogadventures.it")

    first = resolve_supplier_partner(odoo, provider)
    second = resolve_supplier_partner(odoo, provider)

    assert first.value == second.value
    assert first.details["created"] is True
    assert second.details["created"] is False
    supplier = odoo.get("res.partner", first.value)
    assert supplier["is_company"] is True
    assert supplier["supplier_rank"] == 1
    assert "vat" not in supplier


def test_unknown_provider_is_rejected(odoo):
    result = resolve_supplier_partner(odoo, ProviderInfo(id=None, name="Unknown Provider"))

    assert not result.ok
    assert result.kind is ErrorKind.VALIDATION
    assert odoo.calls == []


def test_helpers():
    assert normalize_vat("123 456 78901") == "IT12345678901"
    assert normalize_vat("IT12345678901") == "IT12345678901"
    assert normalize_vat(None) is None
    assert is_placeholder_email("")
    assert is_placeholder_email("missing-pi_1@example.com")
    assert not is_placeholder_email("mario@gmail.com")
    assert not is_placeholder_email(internal_fallback_email())
    assert strip_country_prefix("it 123 456 78901") == "12345678901"
    assert strip_country_prefix(None) == ""
