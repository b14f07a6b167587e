import logging
import time
from typing import Optional

import config
from models import PartnerData, ProviderInfo
from odoo_client import RemoteRpcError, is_schema_drift_error
from results import ErrorKind, StepResult

PARTNER_MODEL = "res.partner"

# Fields every Odoo instance knows about
CORE_PARTNER_FIELDS = ("name", "email", "phone", "is_company", "street", "city", "zip", "country_id")
# Italian localisation fields that are usually present on B2B installs
SAFE_PARTNER_FIELDS = CORE_PARTNER_FIELDS + ("vat", "l10n_it_pa_index", "l10n_it_pec_email")

UNKNOWN_PROVIDER_NAMES = ("unknown provider",)


def is_placeholder_email(email) -> bool:
    if not email:
        return True
    email = email.strip().lower()
    return email.startswith("missing-") or "@example.com" in email


def internal_fallback_email() -> str:
    return f"order-{int(time.time() * 1000)}@{config.INTERNAL_EMAIL_DOMAIN}"


def normalize_vat(vat_number, country_code="IT") -> Optional[str]:
    """Country-prefixed VAT number, e.g. 12345678901 -> IT12345678901."""
    if not vat_number:
        return None
    vat = "".join(str(vat_number).split()).upper()
    if vat.startswith(country_code):
        return vat
    return f"{country_code}{vat}"


def strip_country_prefix(value, country_code="IT") -> str:
    """Bare VAT digits: IT12345678901 -> 12345678901."""
    value = "".join((value or "").split()).upper()
    if value.startswith(country_code):
        return value[len(country_code):]
    return value


def get_country_id(client, country_code) -> Optional[int]:
    """Look up a res.country id by its 2-letter code. Lookup errors give None."""
    if not country_code or len(country_code.strip()) != 2:
        return None
    try:
        ids = client.search("res.country", [["code", "=", country_code.strip().upper()]], limit=1)
    except RemoteRpcError as e:
        logging.warning("Country lookup failed for %s: %s", country_code, e)
        return None
    return ids[0] if ids else None


def get_state_id(client, province, country_id) -> Optional[int]:
    """Match the province code first (MI), then the name (Milano)."""
    if not province or not country_id:
        return None
    province = province.strip()
    try:
        ids = client.search(
            "res.country.state",
            [["code", "=", province.upper()], ["country_id", "=", country_id]],
            limit=1,
        )
        if not ids:
            ids = client.search(
                "res.country.state",
                [["name", "ilike", province], ["country_id", "=", country_id]],
                limit=1,
            )
    except RemoteRpcError as e:
        logging.warning("State lookup failed for %s: %s", province, e)
        return None
    return ids[0] if ids else None


def build_partner_values(client, partner: PartnerData, email, vat) -> dict:
    """
    Build the res.partner values for a customer.

    The VAT field only ever holds the B2B VAT number. The fiscal code goes to
    l10n_it_codice_fiscale for consumers always, and for businesses only when
    it differs from the VAT number.
    """
    values = {
        "name": (partner.name or "").strip() or "Cliente",
        "email": email,
        "phone": partner.phone or "",
        "is_company": bool(partner.is_b2b),
    }

    if partner.is_b2b and vat:
        values["vat"] = vat

    fiscal_code = "".join((partner.fiscal_code or "").split()).upper()
    if fiscal_code:
        if not partner.is_b2b or strip_country_prefix(fiscal_code) != strip_country_prefix(vat):
            values["l10n_it_codice_fiscale"] = fiscal_code

    if partner.is_b2b:
        if partner.sdi_code:
            values["l10n_it_pa_index"] = partner.sdi_code.strip().upper()
        if partner.pec_email:
            values["l10n_it_pec_email"] = partner.pec_email.strip()

    address = partner.address
    if address.street and address.street.strip():
        values["street"] = address.street.strip()
    if address.city and address.city.strip():
        values["city"] = address.city.strip()
    if address.zip and address.zip.strip():
        values["zip"] = address.zip.strip()

    # A VAT number pins the partner to the issuing country
    if partner.is_b2b and vat:
        country_code = config.DEFAULT_COUNTRY_CODE
    else:
        country_code = address.country_code or config.DEFAULT_COUNTRY_CODE
    country_id = get_country_id(client, country_code)
    if country_id is None and country_code != config.DEFAULT_COUNTRY_CODE:
        country_id = get_country_id(client, config.DEFAULT_COUNTRY_CODE)
    if country_id:
        values["country_id"] = country_id
        state_id = get_state_id(client, address.province, country_id)
        if state_id:
            values["state_id"] = state_id

    if partner.is_b2b and (partner.contact_name or partner.contact_surname):
        lines = []
        if partner.contact_name:
            lines.append(f"Nome contatto: {partner.contact_name}")
        if partner.contact_surname:
            lines.append(f"Cognome contatto: {partner.contact_surname}")
        values["comment"] = "\n".join(lines)

    return values


def _subset(values, allowed):
    return {key: value for key, value in values.items() if key in allowed}


def _reapply_fields(client, partner_id, fields):
    """Write each field on its own; a rejected field never fails the partner."""
    for key, value in fields.items():
        try:
            client.write(PARTNER_MODEL, [partner_id], {key: value})
        except RemoteRpcError as e:
            logging.warning("Could not set %s on partner %s: %s", key, partner_id, e)


def _save_with_fallback(client, values, partner_id=None) -> int:
    """
    Create or update a partner, degrading the field set on failure.

    Tries the full values, then the safe subset, then the core subset, and
    re-applies the fields that were left out one at a time. Raises the last
    error when even the core subset is rejected.
    """
    attempts = [values, _subset(values, SAFE_PARTNER_FIELDS), _subset(values, CORE_PARTNER_FIELDS)]
    last_error = None
    for index, attempt in enumerate(attempts):
        if index and attempt == attempts[index - 1]:
            continue
        try:
            if partner_id:
                client.write(PARTNER_MODEL, [partner_id], attempt)
                saved_id = partner_id
            else:
                saved_id = client.create(PARTNER_MODEL, attempt)
        except RemoteRpcError as e:
            last_error = e
            logging.warning(
                "Partner save rejected with %d fields, retrying with fewer: %s",
                len(attempt),
                e,
            )
            continue

        removed = {key: value for key, value in values.items() if key not in attempt}
        if removed:
            _reapply_fields(client, saved_id, removed)
        return saved_id

    raise last_error


def find_partner_by_email(client, email) -> Optional[int]:
    if not email:
        return None
    ids = client.search(PARTNER_MODEL, [["email", "=", email]], limit=1)
    return ids[0] if ids else None


def is_company_partner(client, partner_id) -> bool:
    records = client.read(PARTNER_MODEL, [partner_id], fields=["is_company"])
    return bool(records and records[0].get("is_company"))


def create_minimal_partner(client, email, is_b2b=False, name=None) -> int:
    values = {
        "name": name or email or "Cliente",
        "email": email,
        "is_company": bool(is_b2b),
    }
    return client.create(PARTNER_MODEL, values)


def resolve_customer_partner(client, partner: PartnerData) -> StepResult:
    """
    Find or create the customer partner for a booking.

    B2B partners are matched by country-prefixed VAT number, everyone else
    (and B2B without VAT) by email. A partner matched by VAT, or one that is
    already a company, keeps its legal name. A consumer record found by email
    for a B2B booking is renamed to the company name.
    """
    email = (partner.email or "").strip()
    if is_placeholder_email(email):
        email = internal_fallback_email()
        logging.info("Using internal fallback email %s for partner", email)

    vat = normalize_vat(partner.vat_number) if partner.is_b2b else None

    partner_id = None
    keep_name = False
    if vat:
        try:
            ids = client.search(PARTNER_MODEL, [["vat", "=", vat]], limit=1)
            partner_id = ids[0] if ids else None
            keep_name = bool(partner_id)
        except RemoteRpcError as e:
            logging.warning("VAT search failed for %s, falling back to email: %s", vat, e)

    try:
        if not partner_id:
            partner_id = find_partner_by_email(client, email)
            if partner_id and partner.is_b2b:
                keep_name = is_company_partner(client, partner_id)
        values = build_partner_values(client, partner, email, vat)
    except RemoteRpcError as e:
        logging.error("Partner search failed for %s: %s", email, e)
        return StepResult.failure(e, ErrorKind.UPSTREAM, email=email)

    try:
        if partner_id:
            # an existing company keeps its legal name, a former consumer record takes the company name
            if keep_name:
                values.pop("name", None)
            _save_with_fallback(client, values, partner_id=partner_id)
            logging.info("Updated Odoo partner %s", partner_id)
            return StepResult.success(partner_id, created=False)

        partner_id = _save_with_fallback(client, values)
        logging.info("Created Odoo partner %s", partner_id)
        return StepResult.success(partner_id, created=True)
    except RemoteRpcError as e:
        kind = ErrorKind.SCHEMA_DRIFT if is_schema_drift_error(e) else ErrorKind.UPSTREAM
        logging.error("Could not save partner %s: %s", email, e)
        return StepResult.failure(e, kind, email=email)


def resolve_supplier_partner(client, provider: ProviderInfo) -> StepResult:
    """
    Find or create the supplier partner by exact company name.

    Supplier partners never carry VAT or fiscal code fields.
    """
    name = (provider.name or "").strip() if provider else ""
    if not name or name.lower() in UNKNOWN_PROVIDER_NAMES:
        return StepResult.failure("Provider name is required", ErrorKind.VALIDATION)

    try:
        ids = client.search(
            PARTNER_MODEL, [["name", "=", name], ["is_company", "=", True]], limit=1
        )
    except RemoteRpcError as e:
        logging.error("Supplier search failed for %s: %s", name, e)
        return StepResult.failure(e, ErrorKind.UPSTREAM, provider=name)

    if ids:
        supplier_id = ids[0]
        updates = {}
        if provider.email:
            updates["email"] = provider.email
        if provider.phone:
            updates["phone"] = provider.phone
        if updates:
            try:
                client.write(PARTNER_MODEL, [supplier_id], updates)
            except RemoteRpcError as e:
                logging.warning("Could not update supplier %s contacts: %s", supplier_id, e)
        return StepResult.success(supplier_id, created=False)

    values = {"name": name, "is_company": True, "supplier_rank": 1}
    if provider.email:
        values["email"] = provider.email
    if provider.phone:
        values["phone"] = provider.phone
    try:
        supplier_id = client.create(PARTNER_MODEL, values)
    except RemoteRpcError as e:
        logging.error("Supplier create failed for %s: %s", name, e)
        return StepResult.failure(e, ErrorKind.UPSTREAM, provider=name)

    logging.info("Created supplier partner %s for %s", supplier_id, name)
    return StepResult.success(supplier_id, created=True)
