import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass(frozen=True)
class OdooConfig:
    url: str
    database: str
    username: str
    api_key: str


def normalize_odoo_url(url: str) -> str:
    """Prepend https:// when the configured URL carries no protocol."""
    url = (url or "").strip()
    if url and not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url.rstrip("/")


def _account_prefix(account: str) -> str:
    if account == "default":
        return "OD"
    if account == "alt":
        return "OD_ALT"
    return f"OD_{account.upper()}"


def get_odoo_config(account: str = "default") -> Optional[OdooConfig]:
    """
    Read the Odoo connection settings of an account from the environment.

    Returns None when the URL, database or API key is missing. The login may
    be empty and is then caught by validate_odoo_config.
    """
    prefix = _account_prefix(account)
    url = (os.getenv(f"{prefix}_URL") or "").strip()
    database = (os.getenv(f"{prefix}_DB_NAME") or "").strip()
    username = (os.getenv(f"{prefix}_LOGIN") or "").strip()
    api_key = (os.getenv(f"{prefix}_API_KEY") or "").strip()

    if not url or not database or not api_key:
        logging.warning("Odoo account '%s' is not fully configured", account)
        return None

    return OdooConfig(
        url=normalize_odoo_url(url),
        database=database,
        username=username,
        api_key=api_key,
    )


def get_active_odoo_account() -> str:
    return (os.getenv("OD_ACTIVE_ACCOUNT") or "default").strip() or "default"


def get_active_odoo_config() -> Optional[OdooConfig]:
    return get_odoo_config(get_active_odoo_account())


def validate_odoo_config(config: Optional[OdooConfig]) -> bool:
    if config is None:
        return False
    if not config.url.startswith(("http://", "https://")):
        return False
    return bool(config.database and config.username and config.api_key)


def optional_int(name: str) -> Optional[int]:
    """Parse an optional integer id from the environment, None when unset or invalid."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError:
        logging.warning("Ignoring non-integer value for %s: %s", name, raw)
        return None


def _env_flag(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


# Odoo optional ids
ODOO_PRICELIST_ID = optional_int("OD_PRICELIST_ID")
ODOO_PAYMENT_TERM_ID = optional_int("OD_PAYMENT_TERM_ID")
ODOO_COMPANY_ID = optional_int("OD_COMPANY_ID")
ODOO_TEAM_ID = optional_int("OD_TEAM_ID")
ODOO_TAX_ID = optional_int("OD_TAX_ID_22")
ODOO_PRODUCT_ID = optional_int("OD_PRODUCT_ID")
ODOO_TAX_RATE = float(os.getenv("OD_TAX_RATE", "0.22"))
ODOO_VERIFY_SSL = _env_flag("ODOO_VERIFY_SSL", True)
ODOO_TIMEOUT = float(os.getenv("ODOO_TIMEOUT", "60"))
DEFAULT_COUNTRY_CODE = os.getenv("OD_DEFAULT_COUNTRY", "IT")

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("ST_WEBHOOK_SECRET")
PAYMENT_GATEWAY_DEFAULT = os.getenv("PAYMENT_GATEWAY_DEFAULT", "stripe")

# Booking store (Supabase)
SUPABASE_URL = (os.getenv("SUPABASE_URL") or "").rstrip("/")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

INTERNAL_EMAIL_DOMAIN = os.getenv("INTERNAL_EMAIL_DOMAIN", "flixdog.internal")

# Rate limiting
RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")
    if origin.strip()
]

if STRIPE_WEBHOOK_SECRET and not STRIPE_WEBHOOK_SECRET.startswith("whsec_"):
    logging.warning("ST_WEBHOOK_SECRET does not look like a Stripe webhook secret")
if STRIPE_SECRET_KEY and not STRIPE_SECRET_KEY.startswith("sk_"):
    logging.warning("STRIPE_SECRET_KEY does not look like a Stripe secret key")


def missing_webhook_settings() -> list:
    """Names of the environment variables the webhook needs and that are absent."""
    missing = []
    if not os.getenv("ST_WEBHOOK_SECRET"):
        missing.append("ST_WEBHOOK_SECRET")
    if not os.getenv("STRIPE_SECRET_KEY"):
        missing.append("STRIPE_SECRET_KEY")
    if get_active_odoo_config() is None:
        missing.append("OD_URL/OD_DB_NAME/OD_API_KEY")
    return missing
