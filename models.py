from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Address:
    street: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    province: Optional[str] = None
    country_code: Optional[str] = None

    def as_text(self) -> str:
        parts = [self.street, self.city, self.zip, self.province]
        return ", ".join(part for part in parts if part)


@dataclass
class PartnerData:
    """Customer identity as collected at checkout."""

    email: str
    name: str
    phone: str = ""
    fiscal_code: Optional[str] = None
    vat_number: Optional[str] = None
    sdi_code: Optional[str] = None
    pec_email: Optional[str] = None
    address: Address = field(default_factory=Address)
    is_b2b: bool = False
    contact_name: Optional[str] = None
    contact_surname: Optional[str] = None


@dataclass
class ProductRef:
    id: str
    name: str
    type: str = "experience"
    description: Optional[str] = None


@dataclass
class ProviderInfo:
    id: Optional[str]
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class CustomerInfo:
    email: str
    full_name: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    fiscal_code: Optional[str] = None
    address: Optional[str] = None


@dataclass
class BookingData:
    booking_id: str
    stripe_payment_intent_id: Optional[str]
    customer: CustomerInfo
    product: ProductRef
    provider: ProviderInfo
    booking_date: str
    booking_time: Optional[str] = None
    number_of_adults: int = 1
    number_of_dogs: int = 0
    total_amount: float = 0.0
    currency: str = "EUR"
    provider_cost_total: Optional[float] = None
    order_number: Optional[str] = None
    # when the payment happened, as opposed to the booked slot date
    order_date: Optional[str] = None


@dataclass
class ProductForSync:
    id: str
    type: str
    name: str
    description: Optional[str] = None
    active: bool = True
    max_adults: Optional[int] = None
    max_dogs: Optional[int] = None
    duration_hours: Optional[float] = None
    duration_days: Optional[int] = None
    meeting_point: Optional[str] = None
    location: Optional[str] = None


@dataclass
class NormalizedCustomer:
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    fiscal_code: Optional[str] = None
    address: Optional[str] = None


@dataclass
class NormalizedCheckoutSession:
    gateway: str
    checkout_session_id: str
    payment_status: str
    payment_intent_id: Optional[str]
    amount_total: Optional[float]
    currency: Optional[str]
    customer: NormalizedCustomer
    metadata: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """JSON view for API responses, without the raw gateway payload."""
        customer = self.customer
        return {
            "gateway": self.gateway,
            "checkoutSessionId": self.checkout_session_id,
            "paymentStatus": self.payment_status,
            "paymentIntentId": self.payment_intent_id,
            "amountTotal": self.amount_total,
            "currency": self.currency,
            "customer": {
                "email": customer.email,
                "name": customer.name,
                "phone": customer.phone,
                "firstName": customer.first_name,
                "lastName": customer.last_name,
                "fiscalCode": customer.fiscal_code,
                "address": customer.address,
            },
            "metadata": dict(self.metadata),
        }
