"""Typed views over upstream Shopify records and webhook bodies.

Only the fields this service reads are declared; everything else passes
through untouched (``extra="allow"``) so upstream schema drift never breaks
ingestion.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from shared.clock import parse_timestamp


def parse_price(value: Any, default: float = 0.0) -> float:
    """Parse an upstream money value, falling back to ``default``.

    Shopify sends amounts as strings ("19.99"); missing, malformed or
    non-finite values never fail the row.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed):
        return default
    return parsed


class TopicFamily(str, Enum):
    """Webhook topic families this service distinguishes."""

    ORDERS = "orders"
    CUSTOMERS = "customers"
    PRODUCTS = "products"
    CHECKOUTS = "checkouts"
    CARTS = "carts"
    OTHER = "other"


def classify_topic(topic: str) -> TopicFamily:
    """Map ``resource/action`` to its family (``orders/paid`` -> ORDERS)."""
    resource = topic.split("/", 1)[0].strip().lower()
    try:
        return TopicFamily(resource)
    except ValueError:
        return TopicFamily.OTHER


class UpstreamRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | str

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, v: int | str) -> int | str:
        if isinstance(v, str) and not v.strip():
            raise ValueError("blank id")
        return v

    @property
    def external_id(self) -> str:
        return str(self.id)


class UpstreamProduct(UpstreamRecord):
    title: str | None = None
    variants: list[dict[str, Any]] | None = None

    @property
    def price(self) -> float:
        if not self.variants:
            return 0.0
        return parse_price(self.variants[0].get("price"))


class UpstreamCustomer(UpstreamRecord):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    total_spent: Any = None

    @property
    def total_spend(self) -> float:
        return parse_price(self.total_spent)


class UpstreamOrder(UpstreamRecord):
    total_price: Any = None
    currency: str | None = None
    processed_at: str | None = None
    created_at: str | None = None
    customer: dict[str, Any] | None = None

    @property
    def total_amount(self) -> float:
        return parse_price(self.total_price)

    @property
    def customer_external_id(self) -> str | None:
        if not self.customer or self.customer.get("id") in (None, ""):
            return None
        return str(self.customer["id"])

    def processed_time(self, fallback: datetime) -> datetime:
        return parse_timestamp(self.processed_at) or parse_timestamp(self.created_at) or fallback


class CheckoutPayload(BaseModel):
    """Body of a checkouts/* or carts/* event, or of an abandonment marker."""

    model_config = ConfigDict(extra="allow")

    id: int | str | None = None
    token: str | None = None
    email: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def session_key(self) -> str | None:
        """Checkout token, falling back to the id. None if neither is set."""
        for candidate in (self.token, self.id):
            if candidate is not None and str(candidate).strip():
                return str(candidate)
        return None


class UpstreamEvent(BaseModel):
    """An entry of the storefront's own ``events.json`` feed."""

    model_config = ConfigDict(extra="allow")

    id: int | str
    subject_id: int | str | None = None
    subject_type: str | None = None
    verb: str | None = None
    created_at: str | None = None
    message: str | None = None
