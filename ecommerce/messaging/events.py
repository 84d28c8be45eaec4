"""
Event envelope and the domain payloads exchanged between services.

An ``EventEnvelope`` pairs an immutable identity (``id`` + ``created_at``,
both assigned at construction) with a typed payload.  The wire form is the
envelope's JSON document encoded as UTF-8; subscribers decode it back into
``EventEnvelope[<payload type>]`` so handlers receive validated models.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_core import PydanticSerializationError

from ecommerce.errors import SerializationError

CONTENT_TYPE = "application/json"
CONTENT_ENCODING = "utf-8"

# Routing keys published on the events exchange
ORDER_CREATED = "order.created"
PAYMENT_PROCESSED = "payment.processed"
ORDER_SHIPPED = "order.shipped"
USER_REGISTERED = "user.registered"
INVENTORY_UPDATED = "inventory.updated"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

class IntegrationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    product_name: str = ""
    quantity: int
    price: Decimal


class OrderCreated(IntegrationEvent):
    order_id: uuid.UUID
    user_id: uuid.UUID
    total_amount: Decimal
    user_email: str = ""
    items: list[OrderItem] = []


class PaymentProcessed(IntegrationEvent):
    order_id: uuid.UUID
    payment_id: uuid.UUID
    success: bool
    transaction_id: str = ""


class OrderShipped(IntegrationEvent):
    order_id: uuid.UUID
    tracking_number: str = ""
    user_email: str = ""


class UserRegistered(IntegrationEvent):
    user_id: uuid.UUID
    email: str
    full_name: str = ""


class InventoryUpdated(IntegrationEvent):
    product_id: uuid.UUID
    new_quantity: int


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventEnvelope(BaseModel, Generic[PayloadT]):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    created_at: datetime = Field(default_factory=_utcnow)
    payload: PayloadT

    @property
    def event_type(self) -> str:
        return type(self.payload).__name__


_IDENTITY_FIELDS = frozenset({"id", "created_at"})


def encode_envelope(envelope: EventEnvelope) -> bytes:
    """Serialise *envelope* to its UTF-8 JSON wire form."""
    try:
        return envelope.model_dump_json().encode(CONTENT_ENCODING)
    except PydanticSerializationError as exc:
        raise SerializationError(f"Cannot serialise {envelope.event_type} envelope: {exc}") from exc


def decode_envelope(body: bytes, payload_type: type[PayloadT]) -> EventEnvelope[PayloadT]:
    """
    Parse a wire body into an envelope whose payload is *payload_type*.

    Any malformed body (invalid UTF-8, invalid JSON, missing or mistyped
    fields) raises ``SerializationError``.
    """
    try:
        envelope = EventEnvelope[payload_type].model_validate_json(body)
    except ValidationError as exc:
        raise SerializationError(
            f"Cannot decode {payload_type.__name__} envelope: {exc.error_count()} error(s)"
        ) from exc
    # The defaults only apply to new envelopes; a received one must carry its identity.
    missing = _IDENTITY_FIELDS - envelope.model_fields_set
    if missing:
        raise SerializationError(
            f"Cannot decode {payload_type.__name__} envelope: missing {', '.join(sorted(missing))}"
        )
    return envelope
