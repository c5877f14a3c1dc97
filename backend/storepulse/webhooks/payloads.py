"""Typed webhook payloads, one variant per topic.

WHAT:
    Pydantic models for the subset of each Shopify webhook body we consume,
    and parse_event() which turns (topic, decoded JSON) into exactly one
    event variant.

WHY:
    Shopify bodies are large and loosely typed (ids arrive as numbers, money
    as strings). Parsing at the boundary gives handlers a closed set of
    well-typed events; topics we do not handle become UnhandledEvent instead
    of falling through dict lookups.

TOPICS:
    orders/create, orders/updated        -> OrderEvent
    customers/create, customers/update   -> CustomerEvent
    products/create, products/update     -> ProductEvent
    checkouts/create, checkouts/update   -> CheckoutEvent
    carts/create, carts/update           -> CartEvent
    refunds/create                       -> RefundEvent
    anything else                        -> UnhandledEvent

REFERENCES:
    - https://shopify.dev/docs/api/webhooks?reference=toml
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, ValidationError

from storepulse.errors import ProcessingFailure


# =============================================================================
# FIELD COERCION
# =============================================================================

def _to_source_id(value: Any) -> Any:
    # Shopify REST ids are integers; we store them as strings
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


def _to_money(value: Any) -> Decimal:
    """Parse a money amount; missing or unparseable values count as 0."""
    if value is None or value == "":
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return amount if amount.is_finite() else Decimal("0")


def _to_optional_money(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return _to_money(value)


SourceId = Annotated[str, BeforeValidator(_to_source_id)]
Money = Annotated[Decimal, BeforeValidator(_to_money)]
OptionalMoney = Annotated[Optional[Decimal], BeforeValidator(_to_optional_money)]


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an offset-aware timestamp to naive UTC for storage."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


Timestamp = Annotated[Optional[datetime], AfterValidator(to_naive_utc)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


# =============================================================================
# PAYLOAD MODELS
# =============================================================================

class CustomerPayload(_Payload):
    id: SourceId
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    # Self-reported totals; only seed a new row
    total_spent: OptionalMoney = None
    orders_count: Optional[int] = None


class LineItemPayload(_Payload):
    product_id: Optional[SourceId] = None
    title: Optional[str] = None
    vendor: Optional[str] = None
    price: OptionalMoney = None
    quantity: Optional[int] = None


class OrderPayload(_Payload):
    id: SourceId
    order_number: Optional[int] = None
    total_price: Money = Decimal("0")
    currency: Optional[str] = None
    customer: Optional[CustomerPayload] = None
    line_items: List[LineItemPayload] = []
    checkout_token: Optional[SourceId] = None
    checkout_id: Optional[SourceId] = None
    created_at: Timestamp = None


class ProductVariantPayload(_Payload):
    price: OptionalMoney = None


class ProductPayload(_Payload):
    id: SourceId
    title: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    variants: List[ProductVariantPayload] = []


class CheckoutPayload(_Payload):
    id: SourceId
    token: Optional[SourceId] = None
    cart_token: Optional[SourceId] = None
    email: Optional[str] = None
    total_price: Money = Decimal("0")
    currency: Optional[str] = None
    line_items: List[LineItemPayload] = []
    created_at: Timestamp = None
    completed_at: Timestamp = None


class CartPayload(_Payload):
    id: Optional[SourceId] = None
    token: Optional[SourceId] = None

    @property
    def cart_token(self) -> Optional[str]:
        return self.token or self.id


class RefundTransactionPayload(_Payload):
    amount: Money = Decimal("0")
    currency: Optional[str] = None


class RefundLineItemPayload(_Payload):
    subtotal: Money = Decimal("0")


class RefundPayload(_Payload):
    id: SourceId
    order_id: Optional[SourceId] = None
    note: Optional[str] = None
    transactions: List[RefundTransactionPayload] = []
    refund_line_items: List[RefundLineItemPayload] = []


# =============================================================================
# EVENT VARIANTS
# =============================================================================

@dataclass(frozen=True)
class OrderEvent:
    topic: str
    payload: OrderPayload
    raw: Dict[str, Any]


@dataclass(frozen=True)
class CustomerEvent:
    topic: str
    payload: CustomerPayload
    raw: Dict[str, Any]


@dataclass(frozen=True)
class ProductEvent:
    topic: str
    payload: ProductPayload
    raw: Dict[str, Any]


@dataclass(frozen=True)
class CheckoutEvent:
    topic: str
    payload: CheckoutPayload
    raw: Dict[str, Any]


@dataclass(frozen=True)
class CartEvent:
    topic: str
    payload: CartPayload
    raw: Dict[str, Any]


@dataclass(frozen=True)
class RefundEvent:
    topic: str
    payload: RefundPayload
    raw: Dict[str, Any]


@dataclass(frozen=True)
class UnhandledEvent:
    topic: str
    raw: Any


WebhookEvent = Union[
    OrderEvent,
    CustomerEvent,
    ProductEvent,
    CheckoutEvent,
    CartEvent,
    RefundEvent,
    UnhandledEvent,
]

TOPIC_VARIANTS = {
    "orders/create": (OrderEvent, OrderPayload),
    "orders/updated": (OrderEvent, OrderPayload),
    "customers/create": (CustomerEvent, CustomerPayload),
    "customers/update": (CustomerEvent, CustomerPayload),
    "products/create": (ProductEvent, ProductPayload),
    "products/update": (ProductEvent, ProductPayload),
    "checkouts/create": (CheckoutEvent, CheckoutPayload),
    "checkouts/update": (CheckoutEvent, CheckoutPayload),
    "carts/create": (CartEvent, CartPayload),
    "carts/update": (CartEvent, CartPayload),
    "refunds/create": (RefundEvent, RefundPayload),
}


def parse_event(topic: str, body: Any) -> WebhookEvent:
    """Parse a decoded webhook body into its topic's event variant.

    Raises:
        ProcessingFailure: if a handled topic's body is not an object or
            fails validation
    """
    variant = TOPIC_VARIANTS.get(topic)
    if variant is None:
        return UnhandledEvent(topic=topic, raw=body)

    event_cls, payload_cls = variant
    if not isinstance(body, dict):
        raise ProcessingFailure(f"{topic} payload is not a JSON object")

    try:
        payload = payload_cls.model_validate(body)
    except ValidationError as e:
        raise ProcessingFailure(f"Malformed {topic} payload ({e.error_count()} validation errors)") from e

    return event_cls(topic=topic, payload=payload, raw=body)
