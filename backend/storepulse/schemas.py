"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from .models import CheckoutStatusEnum


# Tenants -------------------------------------------------------

class TenantCreate(BaseModel):
    """Payload for tenant registration."""

    name: str = Field(min_length=1, description="Store display name")
    shop_domain: str = Field(min_length=1, description="Shopify domain, e.g. mystore.myshopify.com")
    webhook_secret: str = Field(min_length=1, description="Shared secret used to sign webhooks")
    access_token: Optional[str] = Field(None, description="Admin API token; enables backfill sync")

    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Demo Store",
                "shop_domain": "demo-store.myshopify.com",
                "webhook_secret": "whsec_123",
            }
        }
    }

    @field_validator("shop_domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        return value.strip().lower()


class TenantUpdate(BaseModel):
    """Payload for tenant name/token updates. Omitted fields are unchanged."""

    name: Optional[str] = Field(None, min_length=1, description="New display name")
    access_token: Optional[str] = Field(None, description="New Admin API token")


class TenantOut(BaseModel):
    """Tenant view; secrets are never returned."""

    id: UUID
    name: str
    shop_domain: str
    has_access_token: bool = Field(description="Whether backfill sync is possible")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TenantDetail(TenantOut):
    """Tenant view with entity counts."""

    counts: Dict[str, int] = Field(default_factory=dict, description="Rows per entity type")


# Entities ------------------------------------------------------

class CustomerOut(BaseModel):
    id: str = Field(validation_alias="external_customer_id")
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    total_spent: float
    orders_count: int
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "populate_by_name": True}


class OrderOut(BaseModel):
    id: str = Field(validation_alias="external_order_id")
    order_number: Optional[int] = None
    customer_id: Optional[str] = Field(None, validation_alias="external_customer_id")
    total: float
    currency: str
    checkout_token: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "populate_by_name": True}


class ProductOut(BaseModel):
    id: str = Field(validation_alias="external_product_id")
    title: str
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    price: Optional[float] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "populate_by_name": True}


class CheckoutOut(BaseModel):
    id: UUID
    shopify_checkout_id: str
    shopify_cart_token: Optional[str] = None
    email: Optional[str] = None
    total_price: float
    currency: str
    line_items_count: int
    status: CheckoutStatusEnum
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RefundOut(BaseModel):
    id: UUID
    shopify_refund_id: str
    shopify_order_id: Optional[str] = None
    amount: float
    currency: str
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class CustomerPage(PageMeta):
    items: List[CustomerOut]


class OrderPage(PageMeta):
    items: List[OrderOut]


class ProductPage(PageMeta):
    items: List[ProductOut]


# Analytics -----------------------------------------------------

class CheckoutAnalytics(BaseModel):
    """Checkout funnel for a tenant and optional date range.

    Rates are percentages rounded to 2 decimals; both are 0 when there are
    no checkouts.
    """

    total_checkouts: int = 0
    completed_checkouts: int = 0
    abandoned_checkouts: int = 0
    pending_checkouts: int = 0
    conversion_rate: float = Field(0.0, description="completed / total * 100")
    abandonment_rate: float = Field(0.0, description="abandoned / total * 100")
    abandoned_value: float = Field(0.0, description="Sum of abandoned checkout totals")
    completed_value: float = Field(0.0, description="Sum of completed checkout totals")


class RefundAnalytics(BaseModel):
    total_refunds: int = 0
    total_refund_amount: float = 0.0
    average_refund_amount: float = 0.0


class TopCustomer(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    total_spent: float
    orders_count: int


class DailyOrders(BaseModel):
    date: str = Field(description="YYYY-MM-DD")
    orders: int
    revenue: float


class DashboardMetrics(BaseModel):
    """Dashboard KPIs for a tenant."""

    customers_count: int
    orders_count: int
    total_revenue: float
    top_customers: List[TopCustomer]
    orders_by_date: List[DailyOrders] = Field(description="Last 30 days, oldest first")
    conversion_rate: float
    abandonment_rate: float
    checkouts: CheckoutAnalytics


class AbandonmentRunResponse(BaseModel):
    tenant_id: UUID
    abandoned_count: int


class CheckoutList(BaseModel):
    items: List[CheckoutOut]
    total: int
    limit: int
    offset: int


class RefundList(BaseModel):
    items: List[RefundOut]
    total: int
    limit: int
    offset: int


# Sync ----------------------------------------------------------

class SyncRequest(BaseModel):
    tenant_id: UUID = Field(description="Tenant to backfill from Shopify")


class EntitySyncStatsResponse(BaseModel):
    synced: int = 0
    errors: int = 0


class SyncResultResponse(BaseModel):
    """API response for a tenant backfill."""

    success: bool
    products: EntitySyncStatsResponse
    customers: EntitySyncStatsResponse
    orders: EntitySyncStatsResponse
    duration_ms: int
    error: Optional[str] = None
    errors: List[str] = Field(default_factory=list, description="Per-entity error messages")


class SyncStatusResponse(BaseModel):
    tenant_id: UUID
    shop_domain: str
    has_access_token: bool
    products: int
    customers: int
    orders: int


# Health --------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = Field(description="ok when the API is responsive")
