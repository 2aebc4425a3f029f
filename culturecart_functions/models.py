"""Pydantic models for culturecart-functions.

Three kinds of models live here:
- stored documents we read from the marketplace collections. They are
  validated before use so a malformed document fails alone instead of
  crashing a whole batch with a TypeError halfway through.
- request/response bodies of the function endpoints.
- the Kafka event consumed by the order notification worker.

Stored documents allow extra fields: the marketplace owns their schema and
adds fields freely. We only pin down what we read.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import DataShapeError

# Event types counted by the aggregator
EVENT_PRODUCT_VIEW = "product_view"
EVENT_PRODUCT_LIKE = "product_like"
EVENT_PURCHASE = "purchase"
EVENT_EMAIL_SENT = "email_sent"

ORDER_DELIVERED = "delivered"
PRODUCT_PUBLISHED = "published"
REVIEW_APPROVED = "approved"

DocumentT = TypeVar("DocumentT", bound="StoredDocument")


def _decode_json_string(value: Any) -> Any:
    """Some documents store nested values as JSON strings. Accept both forms."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON: {e}") from e
    return value


class StoredDocument(BaseModel):
    """Base for documents read from the store."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Any = Field(alias="_id")


# --- Marketplace documents ---------------------------------------------------


class ProductDocument(StoredDocument):
    productId: str
    artisanId: str | None = None
    status: str | None = None
    views: int = Field(default=0, ge=0, strict=True)
    likes: int = Field(default=0, ge=0, strict=True)
    salesCount: int = Field(default=0, ge=0, strict=True)


class UserDocument(StoredDocument):
    userId: str
    totalOrders: int = Field(default=0, ge=0, strict=True)
    totalSpent: float = Field(default=0.0, ge=0)


class ArtisanDocument(StoredDocument):
    userId: str
    name: str = ""
    email: str | None = None
    totalProducts: int = Field(default=0, ge=0, strict=True)
    totalSales: int = Field(default=0, ge=0, strict=True)
    rating: float | None = None


class OrderItem(BaseModel):
    """One line item of an order."""

    model_config = ConfigDict(extra="ignore")

    productId: str | None = None
    artisanId: str | None = None
    title: str = ""
    price: float = 0.0
    quantity: int = 1


class ShippingAddress(BaseModel):
    model_config = ConfigDict(extra="allow")

    street: str = ""
    city: str = ""


class OrderDocument(StoredDocument):
    """An order. `items` and `shippingAddress` may be stored as JSON strings."""

    orderId: str | None = None
    orderNumber: str = ""
    buyerId: str | None = None
    buyerName: str = ""
    buyerEmail: str | None = None
    orderStatus: str
    totalAmount: float
    items: list[OrderItem] = Field(default_factory=list)
    shippingAddress: ShippingAddress | None = None
    trackingNumber: str | None = None
    estimatedDelivery: datetime | None = None
    deliveredAt: datetime | None = None
    notes: str | None = None
    createdAt: datetime | None = None

    @field_validator("items", "shippingAddress", mode="before")
    @classmethod
    def _decode_nested(cls, value: Any) -> Any:
        return _decode_json_string(value)

    def artisan_ids(self) -> list[str]:
        """Distinct artisan ids across the line items, in first-seen order."""
        seen: dict[str, None] = {}
        for item in self.items:
            if item.artisanId:
                seen.setdefault(item.artisanId, None)
        return list(seen)


class ReviewDocument(StoredDocument):
    artisanId: str
    status: str
    rating: float = Field(ge=0, le=5)


# --- Aggregation reports -----------------------------------------------------


class EntityFailure(BaseModel):
    """An entity whose update failed, and why."""

    entityId: str
    reason: str


class GroupReport(BaseModel):
    """Outcome of one metric group.

    Fields:
        processed: entities visited.
        updated: entities whose counters were written for this window.
        skipped: entities that already carried this window (re-run).
        failed: per-entity failures; the rest of the group still ran.
        error: set when the group could not even list its entities.
    """

    group: str
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    failed: list[EntityFailure] = Field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed


class PlatformSummary(BaseModel):
    """Window-wide platform totals."""

    totalEvents: int = 0
    newUsers: int = 0
    newArtisans: int = 0
    orders: int = 0
    revenue: float = 0.0


class AggregationReport(BaseModel):
    windowKey: str
    windowStart: datetime
    windowEnd: datetime
    alreadyAggregated: bool = False
    groups: list[GroupReport] = Field(default_factory=list)
    platform: PlatformSummary | None = None

    @property
    def ok(self) -> bool:
        return all(group.ok for group in self.groups)

    def failure_count(self) -> int:
        return sum(len(g.failed) + (1 if g.error else 0) for g in self.groups)


# --- Function requests / responses ------------------------------------------


class AggregationRequest(BaseModel):
    """Body for `POST /functions/analytics-aggregator`.

    Without a window the previous calendar day is aggregated.
    """

    windowStart: datetime | None = None
    windowEnd: datetime | None = None
    force: bool = False

    @model_validator(mode="after")
    def _both_or_neither(self) -> "AggregationRequest":
        if (self.windowStart is None) != (self.windowEnd is None):
            raise ValueError("windowStart and windowEnd must be given together")
        return self


class OrderNotificationRequest(BaseModel):
    """Body for `POST /functions/order-notification`.

    Mirrors the document-change payload: the order's document id arrives as
    `$id` (or `documentId`).
    """

    documentId: str = Field(validation_alias=AliasChoices("$id", "documentId"))
    orderId: str | None = None
    orderStatus: str


class FunctionResult(BaseModel):
    """JSON result returned to the invoking runtime."""

    success: bool
    message: str | None = None
    error: str | None = None
    report: AggregationReport | None = None


class NotificationResult(BaseModel):
    orderId: str | None
    orderStatus: str
    emailsSent: int = 0
    duplicate: bool = False


# --- Kafka events ------------------------------------------------------------


class OrderStatusChangedEvent(BaseModel):
    """Kafka event published when an order's status changes.

    Fields:
        eventId: Globally unique identifier for this event (UUID string).
        eventType: Constant discriminator for the event kind.
        eventVersion: Schema version.
        timestamp: ISO8601 timestamp string (UTC).

        documentId: Store id of the order document.
        orderId: Marketplace order id.
        orderStatus: The new status.
    """

    eventId: str
    eventType: Literal["OrderStatusChanged"] = "OrderStatusChanged"
    eventVersion: int = 1
    timestamp: str

    documentId: str
    orderId: str | None = None
    orderStatus: str


def parse_document(model: type[DocumentT], collection: str, raw: dict[str, Any]) -> DocumentT:
    """Validate a stored document, raising DataShapeError when it is malformed."""
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise DataShapeError(collection, raw.get("_id"), problems) from e
