"""Nightly analytics aggregation.

High-level flow:
    read window -> fold -> write, for four independent groups:
    products, users, artisans, platform.

Important properties:

1) Re-runs are safe
Each entity's counters are bumped by one atomic update that also records the
window key on the entity (see `MongoStore.apply_window_delta`). Running the
same window twice, or re-running after a crash halfway through, only applies
the deltas that are still missing.

2) One bad entity does not abort the run
Every entity is its own unit of work. Store or data-shape failures are
collected into the group's report and the loop moves on. If a group cannot
even list its entities, the group is marked failed and the next group runs.

3) Everything is paged
Entity and order listings walk the collection page by page until it is
exhausted. No group silently stops at the first 1000 documents.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .config import (
    AGGREGATION_TIMEZONE,
    ARTISANS_COLLECTION,
    EVENTS_COLLECTION,
    ORDERS_COLLECTION,
    PLATFORM_METRICS_COLLECTION,
    PRODUCTS_COLLECTION,
    REVIEWS_COLLECTION,
    RUNS_COLLECTION,
    USERS_COLLECTION,
)
from .errors import AggregationError, DataShapeError
from .models import (
    EVENT_PRODUCT_LIKE,
    EVENT_PRODUCT_VIEW,
    EVENT_PURCHASE,
    ORDER_DELIVERED,
    PRODUCT_PUBLISHED,
    REVIEW_APPROVED,
    AggregationReport,
    AggregationRequest,
    ArtisanDocument,
    EntityFailure,
    FunctionResult,
    GroupReport,
    OrderDocument,
    PlatformSummary,
    ProductDocument,
    ReviewDocument,
    UserDocument,
    parse_document,
)
from .mongo import WINDOW_MARKER_FIELD, MongoStore
from .window import Window, as_utc, previous_day

logger = logging.getLogger(__name__)

RUN_COMPLETED = "completed"
RUN_PARTIAL = "partial"
RUN_RUNNING = "running"


def _already_applied(raw: dict[str, Any], window: Window) -> bool:
    return window.key in (raw.get(WINDOW_MARKER_FIELD) or ())


def _for_each_entity(
    documents: Iterable[dict[str, Any]],
    window: Window,
    group: GroupReport,
    apply: Callable[[dict[str, Any]], bool],
) -> None:
    """Run `apply` on every document, each inside its own error boundary.

    `apply` returns True when it wrote the window's delta and False when the
    entity already had it. Listing failures propagate to the caller.
    """
    for raw in documents:
        group.processed += 1

        if _already_applied(raw, window):
            group.skipped += 1
            continue

        try:
            applied = apply(raw)
        except AggregationError as e:
            entity_id = str(raw.get("_id"))
            logger.warning("[Aggregator] %s %s failed: %s", group.group, entity_id, e)
            group.failed.append(EntityFailure(entityId=entity_id, reason=str(e)))
            continue

        if applied:
            group.updated += 1
        else:
            group.skipped += 1


def _run_group(name: str, body: Callable[[GroupReport], None]) -> GroupReport:
    group = GroupReport(group=name)
    logger.info("[Aggregator] Aggregating %s metrics...", name)
    try:
        body(group)
    except AggregationError as e:
        logger.error("[Aggregator] %s group aborted: %s", name, e)
        group.error = str(e)
    logger.info(
        "[Aggregator] %s: processed=%d updated=%d skipped=%d failed=%d",
        name, group.processed, group.updated, group.skipped, len(group.failed),
    )
    return group


# ---------------------------------------------------------------------------
# Product metrics
# ---------------------------------------------------------------------------


def _count_product_events(store: MongoStore, window: Window, event_type: str, product_id: str) -> int:
    return store.count_documents(
        EVENTS_COLLECTION,
        {
            "eventType": event_type,
            "productId": product_id,
            "timestamp": window.range_filter(),
        },
    )


def aggregate_product_metrics(store: MongoStore, window: Window, now: datetime, group: GroupReport) -> None:
    """views/likes/salesCount += the window's view/like/purchase event counts."""

    def apply(raw: dict[str, Any]) -> bool:
        product = parse_document(ProductDocument, PRODUCTS_COLLECTION, raw)
        views = _count_product_events(store, window, EVENT_PRODUCT_VIEW, product.productId)
        likes = _count_product_events(store, window, EVENT_PRODUCT_LIKE, product.productId)
        sales = _count_product_events(store, window, EVENT_PURCHASE, product.productId)
        return store.apply_window_delta(
            PRODUCTS_COLLECTION,
            product.id,
            window.key,
            {"views": views, "likes": likes, "salesCount": sales},
            {"updatedAt": now},
        )

    documents = store.iter_documents(PRODUCTS_COLLECTION, {"status": PRODUCT_PUBLISHED})
    _for_each_entity(documents, window, group, apply)


# ---------------------------------------------------------------------------
# User metrics
# ---------------------------------------------------------------------------


def aggregate_user_metrics(store: MongoStore, window: Window, now: datetime, group: GroupReport) -> None:
    """totalOrders/totalSpent += the user's delivered orders in the window."""

    def apply(raw: dict[str, Any]) -> bool:
        user = parse_document(UserDocument, USERS_COLLECTION, raw)
        orders = [
            parse_document(OrderDocument, ORDERS_COLLECTION, doc)
            for doc in store.iter_documents(
                ORDERS_COLLECTION,
                {
                    "buyerId": user.userId,
                    "orderStatus": ORDER_DELIVERED,
                    "createdAt": window.range_filter(),
                },
            )
        ]
        spent = sum(order.totalAmount for order in orders)
        return store.apply_window_delta(
            USERS_COLLECTION,
            user.id,
            window.key,
            {"totalOrders": len(orders), "totalSpent": spent},
            {"lastActive": now},
        )

    _for_each_entity(store.iter_documents(USERS_COLLECTION, {}), window, group, apply)


# ---------------------------------------------------------------------------
# Artisan metrics
# ---------------------------------------------------------------------------


def _delivered_sales_by_artisan(store: MongoStore, window: Window, group: GroupReport) -> Counter:
    """Count, per artisan, the delivered in-window orders holding any of their items.

    An order with items from two artisans counts once for each of them.
    Orders whose items cannot be read are reported as failures of the group.
    """
    sales: Counter = Counter()
    documents = store.iter_documents(
        ORDERS_COLLECTION,
        {"orderStatus": ORDER_DELIVERED, "createdAt": window.range_filter()},
    )
    for raw in documents:
        try:
            order = parse_document(OrderDocument, ORDERS_COLLECTION, raw)
        except DataShapeError as e:
            logger.warning("[Aggregator] order %s skipped for artisan sales: %s", raw.get("_id"), e)
            group.failed.append(EntityFailure(entityId=f"{ORDERS_COLLECTION}/{raw.get('_id')}", reason=str(e)))
            continue
        sales.update(order.artisan_ids())
    return sales


def _approved_rating(store: MongoStore, artisan_id: str) -> float | None:
    """Mean of every approved review of the artisan, or None when there are none."""
    ratings = [
        parse_document(ReviewDocument, REVIEWS_COLLECTION, doc).rating
        for doc in store.iter_documents(
            REVIEWS_COLLECTION,
            {"artisanId": artisan_id, "status": REVIEW_APPROVED},
        )
    ]
    if not ratings:
        return None
    return sum(ratings) / len(ratings)


def aggregate_artisan_metrics(store: MongoStore, window: Window, now: datetime, group: GroupReport) -> None:
    """totalProducts/totalSales += the window's deltas, rating = mean approved review.

    When any delivered order could not be read, no artisan is written: the
    window marker would make the missing sales permanent. Once the order is
    repaired a re-run applies the full delta.
    """
    sales = _delivered_sales_by_artisan(store, window, group)
    if group.failed:
        group.error = f"{len(group.failed)} unreadable order(s); artisan counters not updated"
        logger.warning("[Aggregator] artisans: %s", group.error)
        return

    def apply(raw: dict[str, Any]) -> bool:
        artisan = parse_document(ArtisanDocument, ARTISANS_COLLECTION, raw)
        new_products = store.count_documents(
            PRODUCTS_COLLECTION,
            {"artisanId": artisan.userId, "publishedAt": window.range_filter()},
        )
        fields: dict[str, Any] = {"updatedAt": now}
        rating = _approved_rating(store, artisan.userId)
        if rating is not None:
            fields["rating"] = rating
        return store.apply_window_delta(
            ARTISANS_COLLECTION,
            artisan.id,
            window.key,
            {"totalProducts": new_products, "totalSales": sales[artisan.userId]},
            fields,
        )

    _for_each_entity(store.iter_documents(ARTISANS_COLLECTION, {}), window, group, apply)


# ---------------------------------------------------------------------------
# Platform metrics
# ---------------------------------------------------------------------------


def aggregate_platform_metrics(store: MongoStore, window: Window, now: datetime) -> PlatformSummary:
    """Compute window-wide totals, log them, and record them per window."""
    in_window = window.range_filter()

    orders = 0
    revenue = 0.0
    for raw in store.iter_documents(ORDERS_COLLECTION, {"createdAt": in_window}):
        order = parse_document(OrderDocument, ORDERS_COLLECTION, raw)
        orders += 1
        revenue += order.totalAmount

    summary = PlatformSummary(
        totalEvents=store.count_documents(EVENTS_COLLECTION, {"timestamp": in_window}),
        newUsers=store.count_documents(USERS_COLLECTION, {"createdAt": in_window}),
        newArtisans=store.count_documents(ARTISANS_COLLECTION, {"createdAt": in_window}),
        orders=orders,
        revenue=revenue,
    )

    logger.info(
        "[Aggregator] Daily summary %s: events=%d new_users=%d new_artisans=%d orders=%d revenue=₹%.2f",
        window.key, summary.totalEvents, summary.newUsers, summary.newArtisans,
        summary.orders, summary.revenue,
    )

    store.upsert_document(
        PLATFORM_METRICS_COLLECTION,
        window.key,
        {
            **summary.model_dump(),
            "windowStart": window.start,
            "windowEnd": window.end,
            "computedAt": now,
        },
    )
    return summary


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def run_daily_aggregation(
    store: MongoStore,
    window_start: datetime,
    window_end: datetime,
    *,
    now: datetime | None = None,
    force: bool = False,
) -> AggregationReport:
    """Aggregate every metric group over [window_start, window_end).

    A window already recorded as completed is not processed again unless
    `force` is set. Even when forced, entities that already carry the window
    are skipped, so counters are never double-counted.

    Raises:
        InvalidWindowError: the bounds are not a valid window.
        StoreError: the run record could not be read or written.
    """
    window = Window.between(window_start, window_end)
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    report = AggregationReport(windowKey=window.key, windowStart=window.start, windowEnd=window.end)

    previous = store.get_document(RUNS_COLLECTION, window.key)
    if previous is not None and previous.get("status") == RUN_COMPLETED and not force:
        logger.info("[Aggregator] Window %s already aggregated; nothing to do", window.key)
        report.alreadyAggregated = True
        return report

    logger.info("[Aggregator] Starting aggregation for window %s", window.key)
    store.upsert_document(RUNS_COLLECTION, window.key, {"status": RUN_RUNNING, "startedAt": now})

    report.groups.append(_run_group("products", lambda g: aggregate_product_metrics(store, window, now, g)))
    report.groups.append(_run_group("users", lambda g: aggregate_user_metrics(store, window, now, g)))
    report.groups.append(_run_group("artisans", lambda g: aggregate_artisan_metrics(store, window, now, g)))

    def platform(group: GroupReport) -> None:
        report.platform = aggregate_platform_metrics(store, window, now)

    report.groups.append(_run_group("platform", platform))

    status = RUN_COMPLETED if report.ok else RUN_PARTIAL
    store.upsert_document(
        RUNS_COLLECTION,
        window.key,
        {
            "status": status,
            "finishedAt": datetime.now(timezone.utc),
            "report": report.model_dump(mode="json"),
        },
    )
    logger.info("[Aggregator] Aggregation %s for window %s", status, window.key)
    return report


def aggregate_previous_day(
    store: MongoStore,
    *,
    now: datetime | None = None,
    tz: str = AGGREGATION_TIMEZONE,
    force: bool = False,
) -> AggregationReport:
    """Aggregate the calendar day before `now` in timezone `tz`."""
    window = previous_day(now, tz)
    return run_daily_aggregation(store, window.start, window.end, now=now, force=force)


def handle_aggregation_request(
    store: MongoStore,
    request: AggregationRequest,
    *,
    now: datetime | None = None,
) -> FunctionResult:
    """Run the aggregation for a function invocation and shape its JSON result."""
    try:
        if request.windowStart is not None and request.windowEnd is not None:
            report = run_daily_aggregation(
                store, request.windowStart, request.windowEnd, now=now, force=request.force
            )
        else:
            report = aggregate_previous_day(store, now=now, force=request.force)
    except AggregationError as e:
        logger.error("[Aggregator] Analytics aggregation failed: %s", e)
        return FunctionResult(success=False, error=str(e))

    if report.alreadyAggregated:
        return FunctionResult(
            success=True,
            message=f"Window {report.windowKey} was already aggregated",
            report=report,
        )
    if not report.ok:
        return FunctionResult(
            success=False,
            error=f"Aggregation finished with {report.failure_count()} failure(s)",
            report=report,
        )
    return FunctionResult(success=True, message="Analytics aggregated successfully", report=report)
