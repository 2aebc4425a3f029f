"""culturecart-functions FastAPI application.

Responsibilities:
- Serve the function triggers:
    `POST /functions/analytics-aggregator` (nightly, from the scheduler)
    `POST /functions/order-notification` (on order status change)
- Serve `GET /platform-metrics` for the operations dashboard.
- Optionally run a background Kafka consumer that sends order notifications.

Function endpoints always answer 200 with `{success, message?, error?}`;
the invoking runtime reads `success`, not the HTTP status.
"""

from __future__ import annotations

import logging
from threading import Event, Thread

from fastapi import Depends, FastAPI, Query

from .aggregator import handle_aggregation_request
from .config import KAFKA_ENABLED, LOG_LEVEL, PLATFORM_METRICS_COLLECTION
from .errors import FunctionsError
from .kafka_consumer import run_consumer
from .mailer import get_mailer
from .models import AggregationRequest, FunctionResult, OrderNotificationRequest
from .mongo import MongoStore, get_database
from .notifications import handle_order_notification

logger = logging.getLogger(__name__)

app = FastAPI(title="CultureCart Functions")

# Used to signal the consumer thread to stop on shutdown.
stop_event = Event()

# Stored so we keep a reference; the thread is daemonized.
consumer_thread: Thread | None = None

# Set on startup.
store: MongoStore | None = None
mailer = None


def get_store() -> MongoStore:
    return store


def get_mailer_dependency():
    return mailer


@app.on_event("startup")
def on_startup() -> None:
    """Startup hook.

    - Configure logging.
    - Connect to MongoDB and pick the mail sender.
    - Start the Kafka consumer thread when enabled.
    """
    global consumer_thread, store, mailer

    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    store = MongoStore(get_database())
    mailer = get_mailer()

    if KAFKA_ENABLED:
        consumer_thread = Thread(
            target=run_consumer,
            args=(store, mailer, stop_event),
            daemon=True,
        )
        consumer_thread.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    """Signal the consumer loop to stop (it checks stop_event.is_set())."""
    stop_event.set()


@app.get("/health")
def health() -> dict[str, str]:
    """Basic liveness endpoint."""
    return {"status": "ok"}


@app.post("/functions/analytics-aggregator", response_model=FunctionResult, response_model_exclude_none=True)
def analytics_aggregator(
    req: AggregationRequest | None = None,
    store: MongoStore = Depends(get_store),
) -> FunctionResult:
    """Aggregate analytics for a window (default: yesterday)."""
    try:
        return handle_aggregation_request(store, req or AggregationRequest())
    except Exception as e:
        logger.exception("[Aggregator] Unexpected failure")
        return FunctionResult(success=False, error=str(e))


@app.post("/functions/order-notification", response_model=FunctionResult, response_model_exclude_none=True)
def order_notification(
    req: OrderNotificationRequest,
    store: MongoStore = Depends(get_store),
    mailer=Depends(get_mailer_dependency),
) -> FunctionResult:
    """Send the emails for an order status change."""
    try:
        result = handle_order_notification(store, mailer, req)
    except FunctionsError as e:
        logger.error("[Notify] Notification failed: %s", e)
        return FunctionResult(success=False, error=str(e))

    if result.duplicate:
        return FunctionResult(success=True, message="Notification already sent")
    return FunctionResult(success=True, message="Notification sent successfully")


@app.get("/platform-metrics")
def platform_metrics(
    limit: int = Query(30, ge=1, le=365),
    store: MongoStore = Depends(get_store),
):
    """Return the latest daily platform summaries, newest first.

    Returns:
        {"metrics": [ ...platform_metrics documents... ]}
    """
    docs = store.latest_documents(PLATFORM_METRICS_COLLECTION, "windowStart", limit)
    return {"metrics": docs}
