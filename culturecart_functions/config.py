"""culturecart-functions configuration.

Everything is read from environment variables so the service runs the same
way locally, in a container, or on the functions runtime.

Defaults are for development. Override them in deployed environments.
"""

from __future__ import annotations

import os


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# --- MongoDB -----------------------------------------------------------------
# Mongo connection string. Example: "mongodb://10.0.1.12:27017"
MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")

# Database name
MONGO_DB: str = os.getenv("MONGO_DB", "culturecart")

# Collections owned by the marketplace (read, and counters written back)
PRODUCTS_COLLECTION: str = os.getenv("PRODUCTS_COLLECTION", "products")
USERS_COLLECTION: str = os.getenv("USERS_COLLECTION", "users")
ARTISANS_COLLECTION: str = os.getenv("ARTISANS_COLLECTION", "artisans")
ORDERS_COLLECTION: str = os.getenv("ORDERS_COLLECTION", "orders")
REVIEWS_COLLECTION: str = os.getenv("REVIEWS_COLLECTION", "reviews")
EVENTS_COLLECTION: str = os.getenv("EVENTS_COLLECTION", "analytics")

# Collections owned by this service
RUNS_COLLECTION: str = os.getenv("RUNS_COLLECTION", "aggregation_runs")
PLATFORM_METRICS_COLLECTION: str = os.getenv("PLATFORM_METRICS_COLLECTION", "platform_metrics")
NOTIFICATION_LOG_COLLECTION: str = os.getenv("NOTIFICATION_LOG_COLLECTION", "notification_log")

# --- Aggregation -------------------------------------------------------------
# Documents fetched per store round-trip. The store caps a page at 1000.
AGGREGATION_PAGE_SIZE: int = int(os.getenv("AGGREGATION_PAGE_SIZE", "1000"))

# IANA timezone whose calendar day defines "yesterday" for the nightly trigger.
AGGREGATION_TIMEZONE: str = os.getenv("AGGREGATION_TIMEZONE", "UTC")

# --- Kafka -------------------------------------------------------------------
# The order-status consumer only starts when this is on.
KAFKA_ENABLED: bool = _get_bool("KAFKA_ENABLED", False)

KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")

# Topic carrying OrderStatusChanged events
KAFKA_TOPIC: str = os.getenv("KAFKA_TOPIC", "orders.status.v1")

# Offsets are tracked per consumer group. A new group id re-reads the topic
# from the beginning (auto.offset.reset=earliest).
KAFKA_GROUP_ID: str = os.getenv("KAFKA_GROUP_ID", "order-notifications")

# --- Mail --------------------------------------------------------------------
# HTTP mail API endpoint. When empty, emails are only written to the log.
MAIL_API_URL: str = os.getenv("MAIL_API_URL", "")
MAIL_API_KEY: str = os.getenv("MAIL_API_KEY", "")
MAIL_FROM: str = os.getenv("MAIL_FROM", "CultureCart <orders@culturecart.in>")

# Public site, used for track/review links in emails
SITE_URL: str = os.getenv("SITE_URL", "https://culturecart.in")

# --- Logging -----------------------------------------------------------------
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
