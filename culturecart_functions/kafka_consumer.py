"""Kafka consumer loop for order status notifications.

High-level flow:
    poll -> decode JSON -> validate schema -> send notification -> commit offset

1) Manual offset commit
- `enable.auto.commit=False`; we commit only after the notification was
  handled. Delivery is therefore at-least-once, and duplicates are absorbed
  by the notification log (see notifications.py).

2) Poison pills
- A malformed message (bad JSON / wrong schema) is logged and committed,
  otherwise we'd re-read it forever.
- Same for an order that does not exist or cannot be parsed: retrying will
  not fix it.
- Same for a buyer or artisan with no email address on file.
- A failure that may go away (store outage, mail API down) is NOT committed.
  The consumer seeks back to the failed offset and waits RETRY_BACKOFF_SECONDS,
  so the next poll returns the same event instead of moving past it.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from confluent_kafka import Consumer, TopicPartition
from pydantic import ValidationError

from .config import KAFKA_BOOTSTRAP_SERVERS, KAFKA_GROUP_ID, KAFKA_TOPIC
from .errors import DataShapeError, FunctionsError, MissingRecipientError, OrderNotFoundError
from .models import OrderNotificationRequest, OrderStatusChangedEvent
from .mongo import MongoStore
from .notifications import handle_order_notification

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 5.0


def create_consumer() -> Consumer:
    """Create and configure a Confluent Kafka Consumer.

    - auto.offset.reset=earliest: a group with no committed offsets starts at
      the beginning of the topic.
    - enable.auto.commit=False: we commit after each handled message.
    """
    conf: dict[str, Any] = {
        "bootstrap.servers": KAFKA_BOOTSTRAP_SERVERS,
        "group.id": KAFKA_GROUP_ID,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    }
    return Consumer(conf)


def process_message(consumer, msg, store: MongoStore, mailer) -> bool:
    """Handle one polled message. Returns True when its offset was committed.

    On a transient failure the consumer is rewound to `msg` so it is polled
    again; committing a later offset would otherwise skip it.
    """
    # `msg.error()` indicates a Kafka-level error (not an application payload error).
    if msg.error():
        logger.error("[Consumer] Kafka error: %s", msg.error())
        return False

    try:
        data = json.loads(msg.value().decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(
            "[Consumer] Bad payload (decode/json): %s. Skipping. partition=%s offset=%s",
            e, msg.partition(), msg.offset(),
        )
        consumer.commit(msg)
        return True

    try:
        event = OrderStatusChangedEvent.model_validate(data)
    except ValidationError as e:
        logger.warning("[Consumer] Bad event schema: %s. data=%s", e, data)
        consumer.commit(msg)
        return True

    logger.info(
        "[Consumer] Received event %s order=%s status=%s (p=%s o=%s)",
        event.eventId, event.orderId, event.orderStatus, msg.partition(), msg.offset(),
    )

    request = OrderNotificationRequest(
        documentId=event.documentId,
        orderId=event.orderId,
        orderStatus=event.orderStatus,
    )
    try:
        handle_order_notification(store, mailer, request)
    except (OrderNotFoundError, DataShapeError, MissingRecipientError) as e:
        logger.warning("[Consumer] Dropping event %s: %s", event.eventId, e)
        consumer.commit(msg)
        return True
    except FunctionsError as e:
        logger.error("[Consumer] Notification failed for event %s, will retry: %s", event.eventId, e)
        consumer.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
        time.sleep(RETRY_BACKOFF_SECONDS)
        return False

    consumer.commit(msg)
    return True


def run_consumer(store: MongoStore, mailer, stop_event) -> None:
    """Run the consumer loop until `stop_event.is_set()` becomes True.

    Args:
        store: Document store handle.
        mailer: Email sender (HttpMailer or LogMailer).
        stop_event: A threading.Event (or compatible object) used to stop the loop.
    """
    logger.info("[Consumer] Starting Kafka consumer on %s", KAFKA_TOPIC)

    consumer = create_consumer()
    consumer.subscribe([KAFKA_TOPIC])

    try:
        while not stop_event.is_set():
            # Wait up to 1 second so we notice stop_event promptly.
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            process_message(consumer, msg, store, mailer)
    finally:
        consumer.close()
        logger.info("[Consumer] Closed")
