"""Order status notifications.

When an order changes status we email the buyer, and on delivery also every
artisan whose items were in the order. Each email sent is recorded as an
`email_sent` event in the analytics collection.

Delivery is at-least-once (Kafka redelivers, the runtime may retry), so each
recipient of an `(orderId, orderStatus)` pair is logged once emailed and is
not emailed again.
"""

from __future__ import annotations

import logging
import textwrap
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from .config import (
    ARTISANS_COLLECTION,
    EVENTS_COLLECTION,
    NOTIFICATION_LOG_COLLECTION,
    ORDERS_COLLECTION,
    SITE_URL,
)
from .errors import MissingRecipientError, OrderNotFoundError
from .models import (
    EVENT_EMAIL_SENT,
    ArtisanDocument,
    NotificationResult,
    OrderDocument,
    OrderNotificationRequest,
    parse_document,
)
from .mongo import MongoStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Email:
    to: str
    subject: str
    text: str


def _date(value: datetime | None, fallback: str) -> str:
    return value.strftime("%d %b %Y") if value is not None else fallback


def _money(amount: float) -> str:
    return f"₹{amount:,.2f}"


def _letter(body: str) -> str:
    return textwrap.dedent(body).strip() + "\n"


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def order_confirmation(order: OrderDocument) -> Email:
    items = "\n".join(f"- {item.title} ({_money(item.price)})" for item in order.items) or "-"
    header = _letter(f"""
        Dear {order.buyerName},

        Your order has been confirmed!

        Order Details:
        - Order Number: {order.orderNumber}
        - Total Amount: {_money(order.totalAmount)}
        - Expected Delivery: {_date(order.estimatedDelivery, "To be confirmed")}

        Items:
    """)
    footer = _letter("""
        Thank you for shopping with CultureCart!

        Best regards,
        CultureCart Team
    """)
    text = f"{header}{items}\n\n{footer}"
    return Email(order.buyerEmail or "", f"Order Confirmed - {order.orderNumber}", text)


def shipping_notification(order: OrderDocument) -> Email:
    address = order.shippingAddress
    where = f"{address.street}, {address.city}" if address is not None else "On file"
    text = _letter(f"""
        Dear {order.buyerName},

        Great news! Your order has been shipped.

        Order Details:
        - Order Number: {order.orderNumber}
        - Tracking Number: {order.trackingNumber or "Will be updated soon"}
        - Shipping Address: {where}

        You can track your order at: {SITE_URL}/track/{order.orderId}

        Thank you for choosing CultureCart!

        Best regards,
        CultureCart Team
    """)
    return Email(order.buyerEmail or "", f"Order Shipped - {order.orderNumber}", text)


def delivery_notification(order: OrderDocument) -> Email:
    text = _letter(f"""
        Dear {order.buyerName},

        Your order has been successfully delivered!

        Order Details:
        - Order Number: {order.orderNumber}
        - Delivered On: {_date(order.deliveredAt, "Today")}

        We hope you love your authentic Indian crafts!

        Please leave a review to help other customers and support our artisans.

        Rate your purchase: {SITE_URL}/review/{order.orderId}

        Thank you for being part of the CultureCart community!

        Best regards,
        CultureCart Team
    """)
    return Email(order.buyerEmail or "", f"Order Delivered - {order.orderNumber}", text)


def artisan_delivery_notification(order: OrderDocument, artisan: ArtisanDocument) -> Email:
    text = _letter(f"""
        Dear {artisan.name},

        Your product has been successfully delivered to the customer!

        Order Details:
        - Order Number: {order.orderNumber}
        - Customer: {order.buyerName}
        - Amount: {_money(order.totalAmount)}

        Payment will be processed to your account within 3-5 business days.

        Keep creating amazing crafts!

        Best regards,
        CultureCart Team
    """)
    return Email(artisan.email or "", f"Order Delivered - {order.orderNumber}", text)


def cancellation_notification(order: OrderDocument) -> Email:
    text = _letter(f"""
        Dear {order.buyerName},

        Your order has been cancelled.

        Order Details:
        - Order Number: {order.orderNumber}
        - Cancellation Reason: {order.notes or "Requested by customer"}

        If you have any questions, please contact our support team.

        We're sorry for any inconvenience caused.

        Best regards,
        CultureCart Team
    """)
    return Email(order.buyerEmail or "", f"Order Cancelled - {order.orderNumber}", text)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def _artisan_emails(store: MongoStore, order: OrderDocument) -> list[Email]:
    emails = []
    for artisan_id in order.artisan_ids():
        raw = store.get_document(ARTISANS_COLLECTION, artisan_id)
        if raw is None:
            logger.warning("[Notify] Artisan %s of order %s not found", artisan_id, order.orderId)
            continue
        artisan = parse_document(ArtisanDocument, ARTISANS_COLLECTION, raw)
        emails.append(artisan_delivery_notification(order, artisan))
    return emails


_BUYER_TEMPLATES: dict[str, Callable[[OrderDocument], Email]] = {
    "confirmed": order_confirmation,
    "shipped": shipping_notification,
    "delivered": delivery_notification,
    "cancelled": cancellation_notification,
}


def compose_emails(store: MongoStore, order: OrderDocument, status: str) -> list[Email]:
    """Return the emails to send for `status`. Unknown statuses send nothing."""
    template = _BUYER_TEMPLATES.get(status)
    if template is None:
        return []

    emails = [template(order)]
    if status == "delivered":
        emails.extend(_artisan_emails(store, order))
    return emails


def _send(store: MongoStore, mailer: Any, email: Email, now: datetime) -> None:
    mailer.send(email.to, email.subject, email.text)

    store.insert_document(
        EVENTS_COLLECTION,
        {
            "eventId": f"email_{uuid4().hex}",
            "eventType": EVENT_EMAIL_SENT,
            "userId": None,
            "metadata": {
                "type": "order_notification",
                "recipient": email.to,
                "subject": email.subject,
            },
            "timestamp": now,
        },
    )


def handle_order_notification(
    store: MongoStore,
    mailer: Any,
    request: OrderNotificationRequest,
    *,
    now: datetime | None = None,
) -> NotificationResult:
    """Send the notification emails for an order status change.

    Every recipient is logged in `notification_log` under
    `orderId:orderStatus:recipient` right after its email goes out, so a retry
    after a partial failure only sends to the recipients still owed an email.
    Emails with no recipient address are skipped and reported after the others
    have been sent.

    Raises:
        OrderNotFoundError: the order document does not exist.
        DataShapeError: the order (or an artisan) document is malformed.
        MissingRecipientError: a buyer or artisan has no email address.
        MailDeliveryError: an email could not be sent.
        StoreError: a store read or write failed.
    """
    now = now or datetime.now(timezone.utc)
    logger.info(
        "[Notify] Processing order notification: %s - Status: %s",
        request.orderId or request.documentId, request.orderStatus,
    )

    raw = store.get_document(ORDERS_COLLECTION, request.documentId)
    if raw is None:
        raise OrderNotFoundError(f"order document {request.documentId!r} not found")
    order = parse_document(OrderDocument, ORDERS_COLLECTION, raw)

    order_id = request.orderId or order.orderId or request.documentId
    result = NotificationResult(orderId=order_id, orderStatus=request.orderStatus)

    emails = compose_emails(store, order, request.orderStatus)
    if not emails:
        logger.info("[Notify] No notification needed for status: %s", request.orderStatus)

    unaddressed = [email.subject for email in emails if not email.to]
    already_sent = 0
    for email in emails:
        if not email.to:
            continue

        log_key = f"{order_id}:{request.orderStatus}:{email.to}"
        if store.get_document(NOTIFICATION_LOG_COLLECTION, log_key) is not None:
            logger.info("[Notify] Already notified %s; skipping", log_key)
            already_sent += 1
            continue

        _send(store, mailer, email, now)
        store.insert_once(
            NOTIFICATION_LOG_COLLECTION,
            {
                "_id": log_key,
                "orderId": order_id,
                "orderStatus": request.orderStatus,
                "recipient": email.to,
                "sentAt": now,
            },
        )
        result.emailsSent += 1

    store.update_document(ORDERS_COLLECTION, request.documentId, {"updatedAt": now})

    if unaddressed:
        raise MissingRecipientError(
            f"order {order_id}: no recipient address for {', '.join(map(repr, unaddressed))}"
        )

    result.duplicate = already_sent > 0 and result.emailsSent == 0
    logger.info("[Notify] Notification sent for order %s (%d email(s))", order_id, result.emailsSent)
    return result
