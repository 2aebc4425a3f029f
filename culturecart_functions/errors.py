"""
Exceptions raised by the aggregation and notification functions.
"""

from __future__ import annotations


class FunctionsError(Exception):
    """Base exception for culturecart-functions"""


class AggregationError(FunctionsError):
    """Base exception for analytics aggregation failures"""


class InvalidWindowError(AggregationError):
    """Raised when an aggregation window has bad bounds"""


class StoreError(AggregationError):
    """Raised when a document store read or write fails.

    Wraps the driver exception so callers never have to import pymongo to
    handle it. ``retryable`` is True for connection and timeout failures.
    """

    def __init__(self, operation: str, collection: str, reason: str, retryable: bool = False):
        super().__init__(f"{operation} on '{collection}' failed: {reason}")
        self.operation = operation
        self.collection = collection
        self.retryable = retryable


class DataShapeError(AggregationError):
    """Raised when a stored document does not have the expected fields/types"""

    def __init__(self, collection: str, document_id, reason: str):
        super().__init__(f"malformed document {document_id!r} in '{collection}': {reason}")
        self.collection = collection
        self.document_id = document_id


class NotificationError(FunctionsError):
    """Base exception for order notification failures"""


class OrderNotFoundError(NotificationError):
    """Raised when the order referenced by a notification does not exist"""


class MailDeliveryError(NotificationError):
    """Raised when the mail API rejects or fails to accept an email"""


class MissingRecipientError(MailDeliveryError):
    """Raised when a buyer or artisan has no email address on file; retrying cannot help"""
