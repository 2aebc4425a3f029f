"""Tests for document and request models."""

import json

import pytest
from pydantic import ValidationError

from culturecart_functions.errors import DataShapeError
from culturecart_functions.models import (
    AggregationRequest,
    OrderDocument,
    OrderNotificationRequest,
    ProductDocument,
    parse_document,
)


def test_order_items_accept_json_string():
    items = [
        {"productId": "P1", "artisanId": "A1", "title": "Madhubani panel", "price": 1200},
        {"productId": "P2", "artisanId": "A2", "title": "Dokra horse", "price": 800},
        {"productId": "P3", "artisanId": "A1", "title": "Pattachitra", "price": 950},
    ]
    order = OrderDocument.model_validate({
        "_id": "o1",
        "orderStatus": "delivered",
        "totalAmount": 2950,
        "items": json.dumps(items),
        "shippingAddress": json.dumps({"street": "12 MG Road", "city": "Pune", "pincode": "411001"}),
    })

    assert order.artisan_ids() == ["A1", "A2"]
    assert order.items[1].title == "Dokra horse"
    assert order.shippingAddress.city == "Pune"


def test_parse_document_reports_field_problems():
    with pytest.raises(DataShapeError) as exc_info:
        parse_document(ProductDocument, "products", {"_id": "p1", "productId": "P1", "views": 2.5})

    assert exc_info.value.document_id == "p1"
    assert "views" in str(exc_info.value)


def test_missing_counters_default_to_zero():
    product = parse_document(ProductDocument, "products", {"_id": "p1", "productId": "P1"})

    assert (product.views, product.likes, product.salesCount) == (0, 0, 0)


def test_notification_request_accepts_document_payload():
    req = OrderNotificationRequest.model_validate(
        {"$id": "doc-1", "orderId": "ORD-1", "orderStatus": "shipped"}
    )

    assert req.documentId == "doc-1"


def test_aggregation_request_needs_both_bounds():
    with pytest.raises(ValidationError):
        AggregationRequest.model_validate({"windowStart": "2024-01-01T00:00:00Z"})

    assert AggregationRequest().windowStart is None
