"""Tests for the HTTP mail sender."""

import json

import httpx
import pytest

from culturecart_functions.errors import MailDeliveryError
from culturecart_functions.mailer import HttpMailer


def test_posts_email_with_bearer_token():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(202, json={"id": "msg-1"})

    mailer = HttpMailer(
        "https://mail.example.com/send",
        api_key="secret",
        sender="CultureCart <orders@culturecart.in>",
        transport=httpx.MockTransport(handler),
    )
    mailer.send("asha@example.com", "Order Shipped - CC-1", "Hello")

    assert len(requests) == 1
    assert requests[0].headers["Authorization"] == "Bearer secret"
    assert json.loads(requests[0].content) == {
        "from": "CultureCart <orders@culturecart.in>",
        "to": "asha@example.com",
        "subject": "Order Shipped - CC-1",
        "text": "Hello",
    }


def test_error_status_raises():
    mailer = HttpMailer(
        "https://mail.example.com/send",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )

    with pytest.raises(MailDeliveryError):
        mailer.send("asha@example.com", "subject", "text")
