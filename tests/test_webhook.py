"""
Tests for the single-attempt webhook dispatcher.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from TelegramRelay.collection.types import EventKind, RelayEvent
from TelegramRelay.delivery.webhook import WebhookDispatcher, build_payload
from shared.exceptions import DeliveryError

URL = "https://hooks.example.test/relay"


def _response(status_code: int) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    return resp


def test_build_payload_uses_wire_names():
    event = RelayEvent(kind=EventKind.OLD, message_id=123, text="x")
    assert build_payload(event) == {"text": "x", "type": "oldMessage", "external_id": "123"}


def test_edit_is_posted_as_json():
    dispatcher = WebhookDispatcher(URL, timeout_seconds=5)
    event = RelayEvent(kind=EventKind.EDIT, message_id=7, text="Hello")
    resp = _response(200)

    with patch("TelegramRelay.delivery.webhook.requests.post", return_value=resp) as post:
        assert dispatcher.deliver(event) == 200

    post.assert_called_once_with(
        URL,
        json={"text": "Hello", "type": "editMessage", "external_id": "7"},
        timeout=5.0,
    )
    resp.close.assert_called_once()


@pytest.mark.parametrize("status", [201, 204, 400, 404, 429, 500, 503])
def test_non_200_status_is_a_delivery_error(status):
    dispatcher = WebhookDispatcher(URL)
    event = RelayEvent(kind=EventKind.NEW, message_id=1, text="a")

    with patch("TelegramRelay.delivery.webhook.requests.post", return_value=_response(status)):
        with pytest.raises(DeliveryError) as exc_info:
            dispatcher.deliver(event)

    assert exc_info.value.status_code == status
    assert str(status) in str(exc_info.value)


def test_network_error_is_a_retryable_delivery_error():
    dispatcher = WebhookDispatcher(URL)
    event = RelayEvent(kind=EventKind.NEW, message_id=1, text="a")

    with patch(
        "TelegramRelay.delivery.webhook.requests.post",
        side_effect=requests.ConnectionError("refused"),
    ):
        with pytest.raises(DeliveryError) as exc_info:
            dispatcher.deliver(event)

    assert exc_info.value.status_code is None
    assert exc_info.value.retryable


def test_retryable_statuses():
    assert DeliveryError("x", status_code=500).retryable
    assert DeliveryError("x", status_code=429).retryable
    assert not DeliveryError("x", status_code=400).retryable
    assert not DeliveryError("x", status_code=201).retryable


def test_empty_url_is_rejected():
    with pytest.raises(ValueError):
        WebhookDispatcher("  ")
