"""
Unit tests for push notification delivery.
"""
import json
from typing import List

import httpx
import pytest

from tuition_payments.core.errors import NotifierFailure
from tuition_payments.integrations.notifier import HttpPushNotifier, LoggingNotifier

PAYLOAD = {
    "title": "Installment Received",
    "message": "Installment for January 2025 of Rp 200.000 succeeded.",
    "data": {"bill_id": 42, "amount_applied": 200000, "order_id": None},
}


@pytest.fixture
def push_settings(test_settings):
    return test_settings.model_copy(
        update={"push_endpoint_url": "https://push.example.com/send", "push_server_key": "push-key"}
    )


class TestHttpPushNotifier:
    """Test suite for HttpPushNotifier."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send(self, push_settings) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"success": 1})

        notifier = HttpPushNotifier(
            settings=push_settings,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        assert await notifier.send("device-token-account-7", PAYLOAD)
        await notifier.close()

        body = json.loads(requests[0].content)
        assert requests[0].headers["Authorization"] == "key=push-key"
        assert body["to"] == "device-token-account-7"
        assert body["notification"]["title"] == "Installment Received"
        assert body["data"] == {"bill_id": "42", "amount_applied": "200000", "order_id": ""}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_delivery(self, push_settings) -> None:
        notifier = HttpPushNotifier(
            settings=push_settings,
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(401))
            ),
        )
        assert not await notifier.send("device-token-account-7", PAYLOAD)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error(self, push_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        notifier = HttpPushNotifier(
            settings=push_settings,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(NotifierFailure, match="Push delivery failed"):
            await notifier.send("device-token-account-7", PAYLOAD)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_endpoint(self, test_settings) -> None:
        notifier = HttpPushNotifier(settings=test_settings)
        assert not await notifier.send("device-token-account-7", PAYLOAD)
        await notifier.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_logging_notifier(self) -> None:
        assert await LoggingNotifier().send("device-token-account-7", PAYLOAD)
