"""
Push notification delivery.

Delivery is best effort: send() reports success as a bool and raises
NotifierFailure on transport errors. Callers never let either outcome
affect the payment that triggered the notification.
"""
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

from tuition_payments.config import Settings, get_settings
from tuition_payments.core.errors import NotifierFailure

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    """Push channel for user-facing notifications."""

    async def send(self, device_token: str, payload: Dict[str, Any]) -> bool:
        ...


def _stringify(data: Dict[str, Any]) -> Dict[str, str]:
    # Push data payloads only carry string values
    return {k: "" if v is None else str(v) for k, v in data.items()}


class HttpPushNotifier:
    """
    Sends push messages to an HTTP push gateway.

    The request body follows the legacy FCM HTTP format:
    {"to": token, "notification": {...}, "data": {...}}.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = http_client or httpx.AsyncClient(timeout=self.settings.notifier_timeout_seconds)

    async def send(self, device_token: str, payload: Dict[str, Any]) -> bool:
        """
        Deliver one push message.

        Args:
            device_token: Target device token
            payload: {"title", "message", "data"}

        Returns:
            bool: True when the push gateway accepted the message

        Raises:
            NotifierFailure: If the push gateway cannot be reached
        """
        if not self.settings.push_endpoint_url:
            logger.debug("push_endpoint_not_configured")
            return False

        body = {
            "to": device_token,
            "priority": "high",
            "notification": {
                "title": payload.get("title", ""),
                "body": payload.get("message", ""),
            },
            "data": _stringify(payload.get("data", {})),
        }
        try:
            response = await self._client.post(
                self.settings.push_endpoint_url,
                json=body,
                headers={"Authorization": f"key={self.settings.push_server_key}"},
            )
        except httpx.HTTPError as e:
            raise NotifierFailure(f"Push delivery failed: {str(e)}") from e

        if response.status_code >= 400:
            logger.warning(
                "push_delivery_rejected",
                status_code=response.status_code,
                token_prefix=device_token[:20],
            )
            return False

        logger.info("push_delivered", token_prefix=device_token[:20])
        return True

    async def close(self) -> None:
        await self._client.aclose()


class LoggingNotifier:
    """Notifier that only logs; used when no push endpoint is configured."""

    async def send(self, device_token: str, payload: Dict[str, Any]) -> bool:
        logger.info(
            "push_notification_logged",
            token_prefix=device_token[:20],
            title=payload.get("title"),
        )
        return True
