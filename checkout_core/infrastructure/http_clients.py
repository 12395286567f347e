import httpx
import logging
from typing import Optional
import asyncio

from checkout_core.application.interfaces import NotificationsService

logger = logging.getLogger(__name__)


class HTTPNotificationsClient(NotificationsService):
    def __init__(
        self,
        base_url: str,
        api_token: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._api_token = api_token
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._transport = transport

    async def send(self, recipient: str, message: str, reference_id: str, idempotency_key: str) -> bool:
        """Send a notification, retrying on transport errors and non-201 responses"""
        for attempt in range(self._max_retries):
            try:
                async with httpx.AsyncClient(transport=self._transport) as client:
                    response = await client.post(
                        f"{self._base_url}/api/notifications",
                        json={
                            "recipient": recipient,
                            "message": message,
                            "reference_id": reference_id,
                            "idempotency_key": idempotency_key
                        },
                        headers={"X-API-Key": self._api_token},
                        timeout=10.0
                    )

                    if response.status_code == 201:
                        logger.info(f"Notification {idempotency_key} sent (attempt {attempt + 1})")
                        return True
                    else:
                        logger.warning(f"Notification service returned {response.status_code}")

            except httpx.HTTPError as e:
                logger.warning(f"Notification send failed (attempt {attempt + 1}/{self._max_retries}): {e}")

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay)

        logger.error(f"Notification {idempotency_key} not delivered after {self._max_retries} attempts")
        return False
