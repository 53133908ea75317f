import logging
from typing import Any, Union

import httpx

from sms_forwarder.metrics import record_relay
from sms_forwarder.schemas import WebhookEvent

logger = logging.getLogger(__name__)


class WebhookRelay:
    """
    Forwards event payloads to the operator's webhook URL.

    Each relay is a single awaited POST. Failures are logged and counted,
    never retried and never raised.
    """

    def __init__(self, http_client: httpx.AsyncClient, webhook_url: str):
        self.http_client = http_client
        self.webhook_url = webhook_url

    async def relay(self, event: Union[WebhookEvent, dict[str, Any]]) -> bool:
        """
        Returns:
            True if the webhook target answered with a 2xx status
        """
        payload = event.to_payload() if isinstance(event, WebhookEvent) else dict(event)
        event_type = str(payload.get("type", "unknown"))

        try:
            response = await self.http_client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Webhook for {event_type} rejected with status {e.response.status_code}")
            record_relay(event_type, "failed")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Webhook for {event_type} failed: {e!r}")
            record_relay(event_type, "failed")
            return False

        logger.info(f"{event_type} webhook sent successfully")
        record_relay(event_type, "delivered")
        return True
