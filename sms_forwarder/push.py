"""
Push notification delivery to every registered device.

All tokens are sent in one batched request. The service answers with one
ticket per notification, in request order; tokens whose ticket says the
device is no longer registered are pruned from the registry once the whole
response has been read.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from sms_forwarder.errors import TransportError
from sms_forwarder.metrics import record_push
from sms_forwarder.schemas import PushMessage, PushResponse, PushTicket
from sms_forwarder.storage import DeviceTokenRegistry
from sms_forwarder.utils import truncate_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchReport:
    """Outcome of one dispatch call."""
    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    pruned: tuple[str, ...] = ()
    error: Optional[str] = None


def tokens_to_prune(tokens: list[str], tickets: list[PushTicket]) -> list[str]:
    """
    Pair tickets with tokens by position and collect the dead ones.

    Only positions present in both lists are considered. The input lists are
    never modified, so every ticket is matched against the token it was
    issued for.
    """
    doomed = []
    for token, ticket in zip(tokens, tickets):
        if ticket.device_not_registered:
            doomed.append(token)
    return doomed


class PushDispatcher:
    def __init__(
        self,
        registry: DeviceTokenRegistry,
        http_client: httpx.AsyncClient,
        push_url: str,
    ):
        self.registry = registry
        self.http_client = http_client
        self.push_url = push_url

    async def _send(self, messages: list[PushMessage]) -> list[PushTicket]:
        """
        Raises:
            TransportError: on connection failure, non-2xx status or unreadable body
        """
        try:
            response = await self.http_client.post(
                self.push_url,
                json=[m.model_dump() for m in messages],
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            return PushResponse.model_validate(response.json()).data
        except httpx.HTTPStatusError as e:
            raise TransportError(f"Push service returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Push service request failed: {e!r}") from e
        except (ValueError, ValidationError) as e:
            raise TransportError(f"Push service returned an unreadable body: {e}") from e

    async def dispatch(self, title: str, body: str, data: Optional[dict[str, Any]] = None) -> DispatchReport:
        """
        Send one notification to every registered device.

        Never raises: transport failures are logged and reported in the
        returned DispatchReport.
        """
        tokens = self.registry.snapshot()
        if not tokens:
            logger.info("No push tokens registered, skipping notification")
            record_push("skipped")
            return DispatchReport()

        messages = [
            PushMessage(to=token, title=title, body=body, data=data or {})
            for token in tokens
        ]

        try:
            tickets = await self._send(messages)
        except TransportError as e:
            logger.error(f"Error sending push notification: {e}")
            record_push("failed", len(tokens))
            return DispatchReport(attempted=len(tokens), failed=len(tokens), error=str(e))

        logger.info(f"Push notification sent to {len(tokens)} devices: {title}")

        if len(tickets) != len(tokens):
            logger.warning(
                f"Push service returned {len(tickets)} results for {len(tokens)} notifications"
            )

        for token, ticket in zip(tokens, tickets):
            if ticket.is_error:
                reason = ticket.details.error if ticket.details else None
                logger.warning(
                    f"Push delivery failed for {truncate_token(token)}: {reason or ticket.message}"
                )

        failed = sum(1 for t in tickets[:len(tokens)] if t.is_error)
        delivered = sum(1 for t in tickets[:len(tokens)] if not t.is_error)

        doomed = tokens_to_prune(tokens, tickets)
        if doomed:
            for token in doomed:
                logger.info(f"Removing invalid push token: {truncate_token(token)}")
            await self.registry.remove_many(doomed)

        record_push("sent", delivered)
        record_push("failed", failed)
        record_push("pruned", len(doomed))

        return DispatchReport(
            attempted=len(tokens),
            delivered=delivered,
            failed=failed,
            pruned=tuple(doomed),
        )
