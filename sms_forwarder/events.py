"""
Event routing for telephony callbacks.

Each handler turns one callback into its fan-out work and returns the exact
response body the provider expects. Push and webhook delivery swallow their
own failures, so nothing downstream of the store can change that body.
"""

import asyncio
import logging

from sms_forwarder.push import PushDispatcher
from sms_forwarder.relay import WebhookRelay
from sms_forwarder.schemas import (
    CallEvent,
    CallStatusCallback,
    CallStatusEvent,
    MessageRecord,
    SmsCallback,
    SmsEvent,
    VoiceCallback,
)
from sms_forwarder.storage import MessageStore
from sms_forwarder.telephony import EMPTY_ACKNOWLEDGMENT, forwarding_document
from sms_forwarder.utils import format_phone_number, utc_timestamp

logger = logging.getLogger(__name__)


class EventRouter:
    def __init__(
        self,
        store: MessageStore,
        dispatcher: PushDispatcher,
        relay: WebhookRelay,
        forward_to: str,
        dial_timeout: int = 30,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.relay = relay
        self.forward_to = forward_to
        self.dial_timeout = dial_timeout

    async def handle_sms(self, callback: SmsCallback) -> str:
        """
        Store the message, then notify devices and relay the webhook concurrently.

        Returns:
            Empty acknowledgment document
        """
        logger.info(
            "SMS received",
            extra={"from": callback.from_number, "to": callback.to, "sid": callback.message_sid},
        )

        record = MessageRecord(
            id=callback.message_sid,
            from_number=callback.from_number,
            to=callback.to,
            body=callback.body,
            timestamp=utc_timestamp(),
        )
        stored = await self.store.append(record)

        event = SmsEvent(
            from_number=stored.from_number,
            to=stored.to,
            body=stored.body,
            message_sid=stored.id,
            num_media=callback.num_media,
            timestamp=utc_timestamp(),
            forwarded_to=self.forward_to,
        )

        results = await asyncio.gather(
            self.dispatcher.dispatch(
                f"SMS from {format_phone_number(stored.from_number)}",
                stored.body,
                {"messageId": stored.id, "from": stored.from_number, "type": "sms"},
            ),
            self.relay.relay(event),
            return_exceptions=True,
        )
        for sink, result in zip(("push", "webhook"), results):
            if isinstance(result, Exception):
                logger.error(f"Unexpected {sink} failure for {stored.id}: {result!r}")

        return EMPTY_ACKNOWLEDGMENT

    async def handle_voice(self, callback: VoiceCallback) -> str:
        """
        Relay the incoming call, then hand back the forwarding document.
        """
        logger.info(
            "Call received",
            extra={
                "from": callback.from_number,
                "to": callback.to,
                "sid": callback.call_sid,
                "call_status": callback.call_status,
                "direction": callback.direction,
            },
        )

        await self.relay.relay(
            CallEvent(
                from_number=callback.from_number,
                to=callback.to,
                call_sid=callback.call_sid,
                call_status=callback.call_status,
                direction=callback.direction,
                timestamp=utc_timestamp(),
                forwarded_to=self.forward_to,
            )
        )

        return forwarding_document(self.forward_to, self.dial_timeout)

    async def handle_call_status(self, callback: CallStatusCallback) -> str:
        logger.info(
            "Call status update",
            extra={
                "sid": callback.call_sid,
                "call_status": callback.call_status,
                "call_duration": callback.call_duration,
            },
        )

        await self.relay.relay(
            CallStatusEvent(
                call_sid=callback.call_sid,
                call_status=callback.call_status,
                from_number=callback.from_number,
                to=callback.to,
                call_duration=callback.call_duration,
                recording_url=callback.recording_url,
                timestamp=utc_timestamp(),
            )
        )

        return "OK"
