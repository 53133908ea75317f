"""
Telephony provider glue: REST client construction and callback response documents.
"""

import logging

from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse

from sms_forwarder.config import Settings
from sms_forwarder.errors import ConfigurationError

logger = logging.getLogger(__name__)

# MessagingResponse renders an empty document as <Response />; the provider
# contract for an SMS acknowledgment is the explicit open/close form.
EMPTY_ACKNOWLEDGMENT = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

FORWARDING_ANNOUNCEMENT = "Forwarding your call, please wait."
FAILURE_ANNOUNCEMENT = "The call could not be completed. Goodbye."
ANNOUNCEMENT_VOICE = "alice"


def build_twilio_client(settings: Settings) -> Client:
    """
    Create a REST client with whichever credential scheme is configured.

    Raises:
        ConfigurationError: if neither credential scheme is complete
    """
    scheme = settings.credential_scheme
    if scheme == "api_key":
        logger.info("Using Twilio API Key authentication")
        return Client(
            settings.TWILIO_API_KEY_SID,
            settings.TWILIO_API_KEY_SECRET,
            account_sid=settings.TWILIO_ACCOUNT_SID,
        )
    if scheme == "auth_token":
        logger.info("Using Twilio Account SID/Token authentication")
        return Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    raise ConfigurationError("Missing Twilio credentials")


def forwarding_document(forward_to: str, dial_timeout: int = 30) -> str:
    """
    Call-control document: announce, dial the forwarding number while
    recording from answer, and announce failure if the dial does not connect.
    """
    response = VoiceResponse()
    response.say(FORWARDING_ANNOUNCEMENT, voice=ANNOUNCEMENT_VOICE)
    dial = response.dial(timeout=dial_timeout, record="record-from-answer")
    dial.number(forward_to)
    response.say(FAILURE_ANNOUNCEMENT, voice=ANNOUNCEMENT_VOICE)
    return str(response)
