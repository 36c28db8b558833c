"""
Twilio Voice Service - outbound calls and credential checks with per-tenant credentials
"""
import logging
from typing import Optional
from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from core.utils import normalize_phone_e164

logger = logging.getLogger(__name__)

# Empty TwiML; the call is bridged by the client once answered
ECHO_TWIML_URL = "https://twimlets.com/echo?Twiml=%3CResponse%3E%3C%2FResponse%3E"
STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TwilioService:
    def _client(self, account_sid: str, auth_token: str) -> Client:
        return Client(account_sid, auth_token)

    def validate_credentials(self, account_sid: str, auth_token: str) -> dict:
        """
        Check an account SID / auth token pair against the Twilio API.

        Returns:
            dict with valid flag, friendly account name and error if any
        """
        try:
            account = self._client(account_sid, auth_token).api.accounts(account_sid).fetch()
            return {"valid": True, "friendly_name": account.friendly_name, "error": None}
        except TwilioRestException as e:
            logger.warning(f"Twilio credential validation failed for {account_sid}: {e.msg}")
            return {"valid": False, "friendly_name": None, "error": "Invalid Twilio credentials"}

    def place_call(
        self,
        account_sid: str,
        auth_token: str,
        to_phone: str,
        from_phone: str,
        status_callback: Optional[str] = None,
        twiml_url: str = ECHO_TWIML_URL,
    ) -> dict:
        """
        Start an outbound call.

        Raises:
            TwilioRestException: propagated so the route can map auth failures (401)
        """
        params = {
            "to": normalize_phone_e164(to_phone),
            "from_": normalize_phone_e164(from_phone),
            "url": twiml_url,
            "record": False,
            "timeout": 60,
        }
        if status_callback:
            params["status_callback"] = status_callback
            params["status_callback_method"] = "POST"
            params["status_callback_event"] = STATUS_CALLBACK_EVENTS

        call = self._client(account_sid, auth_token).calls.create(**params)
        logger.info(f"Outbound call created: {call.sid} to {params['to']}")
        return {
            "sid": call.sid,
            "to": call.to,
            "from": call.from_,
            "status": call.status,
            "api_version": call.api_version,
        }


# Singleton instance
twilio_service = TwilioService()


def get_twilio_service() -> TwilioService:
    return twilio_service
