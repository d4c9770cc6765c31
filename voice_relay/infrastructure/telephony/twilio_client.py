from typing import Dict, Tuple, Optional
import asyncio
from twilio.rest import Client
import structlog

from voice_relay.domain.errors import ConfigurationError, UpstreamError
from voice_relay.domain.models.session import TelephonyCredentials

logger = structlog.get_logger(__name__)


class TwilioTelephonyClient:
    """Call control over the Twilio REST API"""

    def __init__(self, default_credentials: Optional[TelephonyCredentials] = None):
        self.default_credentials = default_credentials or TelephonyCredentials()
        self._clients: Dict[Tuple[str, str], Client] = {}

    def _get_client(self, credentials: TelephonyCredentials) -> Client:
        account_sid = credentials.account_sid or self.default_credentials.account_sid
        auth_token = credentials.auth_token or self.default_credentials.auth_token
        if not account_sid or not auth_token:
            raise ConfigurationError("Twilio credentials are not configured")

        key = (account_sid, auth_token)
        if key not in self._clients:
            self._clients[key] = Client(account_sid, auth_token)
        return self._clients[key]

    async def end_call(self, call_sid: str, credentials: TelephonyCredentials) -> None:
        """Mark an in-progress call completed"""
        client = self._get_client(credentials)
        try:
            await asyncio.to_thread(lambda: client.calls(call_sid).update(status="completed"))
        except Exception as e:
            raise UpstreamError(f"Failed to end call {call_sid}: {e}", service="telephony",
                                session_id=call_sid) from e
        logger.info("Call completed via Twilio", call_sid=call_sid)
