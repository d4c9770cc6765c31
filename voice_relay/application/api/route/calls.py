from fastapi import APIRouter, HTTPException, Request, Response
from typing import Optional
from twilio.twiml.voice_response import VoiceResponse, Connect
import structlog

from voice_relay.config import settings
from voice_relay.domain.errors import ConfigurationError, StateError
from voice_relay.domain.orchestration.core.call_orchestrator import CallOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()


def build_connect_twiml(agent_id: Optional[str] = None) -> str:
    """TwiML that hands the call to ConversationRelay on our WebSocket"""

    response = VoiceResponse()
    connect = Connect()
    relay = connect.conversation_relay(
        url=settings.websocket_url,
        welcome_greeting=settings.WELCOME_GREETING,
        tts_provider=settings.TTS_PROVIDER,
        voice=settings.TTS_VOICE,
    )
    if agent_id:
        relay.parameter(name="agentId", value=agent_id)
    response.append(connect)
    return str(response)


@router.api_route("/twiml", methods=["GET", "POST"])
async def twiml(agent_id: Optional[str] = None):
    """Voice webhook for the Twilio number"""
    return Response(content=build_connect_twiml(agent_id), media_type="text/xml")


@router.post("/calls/{call_sid}/end")
async def end_call(call_sid: str, request: Request):
    """Terminate a live call: closing message, node actions, hang up"""

    orchestrator: CallOrchestrator = request.app.state.orchestrator
    try:
        await orchestrator.end_call(call_sid)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StateError as e:
        raise HTTPException(status_code=409, detail=e.message)

    logger.info("Call ended on request", session_id=call_sid)
    return {"status": "ending", "call_sid": call_sid}
