"""
Optional dual-channel call recording.

When RECORDING_ENABLED is set, the caller first hears a recording notice,
then Twilio starts a dual-channel recording of the call.
"""

import asyncio
from typing import Optional

import structlog
from twilio.rest import Client as TwilioClient

from src.callflow.config import Config, get_config

logger = structlog.get_logger(__name__)

RECORDING_NOTICE = "This call will be recorded."


async def start_recording(call_sid: str, config: Optional[Config] = None) -> Optional[str]:
    """Start recording `call_sid`; returns the recording sid, or None if disabled or failed."""
    config = config or get_config()
    if not config.recording_enabled or not call_sid:
        return None

    client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)
    try:
        recording = await asyncio.to_thread(
            lambda: client.calls(call_sid).recordings.create(recording_channels="dual")
        )
    except Exception as e:
        logger.error("Failed to start call recording", call_sid=call_sid, error=str(e))
        return None

    logger.info("Recording created", call_sid=call_sid, recording_sid=recording.sid)
    return recording.sid
