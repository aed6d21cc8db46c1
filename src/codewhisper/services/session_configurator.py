"""Builds the realtime session configuration payload."""

from typing import List

from codewhisper.lib.config import CodeWhisperConfig
from codewhisper.models.realtime_config import (
    InputAudioTranscription,
    RealtimeSessionConfiguration,
    ToolDescriptor,
    TurnDetection,
)


def build_session_configuration(config: CodeWhisperConfig, tools: List[ToolDescriptor]) -> RealtimeSessionConfiguration:
    """Assemble the session.update payload from a configuration snapshot.

    Args:
        config: Configuration snapshot of the session being started
        tools: Wire descriptors, local function tools first

    Returns:
        RealtimeSessionConfiguration ready to send
    """
    realtime = config.realtime
    return RealtimeSessionConfiguration(
        input_audio_transcription=InputAudioTranscription(model=realtime.transcription_model),
        instructions=realtime.instructions,
        max_response_output_tokens=realtime.max_response_output_tokens,
        temperature=realtime.temperature,
        tools=list(tools),
        turn_detection=TurnDetection(eagerness=realtime.turn_detection_eagerness),
        voice=realtime.voice,
    )
