"""
Twilio ConversationRelay WebSocket Protocol.

The gateway transcribes caller speech and sends JSON frames keyed by `type`:
- setup: Session started, contains sessionId, callSid, from/to and customParameters
- prompt: Caller utterance (voicePrompt)
- interrupt: Caller spoke over the assistant (utteranceUntilInterrupt)
- dtmf: Keypad digit pressed
- info: Periodic gateway telemetry
- error: Gateway-side error report

Outbound frames:
- text: Token to speak; `last` marks the end of a spoken turn
- end: Ends the ConversationRelay session, optionally carrying handoffData
"""

import msgspec
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class FrameType(str, Enum):
    """ConversationRelay inbound frame types."""
    SETUP = "setup"
    PROMPT = "prompt"
    INTERRUPT = "interrupt"
    DTMF = "dtmf"
    INFO = "info"
    ERROR = "error"


class FrameError(ValueError):
    """Raised when an inbound frame cannot be decoded into a typed frame."""
    pass


@dataclass
class SetupFrame:
    """Parsed setup frame."""
    session_id: str
    call_sid: str
    from_number: str
    to_number: str
    direction: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)
    type: str = FrameType.SETUP.value

    @property
    def assistant_name(self) -> str:
        """Assistant requested through the TwiML <Parameter name="assistant">."""
        value = self.custom_parameters.get("assistant")
        return str(value).strip() if value else ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "SetupFrame":
        """Parse from gateway message."""
        params = message.get("customParameters") or {}
        return cls(
            session_id=message.get("sessionId", "") or "",
            call_sid=message.get("callSid", "") or "",
            from_number=message.get("from", "") or "",
            to_number=message.get("to", "") or "",
            direction=message.get("direction", "") or "",
            custom_parameters=params if isinstance(params, dict) else {},
        )


@dataclass
class PromptFrame:
    """Parsed prompt frame (caller utterance)."""
    voice_prompt: str
    lang: str = ""
    last: bool = True
    type: str = FrameType.PROMPT.value

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "PromptFrame":
        """Parse from gateway message."""
        return cls(
            voice_prompt=str(message.get("voicePrompt") or ""),
            lang=message.get("lang", "") or "",
            last=bool(message.get("last", True)),
        )


@dataclass
class InterruptFrame:
    """Parsed interrupt frame."""
    utterance_until_interrupt: str
    duration_until_interrupt_ms: int = 0
    type: str = FrameType.INTERRUPT.value

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "InterruptFrame":
        """Parse from gateway message."""
        try:
            duration = int(message.get("durationUntilInterruptMs") or 0)
        except (TypeError, ValueError):
            duration = 0
        return cls(
            utterance_until_interrupt=str(message.get("utteranceUntilInterrupt") or ""),
            duration_until_interrupt_ms=duration,
        )


@dataclass
class DTMFFrame:
    """Parsed DTMF frame."""
    digit: str
    type: str = FrameType.DTMF.value

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "DTMFFrame":
        """Parse from gateway message."""
        return cls(digit=str(message.get("digit") or ""))


@dataclass
class InfoFrame:
    """Gateway telemetry frame; kept as the raw payload."""
    payload: Dict[str, Any]
    type: str = FrameType.INFO.value


@dataclass
class ErrorFrame:
    """Gateway-reported error."""
    description: str
    type: str = FrameType.ERROR.value

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "ErrorFrame":
        return cls(description=str(message.get("description") or ""))


@dataclass
class UnknownFrame:
    """Frame with a type this server does not handle."""
    type: str
    payload: Dict[str, Any]


InboundFrame = Any  # one of the frame dataclasses above


def parse_frame(raw_message: Any) -> InboundFrame:
    """
    Parse a raw ConversationRelay WebSocket message.

    Args:
        raw_message: Raw JSON string (or bytes) from the gateway

    Returns:
        Typed frame; UnknownFrame for unrecognized types

    Raises:
        FrameError: If the message is not a JSON object with a string `type`
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except (msgspec.DecodeError, TypeError, UnicodeError) as e:
        raise FrameError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise FrameError(f"Expected a JSON object, got {type(message).__name__}")

    type_str = message.get("type")
    if not isinstance(type_str, str) or not type_str:
        raise FrameError("Missing frame type")

    try:
        frame_type = FrameType(type_str)
    except ValueError:
        return UnknownFrame(type=type_str, payload=message)

    if frame_type == FrameType.SETUP:
        return SetupFrame.from_message(message)
    elif frame_type == FrameType.PROMPT:
        return PromptFrame.from_message(message)
    elif frame_type == FrameType.INTERRUPT:
        return InterruptFrame.from_message(message)
    elif frame_type == FrameType.DTMF:
        return DTMFFrame.from_message(message)
    elif frame_type == FrameType.ERROR:
        return ErrorFrame.from_message(message)
    else:
        return InfoFrame(payload=message)


def create_text_message(token: str, last: bool) -> str:
    """
    Create a ConversationRelay text message.

    Args:
        token: Text for the gateway to speak
        last: True when this token ends the spoken turn

    Returns:
        JSON string to send to the gateway
    """
    message = {
        "type": "text",
        "token": token,
        "last": last,
    }

    return encoder.encode(message).decode("utf-8")


def create_end_message(handoff_data: Optional[Dict[str, Any]] = None) -> str:
    """
    Create a ConversationRelay end message.

    The gateway ends the session and posts `handoffData` to the TwiML action URL.
    """
    message: Dict[str, Any] = {"type": "end"}
    if handoff_data is not None:
        message["handoffData"] = encoder.encode(handoff_data).decode("utf-8")

    return encoder.encode(message).decode("utf-8")
