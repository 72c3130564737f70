"""
Inbound frame dispatch.

Decodes raw gateway messages and routes each typed frame to the handler
registered for its `type`. Nothing raised while parsing or handling a frame
escapes `dispatch()`: one bad frame must never end the call.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from src.relay.protocol import FrameError, FrameType, InboundFrame, parse_frame

logger = structlog.get_logger(__name__)

FrameHandler = Callable[[InboundFrame], Awaitable[None]]


class MessageDispatcher:
    """Routes parsed ConversationRelay frames to typed handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, FrameHandler] = {}
        self._fallback: Optional[FrameHandler] = None

    def register(self, frame_type: FrameType | str, handler: FrameHandler) -> None:
        """Bind `handler` to a frame type, replacing any previous binding."""
        key = frame_type.value if isinstance(frame_type, FrameType) else str(frame_type)
        self._handlers[key] = handler

    def set_fallback(self, handler: FrameHandler) -> None:
        """Handler for frames whose type has no registered handler."""
        self._fallback = handler

    def handler_for(self, frame_type: str) -> Optional[FrameHandler]:
        return self._handlers.get(frame_type, self._fallback)

    async def dispatch(self, raw_message: Any) -> Optional[InboundFrame]:
        """
        Parse and route one raw message.

        Returns:
            The parsed frame, or None when the message was malformed and dropped
        """
        try:
            frame = parse_frame(raw_message)
        except FrameError as e:
            logger.warning("Dropping malformed frame", error=str(e))
            return None

        handler = self.handler_for(frame.type)
        if handler is None:
            logger.info("No handler for frame", frame_type=frame.type)
            return frame

        try:
            await handler(frame)
        except Exception:
            logger.exception("Frame handler failed", frame_type=frame.type)

        return frame
