"""
Per-call session orchestration.

A SessionController owns one ConversationRelay connection from open to close:
it classifies inbound frames, drives the Uninitialized -> Active -> Closed state
machine, relays model output to the gateway, routes tool calls through the
bridge and reacts to caller silence.

All state changes happen on the event loop that runs the controller. Model
generations, tool calls and the silence timer are separate tasks that call back
into the controller; every one of them is cancelled by `close()`.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.relay.assistants import Assistant, AssistantService, get_assistant_service
from src.relay.config import Config, get_config
from src.relay.dispatcher import MessageDispatcher
from src.relay.llm import ModelStream, build_system_prompt
from src.relay.protocol import (
    DTMFFrame,
    ErrorFrame,
    FrameType,
    InfoFrame,
    InterruptFrame,
    PromptFrame,
    SetupFrame,
    UnknownFrame,
    create_end_message,
    create_text_message,
)
from src.relay.silence import SilenceMonitor
from src.relay.tools.bridge import ToolDispatchBridge
from src.relay.tools.executor import ToolCall, ToolContext, ToolExecutor
from src.relay.tools.manifest import tools_for

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]
CloseTransport = Callable[[], Awaitable[None]]
ModelStreamFactory = Callable[..., Any]
ToolExecutorFactory = Callable[..., Any]


class SessionState(str, Enum):
    """Lifecycle of one gateway connection."""
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Session:
    """State for one call."""
    id: str = ""
    state: SessionState = SessionState.UNINITIALIZED
    interaction_count: int = 0
    assistant: Optional[Assistant] = None
    call_sid: str = ""
    caller: str = ""
    callee: str = ""
    last_interrupt: Optional[str] = None
    setup_rejected: bool = False
    close_reason: str = ""
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at or time.time()) - self.started_at


@dataclass
class SessionRuntime:
    """Collaborators that exist only while the session is Active."""
    model_stream: Any
    tool_executor: Any
    bridge: ToolDispatchBridge
    silence: SilenceMonitor
    tool_context: ToolContext


def create_model_stream(call_sid: str, assistant: Assistant, *, config: Config) -> ModelStream:
    return ModelStream(call_sid, assistant, config=config, tools=tools_for(assistant.tools))


def create_tool_executor(assistant: Assistant, *, config: Config) -> ToolExecutor:
    return ToolExecutor(config, allowed_tools=assistant.tools)


class SessionController:
    """State machine for one ConversationRelay session."""

    def __init__(
        self,
        send_message: SendMessage,
        *,
        assistant_service: Optional[AssistantService] = None,
        config: Optional[Config] = None,
        close_transport: Optional[CloseTransport] = None,
        model_stream_factory: ModelStreamFactory = create_model_stream,
        tool_executor_factory: ToolExecutorFactory = create_tool_executor,
    ):
        self.config = config or get_config()
        self._send_message = send_message
        self._close_transport = close_transport
        self._assistants = assistant_service or get_assistant_service()
        self._model_stream_factory = model_stream_factory
        self._tool_executor_factory = tool_executor_factory

        self.session = Session()
        self._runtime: Optional[SessionRuntime] = None

        self._dispatcher = MessageDispatcher()
        self._dispatcher.register(FrameType.SETUP, self._handle_setup)
        self._dispatcher.register(FrameType.PROMPT, self._handle_prompt)
        self._dispatcher.register(FrameType.INFO, self._handle_info)
        self._dispatcher.register(FrameType.INTERRUPT, self._handle_interrupt)
        self._dispatcher.register(FrameType.DTMF, self._handle_dtmf)
        self._dispatcher.register(FrameType.ERROR, self._handle_error)
        self._dispatcher.set_fallback(self._handle_unknown)

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def runtime(self) -> Optional[SessionRuntime]:
        return self._runtime

    @property
    def is_active(self) -> bool:
        return self.session.state == SessionState.ACTIVE

    def open(self) -> None:
        """Begin the session; the gateway's setup frame activates it."""
        self.session.state = SessionState.UNINITIALIZED
        self.session.started_at = time.time()
        logger.info("Session opened, awaiting setup")

    async def handle_message(self, raw_message: Any) -> None:
        """Handle one raw WebSocket message from the gateway."""
        await self._dispatcher.dispatch(raw_message)

    async def handle_frame(self, frame: Any) -> None:
        """Handle an already-parsed frame."""
        handler = self._dispatcher.handler_for(frame.type)
        if handler is not None:
            await handler(frame)

    def _accepts(self, frame_type: str) -> bool:
        if self.session.state == SessionState.ACTIVE:
            if self._runtime is not None:
                self._runtime.silence.reset_timer(frame_type)
            return True
        logger.warning(
            "Frame rejected, session not active",
            session_id=self.session.id,
            frame_type=frame_type,
            state=self.session.state.value,
        )
        return False

    async def _send(self, message: str) -> None:
        if self.session.state == SessionState.CLOSED:
            return
        await self._send_message(message)

    async def _handle_setup(self, frame: SetupFrame) -> None:
        if self.session.state != SessionState.UNINITIALIZED:
            logger.warning(
                "Ignoring setup frame",
                session_id=self.session.id,
                state=self.session.state.value,
            )
            return

        logger.info(
            "Setup received",
            call_sid=frame.call_sid,
            caller=frame.from_number,
            callee=frame.to_number,
            assistant=frame.assistant_name,
        )

        assistant = await self._assistants.get_assistant(frame.assistant_name)
        if assistant is None:
            logger.error("Assistant not found", assistant=frame.assistant_name, call_sid=frame.call_sid)
            self.session.setup_rejected = True
            return
        if self.session.state != SessionState.UNINITIALIZED:
            return

        session = self.session
        session.id = frame.session_id or frame.call_sid or f"session_{uuid.uuid4().hex[:12]}"
        session.call_sid = frame.call_sid
        session.caller = frame.from_number
        session.callee = frame.to_number
        session.assistant = assistant

        model_stream = None
        try:
            model_stream = self._model_stream_factory(frame.call_sid, assistant, config=self.config)
            tool_executor = self._tool_executor_factory(assistant, config=self.config)
        except Exception:
            logger.exception("Failed to build call collaborators", call_sid=frame.call_sid)
            if model_stream is not None:
                model_stream.destroy()
            self.session.setup_rejected = True
            return
        bridge = ToolDispatchBridge(tool_executor, timeout_seconds=self.config.tool_timeout_seconds)
        silence = SilenceMonitor(
            self.config.silence_seconds_threshold,
            self.config.silence_retry_threshold,
            reminder_message=self.config.silence_reminder_message,
        )
        self._runtime = SessionRuntime(
            model_stream=model_stream,
            tool_executor=tool_executor,
            bridge=bridge,
            silence=silence,
            tool_context=ToolContext(
                call_sid=frame.call_sid,
                caller=frame.from_number,
                callee=frame.to_number,
                assistant_name=assistant.assistant_name,
            ),
        )

        model_stream.set_token_callback(self._on_model_token)
        model_stream.set_complete_callback(self._on_model_complete)
        model_stream.set_tool_request_callback(self._on_tool_request)
        bridge.set_result_callback(self._on_tool_result)

        model_stream.add_context(build_system_prompt(assistant), "system")
        model_stream.add_context(f"The users phone number is {frame.from_number}", "system")
        model_stream.add_context(f"The call SID is {frame.call_sid}", "system")
        model_stream.add_context(assistant.initial_message, "assistant")

        session.state = SessionState.ACTIVE
        logger.info("Session active", session_id=session.id, assistant=assistant.assistant_name)

        await self._send(create_text_message(assistant.initial_message, True))
        silence.start_monitoring(self._on_silence_reminder, self._on_silence_exhausted)

    async def _handle_prompt(self, frame: PromptFrame) -> None:
        if not self._accepts(frame.type):
            return
        if self._runtime is None or self._runtime.model_stream is None:
            logger.error("Model stream not ready, dropping prompt", session_id=self.session.id)
            return

        logger.info(
            "Prompt received",
            session_id=self.session.id,
            interaction=self.session.interaction_count,
            chars=len(frame.voice_prompt),
        )
        logger.debug("Prompt text", voice_prompt=frame.voice_prompt)

        self._runtime.model_stream.completion(frame.voice_prompt, self.session.interaction_count, "user")
        self.session.interaction_count += 1

    async def _handle_info(self, frame: InfoFrame) -> None:
        if not self._accepts(frame.type):
            return
        logger.debug("Gateway info", session_id=self.session.id, payload=frame.payload)

    async def _handle_interrupt(self, frame: InterruptFrame) -> None:
        if not self._accepts(frame.type):
            return
        # Marker only; barge-in handling is not implemented.
        self.session.last_interrupt = frame.utterance_until_interrupt
        logger.info(
            "Caller interrupted",
            session_id=self.session.id,
            duration_ms=frame.duration_until_interrupt_ms,
        )

    async def _handle_dtmf(self, frame: DTMFFrame) -> None:
        if not self._accepts(frame.type):
            return
        logger.info("DTMF received", session_id=self.session.id, digit=frame.digit)

    async def _handle_error(self, frame: ErrorFrame) -> None:
        if not self._accepts(frame.type):
            return
        logger.error("Gateway reported error", session_id=self.session.id, description=frame.description)

    async def _handle_unknown(self, frame: UnknownFrame) -> None:
        if not self._accepts(frame.type):
            return
        logger.warning("Unknown frame type", session_id=self.session.id, frame_type=frame.type)

    async def _on_model_token(self, token: str, interaction_count: int) -> None:
        if not self.is_active:
            return
        await self._send(create_text_message(token, False))

    async def _on_model_complete(self, text: str, interaction_count: int) -> None:
        if not self.is_active:
            return
        logger.info(
            "Model turn complete",
            session_id=self.session.id,
            interaction=interaction_count,
            chars=len(text),
        )
        await self._send(create_text_message("", True))

    async def _on_tool_request(self, tool_call: ToolCall) -> None:
        runtime = self._runtime
        if runtime is None or not self.is_active:
            logger.warning("Tool request after close dropped", tool=tool_call.name)
            return
        runtime.bridge.dispatch(runtime.tool_context, tool_call)

    async def _on_tool_result(self, tool_call_id: str, result: str) -> None:
        runtime = self._runtime
        if runtime is None or not self.is_active:
            return
        runtime.model_stream.completion(
            result, self.session.interaction_count, "tool", tool_call_id=tool_call_id
        )

    async def _on_silence_reminder(self, message: str) -> None:
        if not self.is_active:
            return
        logger.info("Sending silence reminder", session_id=self.session.id)
        await self._send(message)

    async def _on_silence_exhausted(self) -> None:
        if not self.is_active:
            return
        await self._send(create_end_message({"reason": "silence_timeout"}))
        self.close("silence_timeout")
        if self._close_transport is not None:
            await self._close_transport()

    def close(self, reason: str = "connection_closed") -> None:
        """Release every owned resource and mark the session Closed. Idempotent."""
        session = self.session
        if session.state == SessionState.CLOSED:
            return

        previous = session.state
        session.state = SessionState.CLOSED
        session.close_reason = reason
        session.ended_at = time.time()

        runtime = self._runtime
        self._runtime = None
        if runtime is not None:
            runtime.silence.cleanup()
            runtime.bridge.cancel_all()
            runtime.model_stream.destroy()
            runtime.tool_executor.destroy()

        logger.info(
            "Session closed",
            session_id=session.id,
            reason=reason,
            previous_state=previous.value,
            interactions=session.interaction_count,
            duration_seconds=round(session.duration_seconds, 2),
        )
