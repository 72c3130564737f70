"""
Tool-call bridge.

Correlates tool-call requests from the model stream with the executor's
asynchronous results. Each call runs in its own task so several calls from one
model turn proceed concurrently; results are delivered in completion order,
each tagged with its own tool_call_id.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import structlog

from src.relay.tools.executor import ToolCall, ToolContext, safe_json_dumps

logger = structlog.get_logger(__name__)

ResultCallback = Callable[[str, str], Awaitable[None]]


class ToolRunner(Protocol):
    async def run(self, context: ToolContext, tool_call: ToolCall) -> str: ...


@dataclass
class ToolCallContext:
    """One in-flight tool invocation."""
    tool_call_id: str
    request: ToolCall
    result: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    task: Optional[asyncio.Task] = None


class ToolDispatchBridge:
    def __init__(
        self,
        executor: ToolRunner,
        on_result: Optional[ResultCallback] = None,
        *,
        timeout_seconds: Optional[float] = None,
    ):
        self._executor = executor
        self._on_result = on_result
        self._timeout_seconds = timeout_seconds
        self._pending: Dict[str, ToolCallContext] = {}

    def set_result_callback(self, callback: ResultCallback) -> None:
        """Where resolved results go (the model stream's tool-role input)."""
        self._on_result = callback

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def dispatch(self, context: ToolContext, tool_call: ToolCall) -> Optional[ToolCallContext]:
        """Register the call and start the executor without waiting for it."""
        if tool_call.id in self._pending:
            logger.warning("Duplicate tool call id ignored", tool_call_id=tool_call.id, tool=tool_call.name)
            return None

        call = ToolCallContext(tool_call_id=tool_call.id, request=tool_call)
        self._pending[tool_call.id] = call
        call.task = asyncio.create_task(self._run(context, tool_call))
        logger.info("Tool call dispatched", tool_call_id=tool_call.id, tool=tool_call.name)
        return call

    async def _run(self, context: ToolContext, tool_call: ToolCall) -> None:
        try:
            result = await asyncio.wait_for(
                self._executor.run(context, tool_call), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                "Tool call timed out",
                tool_call_id=tool_call.id,
                tool=tool_call.name,
                timeout_seconds=self._timeout_seconds,
            )
            result = safe_json_dumps({"ok": False, "error": "timeout"})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool executor raised", tool_call_id=tool_call.id, tool=tool_call.name)
            result = safe_json_dumps({"ok": False, "error": str(e)})
        await self.on_result(tool_call.id, result)

    async def on_result(self, tool_call_id: str, result: Any) -> bool:
        """
        Resolve a pending call and forward its result.

        Returns:
            False when the id is unknown or was already resolved
        """
        call = self._pending.pop(tool_call_id, None)
        if call is None or call.result.done():
            logger.warning("Discarding result for unknown tool call", tool_call_id=tool_call_id)
            return False

        payload = result if isinstance(result, str) else safe_json_dumps(result)
        call.result.set_result(payload)

        if self._on_result is not None:
            try:
                await self._on_result(tool_call_id, payload)
            except Exception:
                logger.exception("Tool result delivery failed", tool_call_id=tool_call_id)
        return True

    def cancel_all(self) -> None:
        """Drop every pending call; late results become unknown ids."""
        pending = list(self._pending.values())
        self._pending.clear()
        current = asyncio.current_task()
        for call in pending:
            if call.task and not call.task.done() and call.task is not current:
                call.task.cancel()
            if not call.result.done():
                call.result.cancel()
        if pending:
            logger.info("Pending tool calls cancelled", count=len(pending))
