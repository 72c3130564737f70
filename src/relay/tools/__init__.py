"""Tool manifest, executor and the tool-call bridge."""

from src.relay.tools.bridge import ToolCallContext, ToolDispatchBridge
from src.relay.tools.executor import ToolCall, ToolContext, ToolExecutor, safe_json_dumps
from src.relay.tools.manifest import TOOLS, tools_for

__all__ = [
    "TOOLS",
    "ToolCall",
    "ToolCallContext",
    "ToolContext",
    "ToolDispatchBridge",
    "ToolExecutor",
    "safe_json_dumps",
    "tools_for",
]
