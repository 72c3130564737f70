"""
Tool manifest handed to the model stream.

Descriptors use the OpenAI chat-completions `function` tool format.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "get-customer",
            "description": "Retrieves customer details based on the call 'from' information",
            "parameters": {
                "type": "object",
                "properties": {
                    "from": {
                        "type": "string",
                        "description": "The phone number of the customer (caller)",
                    },
                },
                "required": ["from"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "verify-code",
            "description": "Verifies a provided code against the calling number",
            "parameters": {
                "type": "object",
                "properties": {
                    "code": {
                        "type": "string",
                        "description": "The verification code to check",
                    },
                    "from": {
                        "type": "string",
                        "description": "The calling number to verify against",
                    },
                },
                "required": ["code", "from"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "verify-send",
            "description": "Generates and sends a verification code via SMS to the phone number provided",
            "parameters": {
                "type": "object",
                "properties": {
                    "from": {
                        "type": "string",
                        "description": (
                            "The calling phone number to send the verification code to. "
                            "This is the number the call came in from."
                        ),
                    },
                },
                "required": ["from"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "live-agent-handoff",
            "description": "Transfers the call to a human agent",
            "parameters": {
                "type": "object",
                "properties": {
                    "callSid": {
                        "type": "string",
                        "description": "The unique identifier of the call to be transferred",
                    },
                },
                "required": ["callSid"],
            },
        },
    },
]


def tool_names() -> list[str]:
    return [tool["function"]["name"] for tool in TOOLS]


def tools_for(names: Optional[Iterable[str]] = None) -> list[dict[str, Any]]:
    """
    Manifest entries for the given tool names, in manifest order.

    An empty or missing selection means every tool.
    """
    selected = set(names or ())
    if not selected:
        return list(TOOLS)
    return [tool for tool in TOOLS if tool["function"]["name"] in selected]
