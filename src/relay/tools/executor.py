from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog
from twilio.rest import Client as TwilioClient

from src.relay.config import Config, get_config
from src.relay.tools.manifest import tool_names

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model stream."""
    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the JSON argument string. Raises ValueError when it is not an object."""
        if not self.arguments:
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            raise ValueError("tool arguments must be a JSON object")
        return value


@dataclass(frozen=True)
class ToolContext:
    """Call details a tool may need."""
    call_sid: str
    caller: str = ""
    callee: str = ""
    assistant_name: str = ""


def _digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def load_customers(path: str) -> list[dict[str, Any]]:
    file_path = Path(path)
    if not file_path.exists():
        logger.warning("Customers file not found", path=path)
        return []
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error("Failed to load customers file", path=path, error=str(e))
        return []
    if not isinstance(data, list):
        logger.error("Customers file must contain a JSON list", path=path)
        return []
    return [c for c in data if isinstance(c, dict)]


class ToolExecutor:
    """
    Runs the manifest tools for one call.

    Every result is a JSON string the model can read back; failures are
    reported as ok=false rather than raised.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        allowed_tools: Optional[Iterable[str]] = None,
        twilio_client: Optional[Any] = None,
        customers: Optional[list[dict[str, Any]]] = None,
    ):
        self.config = config or get_config()
        self.allowed_tools = set(allowed_tools or ()) or set(tool_names())
        self._twilio_client = twilio_client
        self._customers = customers
        self._closed = False

    @property
    def twilio_client(self) -> Optional[Any]:
        if self._twilio_client is None and self.config.twilio_configured:
            self._twilio_client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._twilio_client

    @property
    def customers(self) -> list[dict[str, Any]]:
        if self._customers is None:
            self._customers = load_customers(self.config.customers_file)
        return self._customers

    def destroy(self) -> None:
        self._closed = True
        self._twilio_client = None

    async def run(self, context: ToolContext, tool_call: ToolCall) -> str:
        started = time.time()
        result = await self._execute(context, tool_call)
        logger.info(
            "Tool executed",
            tool=tool_call.name,
            tool_call_id=tool_call.id,
            call_sid=context.call_sid,
            ok=result.get("ok"),
            ms=int((time.time() - started) * 1000),
        )
        return safe_json_dumps(result)

    async def _execute(self, context: ToolContext, tool_call: ToolCall) -> dict[str, Any]:
        if self._closed:
            return {"ok": False, "error": "session_closed"}
        if tool_call.name not in self.allowed_tools:
            return {"ok": False, "error": f"unknown_tool:{tool_call.name}"}
        try:
            args = tool_call.parsed_arguments()
        except ValueError as e:
            return {"ok": False, "error": f"invalid_arguments:{e}"}

        try:
            if tool_call.name == "get-customer":
                return self._get_customer(context, args)
            if tool_call.name == "verify-send":
                return await self._verify_send(context, args)
            if tool_call.name == "verify-code":
                return await self._verify_code(context, args)
            if tool_call.name == "live-agent-handoff":
                return await self._live_agent_handoff(context, args)
            return {"ok": False, "error": f"unknown_tool:{tool_call.name}"}
        except Exception as e:
            logger.exception("Tool execution failed", tool=tool_call.name)
            return {"ok": False, "error": str(e)}

    def _get_customer(self, context: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        number = _digits(args.get("from") or context.caller)
        if not number:
            return {"ok": False, "error": "missing_from"}
        for customer in self.customers:
            if _digits(customer.get("phone")) == number:
                return {"ok": True, "customer": customer}
        return {"ok": False, "error": "customer_not_found"}

    async def _verify_send(self, context: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        to = str(args.get("from") or context.caller).strip()
        if not to:
            return {"ok": False, "error": "missing_from"}
        client = self.twilio_client
        if client is None or not self.config.twilio_verify_service_sid:
            return {"ok": False, "error": "not_configured"}

        service = client.verify.v2.services(self.config.twilio_verify_service_sid)
        verification = await asyncio.to_thread(
            service.verifications.create, to=to, channel="sms"
        )
        return {"ok": True, "status": verification.status}

    async def _verify_code(self, context: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        to = str(args.get("from") or context.caller).strip()
        code = str(args.get("code") or "").strip()
        if not to or not code:
            return {"ok": False, "error": "missing_code_or_from"}
        client = self.twilio_client
        if client is None or not self.config.twilio_verify_service_sid:
            return {"ok": False, "error": "not_configured"}

        service = client.verify.v2.services(self.config.twilio_verify_service_sid)
        check = await asyncio.to_thread(
            service.verification_checks.create, to=to, code=code
        )
        return {"ok": True, "verified": check.status == "approved", "status": check.status}

    async def _live_agent_handoff(self, context: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        call_sid = str(args.get("callSid") or context.call_sid).strip()
        if not call_sid:
            return {"ok": False, "error": "missing_call_sid"}
        client = self.twilio_client
        if client is None or not self.config.live_agent_number:
            return {"ok": False, "error": "not_configured"}

        twiml = f"<Response><Dial>{self.config.live_agent_number}</Dial></Response>"
        await asyncio.to_thread(client.calls(call_sid).update, twiml=twiml)
        logger.info("Call handed off to live agent", call_sid=call_sid)
        return {"ok": True, "status": "transferring"}


def safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except Exception:
        return json.dumps({"ok": False, "error": "json_encode_failed"})
