"""
Streaming LLM wrapper with OpenAI-compatible API.

Provides:
- Startup model validation
- Per-call conversation context with tool-call turns
- Streaming token, completion and tool-request events
- OpenAI or Groq as the backend
"""

import asyncio
import uuid
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Any

import httpx
import structlog
from openai import AsyncOpenAI

from src.relay.assistants import Assistant
from src.relay.config import Config, ConfigError, get_config
from src.relay.tools.executor import ToolCall

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"

APOLOGY_MESSAGE = "I'm sorry, I'm having trouble right now. Could you please repeat that?"

TokenCallback = Callable[[str, int], Awaitable[None]]
CompleteCallback = Callable[[str, int], Awaitable[None]]
ToolRequestCallback = Callable[[ToolCall], Awaitable[None]]

VOICE_GUIDELINES = """PHONE CALL GUIDELINES:
- Your replies are spoken aloud; keep them to 1-3 short sentences
- Avoid lists, markdown, emojis and special characters
- If you don't understand something, ask for clarification
- Never read out internal identifiers unless the caller asks for them"""


def build_system_prompt(assistant: Optional[Assistant]) -> str:
    """Assistant persona followed by the voice guidelines."""
    persona = (assistant.prompt if assistant else "").strip()
    if not persona:
        persona = "You are a friendly and helpful phone assistant."
    return f"{persona}\n\n{VOICE_GUIDELINES}"


class ConversationContext:
    """
    Messages for one call.

    System messages are always kept; turns roll over a window of `max_turns`
    user turns. Trimming only cuts in front of a user message so an assistant
    tool-call message is never separated from its tool results.
    """

    def __init__(self, max_turns: int = 20):
        self.max_turns = max_turns
        self._system: List[Dict[str, Any]] = []
        self._turns: List[Dict[str, Any]] = []

    def add_system_message(self, content: str) -> None:
        self._system.append({"role": "system", "content": content})

    def add_user_message(self, content: str, name: Optional[str] = None) -> None:
        message: Dict[str, Any] = {"role": "user", "content": content}
        if name:
            message["name"] = name
        self._turns.append(message)
        self._trim()

    def add_assistant_message(
        self,
        content: Optional[str],
        tool_calls: Optional[List[ToolCall]] = None,
    ) -> None:
        message: Dict[str, Any] = {"role": "assistant", "content": content}
        if tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in tool_calls
            ]
        self._turns.append(message)

    def add_tool_result(self, tool_call_id: str, content: str) -> None:
        self._turns.append({"role": "tool", "tool_call_id": tool_call_id, "content": content})

    def _trim(self) -> None:
        user_indexes = [i for i, m in enumerate(self._turns) if m["role"] == "user"]
        if len(user_indexes) > self.max_turns:
            cut = user_indexes[len(user_indexes) - self.max_turns]
            self._turns = self._turns[cut:]

    def get_messages(self) -> List[Dict[str, Any]]:
        """Get messages in OpenAI format."""
        return [dict(m) for m in self._system] + [dict(m) for m in self._turns]

    def __len__(self) -> int:
        return len(self._system) + len(self._turns)


async def validate_model(api_key: str, model_name: str, base_url: str = OPENAI_BASE_URL) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models to check.

    Raises:
        SystemExit: If the model doesn't exist (fail fast)
    """
    logger.info("Validating LLM model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )

            if response.status_code != 200:
                logger.error(
                    "Failed to fetch models",
                    status_code=response.status_code,
                    response=response.text[:200],
                )
                raise SystemExit(
                    f"Failed to validate model. API returned status {response.status_code}. "
                    "Check your API key."
                )

            data = response.json()
            model_ids = [m.get("id") for m in data.get("data", [])]

            if model_name not in model_ids:
                available = ", ".join(sorted(model_ids)[:10])
                logger.error(
                    "Model not found",
                    requested_model=model_name,
                    available_models=available,
                )
                raise SystemExit(
                    f"Model '{model_name}' not found in available models.\n"
                    f"Available models include: {available}"
                )

            logger.info("Model validated successfully", model=model_name)
            return True

        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise SystemExit(f"Failed to connect to LLM API: {e}")


def _base_url(provider: str) -> str:
    return GROQ_BASE_URL if provider == "groq" else OPENAI_BASE_URL


# One client per provider; each keeps its own HTTP connection pool
_clients: Dict[str, AsyncOpenAI] = {}


def get_llm_client(config: Optional[Config] = None, provider: Optional[str] = None) -> AsyncOpenAI:
    """Get or create the AsyncOpenAI client for a provider (default: LLM_PROVIDER)."""
    config = config or get_config()
    provider = provider or config.llm_provider

    client = _clients.get(provider)
    if client is None:
        client = AsyncOpenAI(
            api_key=config.api_key_for(provider),
            base_url=_base_url(provider),
        )
        _clients[provider] = client

    return client


async def initialize_llm(
    config: Optional[Config] = None,
    assistants: Iterable[Assistant] = (),
) -> None:
    """
    Validate every provider/model pair in use at startup and warm their clients.

    Raises:
        ConfigError: If an assistant needs a provider whose API key is not set
        SystemExit: If a model doesn't exist
    """
    config = config or get_config()

    targets = {(config.llm_provider, config.llm_model)}
    for assistant in assistants:
        provider = assistant.llm_provider or config.llm_provider
        targets.add((provider, assistant.model or config.model_for(provider)))

    for provider, model in sorted(targets):
        api_key = config.api_key_for(provider)
        if not api_key:
            raise ConfigError(
                f"An assistant uses LLM provider '{provider}' but its API key is not set."
            )
        await validate_model(api_key, model, _base_url(provider))
        get_llm_client(config, provider)


class ModelStream:
    """
    Streaming model session for one call.

    `completion()` never blocks the caller: it schedules a generation task.
    Generations run one at a time under a lock. When the model asks for tools,
    generation resumes only after every requested tool has reported back.
    """

    def __init__(
        self,
        call_sid: str,
        assistant: Optional[Assistant] = None,
        *,
        config: Optional[Config] = None,
        client: Optional[Any] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ):
        self.config = config or get_config()
        self.call_sid = call_sid
        self.provider = (assistant.llm_provider if assistant else "") or self.config.llm_provider
        self.model = (assistant.model if assistant else "") or self.config.model_for(self.provider)
        self._client = client if client is not None else get_llm_client(self.config, self.provider)
        self._tools = tools or []
        self._context = ConversationContext(max_turns=self.config.max_history_turns)

        self._on_token: Optional[TokenCallback] = None
        self._on_complete: Optional[CompleteCallback] = None
        self._on_tool_request: Optional[ToolRequestCallback] = None

        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._awaiting_tool_ids: set[str] = set()
        self._deferred_user: List[tuple[str, Optional[str]]] = []
        self._destroyed = False

    @property
    def client(self) -> Any:
        return self._client

    @property
    def context(self) -> ConversationContext:
        return self._context

    @property
    def awaiting_tool_ids(self) -> set[str]:
        return set(self._awaiting_tool_ids)

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def set_token_callback(self, callback: TokenCallback) -> None:
        self._on_token = callback

    def set_complete_callback(self, callback: CompleteCallback) -> None:
        self._on_complete = callback

    def set_tool_request_callback(self, callback: ToolRequestCallback) -> None:
        self._on_tool_request = callback

    def add_context(self, text: str, role: str = "system") -> None:
        """Add context without generating a reply."""
        if role == "system":
            self._context.add_system_message(text)
        elif role == "assistant":
            self._context.add_assistant_message(text)
        else:
            self._context.add_user_message(text)

    def completion(
        self,
        text: str,
        interaction_count: int,
        role: str = "user",
        name: Optional[str] = None,
        tool_call_id: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """Queue input and a generation. Returns the scheduled task."""
        if self._destroyed:
            logger.warning("Completion requested after destroy", call_sid=self.call_sid, role=role)
            return None
        if role == "tool" and not tool_call_id:
            logger.error("Tool completion without tool_call_id", call_sid=self.call_sid)
            return None

        task = asyncio.create_task(self._run(text, interaction_count, role, name, tool_call_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        text: str,
        interaction_count: int,
        role: str,
        name: Optional[str],
        tool_call_id: Optional[str],
    ) -> None:
        async with self._lock:
            if self._destroyed:
                return

            if role == "tool":
                if tool_call_id not in self._awaiting_tool_ids:
                    logger.warning("Unexpected tool result", call_sid=self.call_sid, tool_call_id=tool_call_id)
                    return
                self._context.add_tool_result(tool_call_id, text)
                self._awaiting_tool_ids.discard(tool_call_id)
                if self._awaiting_tool_ids:
                    logger.debug(
                        "Waiting for remaining tool results",
                        call_sid=self.call_sid,
                        remaining=len(self._awaiting_tool_ids),
                    )
                    return
                for deferred_text, deferred_name in self._deferred_user:
                    self._context.add_user_message(deferred_text, deferred_name)
                self._deferred_user.clear()
            elif self._awaiting_tool_ids:
                # Tool results must directly follow the assistant tool-call message.
                self._deferred_user.append((text, name))
                logger.debug("User turn deferred until tool results arrive", call_sid=self.call_sid)
                return
            elif role == "user":
                self._context.add_user_message(text, name)
            else:
                self.add_context(text, role)

            await self._generate(interaction_count)

    async def _generate(self, interaction_count: int) -> None:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": self._context.get_messages(),
            "stream": True,
        }
        if self._tools:
            kwargs["tools"] = self._tools

        full_response = ""
        partial_calls: Dict[int, Dict[str, str]] = {}

        try:
            stream = await self._client.chat.completions.create(**kwargs)

            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta

                if delta.content:
                    full_response += delta.content
                    await self._emit_token(delta.content, interaction_count)

                for fragment in delta.tool_calls or []:
                    entry = partial_calls.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                    if fragment.id:
                        entry["id"] = fragment.id
                    function = fragment.function
                    if function is not None:
                        if function.name:
                            entry["name"] = function.name
                        if function.arguments:
                            entry["arguments"] += function.arguments

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("LLM generation failed", call_sid=self.call_sid, error=str(e))
            self._context.add_assistant_message(APOLOGY_MESSAGE)
            await self._emit_token(APOLOGY_MESSAGE, interaction_count)
            await self._emit_complete(APOLOGY_MESSAGE, interaction_count)
            return

        if partial_calls:
            calls = [
                ToolCall(
                    id=entry["id"] or f"call_{uuid.uuid4().hex[:24]}",
                    name=entry["name"],
                    arguments=entry["arguments"] or "{}",
                )
                for _, entry in sorted(partial_calls.items())
            ]
            self._context.add_assistant_message(full_response or None, tool_calls=calls)
            self._awaiting_tool_ids.update(call.id for call in calls)
            if full_response:
                await self._emit_complete(full_response, interaction_count)
            for call in calls:
                await self._emit_tool_request(call)
            return

        self._context.add_assistant_message(full_response)
        await self._emit_complete(full_response, interaction_count)

    async def _emit_token(self, token: str, interaction_count: int) -> None:
        if self._on_token and not self._destroyed:
            await self._on_token(token, interaction_count)

    async def _emit_complete(self, text: str, interaction_count: int) -> None:
        if self._on_complete and not self._destroyed:
            await self._on_complete(text, interaction_count)

    async def _emit_tool_request(self, call: ToolCall) -> None:
        if self._on_tool_request and not self._destroyed:
            await self._on_tool_request(call)

    def destroy(self) -> None:
        """Cancel in-flight generations and drop callbacks."""
        self._destroyed = True
        current = asyncio.current_task()
        for task in list(self._tasks):
            if not task.done() and task is not current:
                task.cancel()
        self._tasks.clear()
        self._awaiting_tool_ids.clear()
        self._deferred_user.clear()
        self._on_token = None
        self._on_complete = None
        self._on_tool_request = None
