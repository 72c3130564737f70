"""
Assistant catalogue.

Assistants are named configurations (persona prompt, greeting, voice settings,
tool selection) loaded from ASSISTANTS_FILE and cached in-process. A call picks
its assistant through the `assistant` custom parameter of the setup frame.
"""

import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from src.relay.config import get_config

logger = structlog.get_logger(__name__)

LLM_PROVIDERS = ("openai", "groq")


@dataclass(frozen=True)
class Assistant:
    """Resolved assistant configuration."""
    assistant_name: str
    initial_message: str
    prompt: str = ""
    language_code: str = "en-US"
    tts_provider: str = "ElevenLabs"
    tts_voice: str = ""
    model: str = ""
    llm_provider: str = ""
    tools: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Assistant":
        name = str(data.get("assistant_name") or data.get("name") or "").strip()
        if not name:
            raise ValueError("assistant_name is required")
        tools = data.get("tools") or []
        provider = str(data.get("llm_provider") or "").strip().lower()
        if provider and provider not in LLM_PROVIDERS:
            raise ValueError(f"unknown llm_provider '{provider}' for assistant {name}")
        return cls(
            assistant_name=name,
            initial_message=str(data.get("initial_message") or ""),
            prompt=str(data.get("prompt") or ""),
            language_code=str(data.get("language_code") or "en-US"),
            tts_provider=str(data.get("tts_provider") or "ElevenLabs"),
            tts_voice=str(data.get("tts_voice") or ""),
            model=str(data.get("model") or ""),
            llm_provider=provider,
            tools=[str(t) for t in tools] if isinstance(tools, list) else [],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AssistantService:
    """Loads assistants once and serves them by name."""

    def __init__(self, path: Optional[str] = None):
        self._path = path
        self._assistants: Optional[Dict[str, Assistant]] = None

    @property
    def path(self) -> str:
        return self._path or get_config().assistants_file

    def refresh(self) -> None:
        """Drop the cache; the next lookup reloads the file."""
        self._assistants = None

    def _load(self) -> Dict[str, Assistant]:
        if self._assistants is not None:
            return self._assistants

        assistants: Dict[str, Assistant] = {}
        file_path = Path(self.path)
        try:
            raw = json.loads(file_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.error("Assistants file not found", path=str(file_path))
            raw = []
        except (OSError, ValueError) as e:
            logger.error("Failed to load assistants file", path=str(file_path), error=str(e))
            raw = []

        if not isinstance(raw, list):
            logger.error("Assistants file must contain a JSON list", path=str(file_path))
            raw = []

        for entry in raw:
            if not isinstance(entry, dict):
                continue
            try:
                assistant = Assistant.from_dict(entry)
            except ValueError as e:
                logger.warning("Skipping invalid assistant", error=str(e))
                continue
            assistants[assistant.assistant_name] = assistant

        logger.info("Assistants loaded", count=len(assistants), path=str(file_path))
        self._assistants = assistants
        return assistants

    async def get_assistants(self) -> List[Assistant]:
        return list(self._load().values())

    async def get_assistant(self, name: Optional[str]) -> Optional[Assistant]:
        if not name:
            return None
        return self._load().get(name.strip())


# Singleton instance
_assistant_service: Optional[AssistantService] = None


def get_assistant_service() -> AssistantService:
    """Get or create the assistant catalogue singleton."""
    global _assistant_service

    if _assistant_service is None:
        _assistant_service = AssistantService()

    return _assistant_service
