"""
Configuration management for the Conversation Relay server.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""
    
    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"
    
    # Silence handling
    # - silence_seconds_threshold: idle time before a reminder is spoken
    # - silence_retry_threshold: reminders sent before the session is ended
    silence_seconds_threshold: float = 5.0
    silence_retry_threshold: int = 3
    silence_reminder_message: str = "Are you still there?"
    
    # LLM Provider (OpenAI/Groq)
    llm_provider: str = "openai"  # "openai" | "groq"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    max_history_turns: int = 20
    
    # Tools
    tool_timeout_seconds: float = 10.0
    
    # Data files
    assistants_file: str = "data/assistants.json"
    customers_file: str = "data/customers.json"
    
    # Twilio (tools)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_verify_service_sid: str = ""
    live_agent_number: str = ""
    
    @property
    def ws_url(self) -> str:
        """Get the ConversationRelay WebSocket URL."""
        return f"wss://{self.public_host}/conversation-relay"
    
    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"
    
    @property
    def llm_model(self) -> str:
        return self.model_for(self.llm_provider)
    
    @property
    def llm_api_key(self) -> str:
        return self.api_key_for(self.llm_provider)
    
    def model_for(self, provider: str) -> str:
        """Default model of an LLM provider."""
        return self.groq_model if provider == "groq" else self.openai_model
    
    def api_key_for(self, provider: str) -> str:
        return self.groq_api_key if provider == "groq" else self.openai_api_key
    
    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)
    
    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []
        
        if not self.public_host:
            missing.append("PUBLIC_HOST")
        
        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("openai", "groq"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'openai' or 'groq'."
            )
        
        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")
        
        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")
        
        if self.silence_seconds_threshold <= 0:
            raise ConfigError("SILENCE_SECONDS_THRESHOLD must be greater than zero.")
        if self.silence_retry_threshold < 0:
            raise ConfigError("SILENCE_RETRY_THRESHOLD must not be negative.")
        if self.tool_timeout_seconds <= 0:
            raise ConfigError("TOOL_TIMEOUT_SECONDS must be greater than zero.")
        
        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )
    
    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            silence_seconds_threshold=self.silence_seconds_threshold,
            silence_retry_threshold=self.silence_retry_threshold,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            max_history_turns=self.max_history_turns,
            tool_timeout_seconds=self.tool_timeout_seconds,
            assistants_file=self.assistants_file,
            customers_file=self.customers_file,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            verify_service_set=bool(self.twilio_verify_service_sid),
            live_agent_number_set=bool(self.live_agent_number),
            openai_key_set=bool(self.openai_api_key),
            groq_key_set=bool(self.groq_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.
    
    Uses lru_cache to ensure we only load config once.
    """
    public_host = os.getenv("PUBLIC_HOST") or os.getenv("CRELAY_SERVER_DOMAIN", "")
    
    config = Config(
        # Server
        public_host=public_host,
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        
        # Silence handling
        silence_seconds_threshold=_get_float("SILENCE_SECONDS_THRESHOLD", 5.0),
        silence_retry_threshold=_get_int("SILENCE_RETRY_THRESHOLD", 3),
        silence_reminder_message=os.getenv("SILENCE_REMINDER_MESSAGE", "Are you still there?"),
        
        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 20),
        
        # Tools
        tool_timeout_seconds=_get_float("TOOL_TIMEOUT_SECONDS", 10.0),
        
        # Data files
        assistants_file=os.getenv("ASSISTANTS_FILE", "data/assistants.json"),
        customers_file=os.getenv("CUSTOMERS_FILE", "data/customers.json"),
        
        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_verify_service_sid=os.getenv("TWILIO_VERIFY_SERVICE_SID", ""),
        live_agent_number=os.getenv("LIVE_AGENT_NUMBER", ""),
    )
    
    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.
    
    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
