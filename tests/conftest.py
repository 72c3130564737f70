"""
Pytest configuration and fixtures.
"""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

DATA_DIR = Path(__file__).resolve().parent.parent / "data"


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "LLM_PROVIDER": "openai",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o-mini",
        "SILENCE_SECONDS_THRESHOLD": "5",
        "SILENCE_RETRY_THRESHOLD": "3",
        "ASSISTANTS_FILE": str(DATA_DIR / "assistants.json"),
        "CUSTOMERS_FILE": str(DATA_DIR / "customers.json"),
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def setup_message():
    """Sample ConversationRelay setup message."""
    return json.dumps({
        "type": "setup",
        "sessionId": "VX123456",
        "callSid": "CA789012",
        "from": "+61400000001",
        "to": "+61200000002",
        "direction": "inbound",
        "customParameters": {"assistant": "default"},
    })


@pytest.fixture
def prompt_message():
    """Sample ConversationRelay prompt message."""
    return json.dumps({
        "type": "prompt",
        "voicePrompt": "What's my balance?",
        "lang": "en-US",
        "last": True,
    })
