"""
Tests for the assistant catalogue.
"""

import json

import pytest

from src.relay.assistants import Assistant, AssistantService


@pytest.mark.asyncio
async def test_loads_bundled_assistants():
    service = AssistantService()

    default = await service.get_assistant("default")

    assert default is not None
    assert default.initial_message
    assert "get-customer" in default.tools
    assert len(await service.get_assistants()) == 2


@pytest.mark.asyncio
async def test_unknown_or_empty_name():
    service = AssistantService()

    assert await service.get_assistant("nobody") is None
    assert await service.get_assistant("") is None
    assert await service.get_assistant(None) is None


@pytest.mark.asyncio
async def test_invalid_entries_are_skipped(tmp_path):
    path = tmp_path / "assistants.json"
    path.write_text(json.dumps([
        {"assistant_name": "ok", "initial_message": "Hello"},
        {"initial_message": "no name"},
        "not an object",
    ]))
    service = AssistantService(str(path))

    assert [a.assistant_name for a in await service.get_assistants()] == ["ok"]


@pytest.mark.asyncio
async def test_missing_or_broken_file_yields_empty_catalogue(tmp_path):
    missing = AssistantService(str(tmp_path / "missing.json"))
    broken_path = tmp_path / "broken.json"
    broken_path.write_text("{not json")
    broken = AssistantService(str(broken_path))

    assert await missing.get_assistants() == []
    assert await broken.get_assistants() == []


@pytest.mark.asyncio
async def test_refresh_reloads_file(tmp_path):
    path = tmp_path / "assistants.json"
    path.write_text(json.dumps([{"assistant_name": "a", "initial_message": "Hi"}]))
    service = AssistantService(str(path))
    assert await service.get_assistant("b") is None

    path.write_text(json.dumps([{"assistant_name": "b", "initial_message": "Hi"}]))
    assert await service.get_assistant("b") is None
    service.refresh()

    assert (await service.get_assistant("b")).initial_message == "Hi"


def test_assistant_defaults():
    assistant = Assistant.from_dict({"name": "plain", "initial_message": "Hey"})

    assert assistant.assistant_name == "plain"
    assert assistant.language_code == "en-US"
    assert assistant.tools == []
    assert assistant.to_dict()["assistant_name"] == "plain"


@pytest.mark.asyncio
async def test_llm_provider_per_assistant(tmp_path):
    path = tmp_path / "assistants.json"
    path.write_text(json.dumps([
        {"assistant_name": "fast", "initial_message": "Hi", "llm_provider": "Groq"},
        {"assistant_name": "plain", "initial_message": "Hi"},
        {"assistant_name": "bad", "initial_message": "Hi", "llm_provider": "mystery"},
    ]))
    service = AssistantService(str(path))

    assert (await service.get_assistant("fast")).llm_provider == "groq"
    assert (await service.get_assistant("plain")).llm_provider == ""
    assert await service.get_assistant("bad") is None
