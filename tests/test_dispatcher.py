"""
Tests for inbound frame dispatch.
"""

import json
from unittest.mock import AsyncMock

import pytest

from src.relay.dispatcher import MessageDispatcher
from src.relay.protocol import FrameType, PromptFrame


@pytest.mark.asyncio
async def test_prompt_routes_to_prompt_handler():
    dispatcher = MessageDispatcher()
    on_prompt = AsyncMock()
    on_setup = AsyncMock()
    dispatcher.register(FrameType.PROMPT, on_prompt)
    dispatcher.register(FrameType.SETUP, on_setup)

    frame = await dispatcher.dispatch('{"type":"prompt","voicePrompt":"hello"}')

    on_prompt.assert_awaited_once()
    on_setup.assert_not_awaited()
    routed = on_prompt.await_args.args[0]
    assert isinstance(routed, PromptFrame)
    assert routed.voice_prompt == "hello"
    assert frame is routed


@pytest.mark.asyncio
async def test_malformed_json_is_dropped():
    dispatcher = MessageDispatcher()
    handler = AsyncMock()
    dispatcher.register(FrameType.PROMPT, handler)
    dispatcher.set_fallback(handler)

    result = await dispatcher.dispatch('{"type": "prompt", "voicePrompt": ')

    assert result is None
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_type_goes_to_fallback():
    dispatcher = MessageDispatcher()
    fallback = AsyncMock()
    dispatcher.set_fallback(fallback)

    await dispatcher.dispatch(json.dumps({"type": "mystery"}))

    fallback.assert_awaited_once()
    assert fallback.await_args.args[0].type == "mystery"


@pytest.mark.asyncio
async def test_unhandled_type_without_fallback_is_ignored():
    dispatcher = MessageDispatcher()

    frame = await dispatcher.dispatch(json.dumps({"type": "dtmf", "digit": "1"}))

    assert frame.type == "dtmf"


@pytest.mark.asyncio
async def test_handler_exception_does_not_escape():
    dispatcher = MessageDispatcher()
    dispatcher.register("dtmf", AsyncMock(side_effect=RuntimeError("boom")))

    frame = await dispatcher.dispatch(json.dumps({"type": "dtmf", "digit": "1"}))

    assert frame.digit == "1"


@pytest.mark.asyncio
async def test_register_replaces_handler():
    dispatcher = MessageDispatcher()
    first = AsyncMock()
    second = AsyncMock()
    dispatcher.register(FrameType.INFO, first)
    dispatcher.register("info", second)

    await dispatcher.dispatch(json.dumps({"type": "info"}))

    first.assert_not_awaited()
    second.assert_awaited_once()


@pytest.mark.asyncio
async def test_unencodable_text_is_dropped():
    dispatcher = MessageDispatcher()
    handler = AsyncMock()
    dispatcher.register(FrameType.PROMPT, handler)

    result = await dispatcher.dispatch('{"type": "prompt", "voicePrompt": "\ud800"}')

    assert result is None
    handler.assert_not_awaited()
