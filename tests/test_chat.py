import random

import pytest

from chat import FALLBACK_RESPONSES, Conversation, contextual_response
from gemini import GeminiError

from conftest import FakeGemini


def test_contextual_response_matches_topic():
    assert contextual_response("how do I upload a PDF").startswith("I can read PDF documents aloud!")


def test_contextual_response_first_topic_wins():
    # "hello" is checked before "help"
    assert contextual_response("hello, help me").startswith("Hello! I'm thirdeye")


def test_contextual_response_none():
    assert contextual_response("zzz") is None


@pytest.mark.asyncio
async def test_respond_uses_gemini_reply():
    gemini = FakeGemini(["Point your camera at the sign."])
    chat = Conversation(gemini)
    reply = await chat.respond("what does that sign say")
    assert reply == "Point your camera at the sign."
    assert 'User input: "what does that sign say"' in gemini.prompts[0]


@pytest.mark.asyncio
async def test_respond_random_fallback():
    chat = Conversation(FakeGemini([GeminiError("quota")]), rng=random.Random(0))
    reply = await chat.respond("zzz")
    assert reply in FALLBACK_RESPONSES


@pytest.mark.asyncio
async def test_empty_reply_falls_back():
    chat = Conversation(FakeGemini([""]))
    reply = await chat.respond("thanks a lot")
    assert reply.startswith("You're very welcome!")


@pytest.mark.asyncio
async def test_history_is_bounded_and_clearable():
    chat = Conversation(FakeGemini(["a", "b", "c"]), max_history=4)
    for text in ("one", "two", "three"):
        await chat.respond(text)
    assert [m.content for m in chat.messages] == ["two", "b", "three", "c"]
    assert chat.messages[0].to_dict()["role"] == "user"
    chat.clear()
    assert chat.messages == []
