import asyncio

import pytest

from gemini import GeminiError
from tts import PlaybackError, SpeechQueue, SynthesisError


class FakeSynthesizer:
    """Returns the text as "audio"; fails for texts listed in `fail`."""

    def __init__(self, fail=(), always_fail=False):
        self.fail = set(fail)
        self.always_fail = always_fail
        self.calls = []
        self.closed = False

    async def synthesize(self, text):
        self.calls.append(text)
        if self.always_fail or text in self.fail:
            raise SynthesisError("synthesis down")
        return text.encode()

    async def available(self):
        return not self.always_fail

    async def aclose(self):
        self.closed = True


class FakePlayer:
    """Records what it played. With `blocking`, playback waits on `gate`."""

    def __init__(self, blocking=False, fail=()):
        self.gate = asyncio.Event() if blocking else None
        self.fail = set(fail)
        self.played = []
        self.started = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def play(self, audio):
        text = audio.decode()
        self.started.append(text)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if text in self.fail:
                raise PlaybackError("device gone")
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            self.played.append(text)
        finally:
            self.active -= 1

    def close(self):
        self.closed = True


class FakeVoice:
    def __init__(self, available=True):
        self.available = available
        self.spoken = []

    async def speak(self, text):
        if not self.available:
            return
        self.spoken.append(text)


class FakeGemini:
    """Hands out canned replies in order; an Exception instance is raised."""

    def __init__(self, replies=(), configured=True):
        self.replies = list(replies)
        self.configured = configured
        self.prompts = []
        self.images = []
        self.closed = False

    def generate(self, prompt, image=None, generation_config=None, safety_settings=None):
        self.prompts.append(prompt)
        self.images.append(image)
        if not self.configured:
            raise GeminiError("GEMINI_API_KEY is not configured")
        if not self.replies:
            raise GeminiError("no reply")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def generate_async(self, prompt, **kwargs):
        return self.generate(prompt, **kwargs)

    def close(self):
        self.closed = True


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def voice():
    return FakeVoice()


@pytest.fixture
def speech(synthesizer, player, voice):
    return SpeechQueue(synthesizer, player, voice)


@pytest.fixture
def gemini():
    return FakeGemini()
