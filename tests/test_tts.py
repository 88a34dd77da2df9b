import asyncio
import os
import threading
import time
from types import SimpleNamespace

import httpx
import pygame
import pytest
from gtts import gTTSError

import config
import tts
from tts import (
    AudioPlayer,
    ElevenLabsSynthesizer,
    GTTSSynthesizer,
    LocalVoice,
    PlaybackError,
    SpeechQueue,
    SpeechState,
    SynthesisError,
    create_speech_queue,
    is_english,
    select_voice,
)

from conftest import FakePlayer, FakeSynthesizer, FakeVoice


async def settle(n=5):
    for _ in range(n):
        await asyncio.sleep(0)


class TestSpeechQueueOrdering:
    @pytest.mark.asyncio
    async def test_plays_in_submission_order(self, speech, player):
        for text in ("one", "two", "three"):
            speech.submit(text)
        await speech.drain()
        assert player.played == ["one", "two", "three"]
        assert speech.state is SpeechState.IDLE

    @pytest.mark.asyncio
    async def test_never_more_than_one_in_flight(self, speech, player):
        futures = [speech.submit(f"msg {i}") for i in range(5)]
        await asyncio.gather(*futures)
        assert player.max_active == 1
        assert len(player.played) == 5

    @pytest.mark.asyncio
    async def test_state_reports_pending(self):
        player = FakePlayer(blocking=True)
        queue = SpeechQueue(FakeSynthesizer(), player, FakeVoice())
        queue.submit("first")
        assert queue.state is SpeechState.SPEAKING
        queue.submit("second")
        assert queue.state is SpeechState.SPEAKING_PENDING
        assert queue.pending == ("second",)
        player.gate.set()
        await queue.drain()
        assert queue.state is SpeechState.IDLE

    @pytest.mark.asyncio
    async def test_speak_returns_true_when_done(self, speech):
        assert await speech.speak("hello") is True


class TestSpeechQueueFallback:
    @pytest.mark.asyncio
    async def test_failed_synthesis_uses_local_voice(self, player, voice):
        queue = SpeechQueue(FakeSynthesizer(always_fail=True), player, voice)
        queue.submit("a")
        queue.submit("b")
        await queue.drain()
        assert voice.spoken == ["a", "b"]
        assert player.played == []

    @pytest.mark.asyncio
    async def test_only_failed_utterance_falls_back(self, player, voice):
        queue = SpeechQueue(FakeSynthesizer(fail={"b"}), player, voice)
        for text in ("a", "b", "c"):
            queue.submit(text)
        await queue.drain()
        assert player.played == ["a", "c"]
        assert voice.spoken == ["b"]

    @pytest.mark.asyncio
    async def test_no_local_voice_is_silent_and_advances(self, player):
        queue = SpeechQueue(FakeSynthesizer(always_fail=True), player, FakeVoice(available=False))
        done = queue.submit("lost")
        queue.submit("also lost")
        await queue.drain()
        assert done.result() is True
        assert queue.state is SpeechState.IDLE

    @pytest.mark.asyncio
    async def test_playback_error_advances_queue(self, synthesizer, voice):
        player = FakePlayer(fail={"broken"})
        queue = SpeechQueue(synthesizer, player, voice)
        queue.submit("broken")
        queue.submit("fine")
        await queue.drain()
        assert player.played == ["fine"]
        # playback failures are not retried through the local voice
        assert voice.spoken == []

    @pytest.mark.asyncio
    async def test_without_synthesizer_speaks_locally(self, player, voice):
        queue = SpeechQueue(None, player, voice)
        await queue.speak("local only")
        assert voice.spoken == ["local only"]


class TestSpeechQueueStop:
    @pytest.mark.asyncio
    async def test_stop_clears_pending_and_current(self):
        player = FakePlayer(blocking=True)
        queue = SpeechQueue(FakeSynthesizer(), player, FakeVoice())
        first = queue.submit("first")
        second = queue.submit("second")
        third = queue.submit("third")
        await settle()
        assert player.started == ["first"]

        queue.stop()
        assert queue.state is SpeechState.IDLE
        assert queue.pending == ()
        await settle()
        assert [f.result() for f in (first, second, third)] == [False, False, False]
        assert player.played == []

        player.gate.set()
        assert await queue.speak("after") is True
        assert player.played == ["after"]

    @pytest.mark.asyncio
    async def test_stop_before_first_step(self, speech):
        done = speech.submit("never heard")
        speech.stop()
        await settle()
        assert done.result() is False
        assert speech.state is SpeechState.IDLE

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_harmless(self, speech):
        speech.stop()
        assert speech.state is SpeechState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_pending_keeps_the_rest(self):
        player = FakePlayer(blocking=True)
        queue = SpeechQueue(FakeSynthesizer(), player, FakeVoice())
        first = queue.submit("first")
        second = queue.submit("second")
        third = queue.submit("third")
        queue.cancel(second)
        assert second.result() is False
        assert queue.pending == ("third",)

        player.gate.set()
        assert await first is True
        assert await third is True
        assert player.played == ["first", "third"]

    @pytest.mark.asyncio
    async def test_cancel_current_moves_on(self):
        player = FakePlayer(blocking=True)
        queue = SpeechQueue(FakeSynthesizer(), player, FakeVoice())
        first = queue.submit("first")
        second = queue.submit("second")
        await settle()
        queue.cancel(first)
        assert await first is False
        await settle(10)
        assert player.started == ["first", "second"]
        player.gate.set()
        assert await second is True
        assert player.played == ["second"]

    @pytest.mark.asyncio
    async def test_cancel_finished_utterance_is_harmless(self, speech, player):
        done = speech.submit("short")
        assert await done is True
        other = speech.submit("other")
        speech.cancel(done)
        assert await other is True
        assert player.played == ["short", "other"]

    @pytest.mark.asyncio
    async def test_close_releases_backends(self, speech, synthesizer, player):
        await speech.close()
        assert synthesizer.closed
        assert player.closed


def _voice(name, languages=(), id=None):
    return SimpleNamespace(name=name, id=id or name, languages=list(languages))


class TestVoiceSelection:
    def test_prefers_marked_english_voice(self):
        voices = [
            _voice("Deutsch", ["de-de"]),
            _voice("English Basic", ["en-us"]),
            _voice("Microsoft Zira", ["en-us"]),
        ]
        assert select_voice(voices).name == "Microsoft Zira"

    def test_any_english_voice_next(self):
        voices = [_voice("Deutsch", ["de-de"]), _voice("Alex", [b"\x05en-gb"])]
        assert select_voice(voices).name == "Alex"

    def test_first_voice_last(self):
        voices = [_voice("Deutsch", ["de-de"]), _voice("Francais", ["fr-fr"])]
        assert select_voice(voices).name == "Deutsch"

    def test_no_voices(self):
        assert select_voice([]) is None

    def test_english_from_name(self):
        assert is_english(_voice("english-us", []))


class FakeEngine:
    def __init__(self):
        self.props = {"voices": [_voice("Samantha Enhanced", ["en-us"], id="sam")]}
        self.said = []

    def setProperty(self, key, value):
        self.props[key] = value

    def getProperty(self, key):
        return self.props.get(key)

    def say(self, text):
        self.said.append(text)

    def runAndWait(self):
        pass

    def stop(self):
        pass


class TestLocalVoice:
    @pytest.mark.asyncio
    async def test_speaks_with_configured_engine(self):
        engine = FakeEngine()
        voice = LocalVoice(rate=150, volume=0.5, engine_factory=lambda: engine)
        await voice.speak("hello")
        assert engine.said == ["hello"]
        assert engine.props["rate"] == 150
        assert engine.props["voice"] == "sam"

    @pytest.mark.asyncio
    async def test_missing_driver_disables_voice(self):
        def broken():
            raise RuntimeError("no driver")

        voice = LocalVoice(engine_factory=broken)
        await voice.speak("hello")
        assert voice.available is False
        # further calls are no-ops
        await voice.speak("again")


class TestElevenLabs:
    @pytest.mark.asyncio
    async def test_posts_text_and_returns_audio(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["key"] = request.headers["xi-api-key"]
            return httpx.Response(200, content=b"ID3audio")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            synth = ElevenLabsSynthesizer("k", voice_id="v1", base_url="https://tts.test/v1", client=client)
            assert await synth.synthesize("hi") == b"ID3audio"
        assert seen == {"url": "https://tts.test/v1/text-to-speech/v1", "key": "k"}

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, text="bad key"))
        async with httpx.AsyncClient(transport=transport) as client:
            synth = ElevenLabsSynthesizer("k", client=client)
            with pytest.raises(SynthesisError):
                await synth.synthesize("hi")
            assert await synth.available() is False

    @pytest.mark.asyncio
    async def test_missing_key_raises(self):
        async with httpx.AsyncClient() as client:
            synth = ElevenLabsSynthesizer("", client=client)
            with pytest.raises(SynthesisError):
                await synth.synthesize("hi")


class SlowEngine(FakeEngine):
    """Slow to start; runAndWait lasts `talk` seconds unless stop() cuts it short."""

    def __init__(self, said, talk):
        super().__init__()
        self.said = said
        self.talk = talk
        self.stopped = threading.Event()

    def runAndWait(self):
        self.stopped.wait(self.talk)

    def stop(self):
        self.stopped.set()


class CountingVoice(LocalVoice):
    """Tracks how many worker threads are speaking at once."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.guard = threading.Lock()
        self.active = 0
        self.max_active = 0

    def _say(self, utterance):
        with self.guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            super()._say(utterance)
        finally:
            with self.guard:
                self.active -= 1


class TestLocalVoiceInterruption:
    @pytest.mark.asyncio
    async def test_stop_during_engine_startup_keeps_it_silent(self):
        said = []

        def factory():
            time.sleep(0.2)
            return SlowEngine(said, talk=0.3)

        voice = CountingVoice(engine_factory=factory)
        queue = SpeechQueue(None, FakePlayer(), voice)
        cancelled = queue.submit("cancelled one")
        await asyncio.sleep(0.05)
        queue.stop()
        assert await asyncio.wait_for(queue.speak("next one"), 5) is True
        assert cancelled.result() is False
        assert said == ["next one"]
        assert voice.max_active == 1

    @pytest.mark.asyncio
    async def test_stop_mid_sentence_stops_the_engine(self):
        said, engines = [], []

        def factory():
            # only the first utterance runs long
            engines.append(SlowEngine(said, talk=5 if not engines else 0))
            return engines[-1]

        voice = CountingVoice(engine_factory=factory)
        queue = SpeechQueue(None, FakePlayer(), voice)
        queue.submit("a very long sentence")
        for _ in range(200):
            if said:
                break
            await asyncio.sleep(0.01)
        queue.stop()
        assert await asyncio.wait_for(queue.speak("after"), 2) is True
        assert engines[0].stopped.is_set()
        assert said == ["a very long sentence", "after"]
        assert voice.max_active == 1


class FakeMusic:
    """pygame.mixer.music stand-in; busy for `busy_polls` polls (None = forever)."""

    def __init__(self, busy_polls=None):
        self.busy_polls = busy_polls
        self.loaded = None
        self.playing = False
        self.stopped = False

    def load(self, path):
        assert os.path.exists(path)
        self.loaded = path

    def play(self):
        self.playing = True

    def get_busy(self):
        if not self.playing:
            return False
        if self.busy_polls is None:
            return True
        self.busy_polls -= 1
        return self.busy_polls >= 0

    def stop(self):
        self.stopped = True
        self.playing = False

    def unload(self):
        pass


def fake_mixer(monkeypatch, music, init=None):
    mixer = SimpleNamespace(init=init or (lambda: None), quit=lambda: None, music=music)
    monkeypatch.setattr(tts.pygame, "mixer", mixer, raising=False)
    monkeypatch.setattr(tts, "_duration", lambda path: None)
    return mixer


class TestAudioPlayer:
    @pytest.mark.asyncio
    async def test_plays_until_done_and_removes_file(self, monkeypatch, tmp_path):
        music = FakeMusic(busy_polls=3)
        fake_mixer(monkeypatch, music)
        player = AudioPlayer(tmp_dir=str(tmp_path), poll_interval=0.001)
        await player.play(b"ID3audio")
        assert music.loaded.endswith(".mp3")
        assert not music.stopped
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancel_stops_music_and_removes_file(self, monkeypatch, tmp_path):
        music = FakeMusic()
        fake_mixer(monkeypatch, music)
        player = AudioPlayer(tmp_dir=str(tmp_path), poll_interval=0.001)
        task = asyncio.ensure_future(player.play(b"ID3audio"))
        while music.loaded is None:
            await asyncio.sleep(0.001)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert music.stopped
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_overrun_stops_playback(self, monkeypatch, tmp_path):
        music = FakeMusic()
        fake_mixer(monkeypatch, music)
        monkeypatch.setattr(tts, "_duration", lambda path: 0.01)
        player = AudioPlayer(tmp_dir=str(tmp_path), poll_interval=0.001)
        player.SLACK_SECONDS = 0
        await asyncio.wait_for(player.play(b"ID3audio"), 2)
        assert music.stopped
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_mixer_init_failure_is_playback_error(self, monkeypatch, tmp_path):
        def no_device():
            raise pygame.error("no audio device")

        fake_mixer(monkeypatch, FakeMusic(), init=no_device)
        player = AudioPlayer(tmp_dir=str(tmp_path))
        with pytest.raises(PlaybackError):
            await player.play(b"ID3audio")
        assert list(tmp_path.iterdir()) == []


class TestGTTS:
    @pytest.mark.asyncio
    async def test_renders_mp3(self, monkeypatch):
        class FakeTTS:
            def __init__(self, text, lang):
                self.text = text
                self.lang = lang

            def write_to_fp(self, fp):
                fp.write(f"{self.lang}:{self.text}".encode())

        monkeypatch.setattr(tts, "gTTS", FakeTTS)
        assert await GTTSSynthesizer(lang="en").synthesize("hi") == b"en:hi"

    @pytest.mark.asyncio
    async def test_service_error_is_synthesis_error(self, monkeypatch):
        class FailingTTS:
            def __init__(self, text, lang):
                pass

            def write_to_fp(self, fp):
                raise gTTSError("boom")

        monkeypatch.setattr(tts, "gTTS", FailingTTS)
        with pytest.raises(SynthesisError):
            await GTTSSynthesizer().synthesize("hi")


class TestCreateSpeechQueue:
    def test_gtts_provider(self, monkeypatch):
        monkeypatch.setattr(config, "TTS_PROVIDER", "gtts")
        queue = create_speech_queue()
        assert isinstance(queue.synthesizer, GTTSSynthesizer)
        assert isinstance(queue.player, AudioPlayer)
        assert isinstance(queue.fallback, LocalVoice)

    @pytest.mark.asyncio
    async def test_elevenlabs_provider(self, monkeypatch):
        monkeypatch.setattr(config, "TTS_PROVIDER", "elevenlabs")
        monkeypatch.setattr(config, "ELEVENLABS_API_KEY", "k")
        async with httpx.AsyncClient() as client:
            queue = create_speech_queue(client)
            assert isinstance(queue.synthesizer, ElevenLabsSynthesizer)
            assert queue.synthesizer.api_key == "k"
