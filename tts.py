"""Speech output queue.

Every spoken message goes through a single SpeechQueue so that utterances
never overlap and are heard in the order they were submitted:

- remote synthesis first (ElevenLabs, or gTTS), played with pygame.mixer;
- if synthesis fails, the on-device voice (pyttsx3) says it instead;
- if there is no on-device voice either, the utterance is dropped silently.

A finished, failed or dropped utterance always advances the queue. Nothing is
retried. stop() empties the queue and cuts off whatever is playing; cancel()
drops a single utterance.
"""
from __future__ import annotations

import asyncio
import io
import logging
import os
import re
import tempfile
import threading
from collections import deque
from enum import Enum
from typing import Callable, Deque, Optional, Sequence, Set, Tuple

import httpx
import pygame
import pyttsx3
from gtts import gTTS, gTTSError
from mutagen import MutagenError
from mutagen.mp3 import MP3

import config

log = logging.getLogger(__name__)


class SynthesisError(RuntimeError):
    """Remote synthesis unavailable or failed."""


class PlaybackError(RuntimeError):
    """Synthesized audio could not be played."""


class SpeechState(Enum):
    IDLE = "idle"
    SPEAKING = "speaking"
    SPEAKING_PENDING = "speaking+pending"


# ---------------------------------------------------------------------------
# Remote synthesis
# ---------------------------------------------------------------------------

class ElevenLabsSynthesizer:
    """Text -> MP3 bytes through the ElevenLabs text-to-speech API."""

    def __init__(
        self,
        api_key: str,
        voice_id: str = config.ELEVENLABS_VOICE_ID,
        model_id: str = config.ELEVENLABS_MODEL,
        base_url: str = config.ELEVENLABS_API_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = config.TTS_TIMEOUT,
    ):
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def synthesize(self, text: str) -> bytes:
        if not self.api_key:
            raise SynthesisError("ELEVENLABS_API_KEY is not configured")
        payload = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.5,
                "style": 0.0,
                "use_speaker_boost": True,
            },
        }
        headers = {
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
            "xi-api-key": self.api_key,
        }
        url = f"{self.base_url}/text-to-speech/{self.voice_id}"
        try:
            r = await self._client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise SynthesisError(f"ElevenLabs request failed: {e}") from e
        if not r.is_success:
            raise SynthesisError(f"ElevenLabs API error {r.status_code}: {r.text[:200]}")
        if not r.content:
            raise SynthesisError("ElevenLabs returned no audio")
        return r.content

    async def available(self) -> bool:
        """True if the API key is accepted."""
        if not self.api_key:
            return False
        try:
            r = await self._client.get(f"{self.base_url}/voices", headers={"xi-api-key": self.api_key})
        except httpx.HTTPError as e:
            log.warning("ElevenLabs TTS not reachable: %s", e)
            return False
        return r.is_success

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class GTTSSynthesizer:
    """Text -> MP3 bytes through Google Translate's TTS endpoint."""

    def __init__(self, lang: str = config.GTTS_LANG):
        self.lang = lang

    def _render(self, text: str) -> bytes:
        buf = io.BytesIO()
        gTTS(text=text, lang=self.lang).write_to_fp(buf)
        return buf.getvalue()

    async def synthesize(self, text: str) -> bytes:
        try:
            audio = await asyncio.to_thread(self._render, text)
        except (gTTSError, ValueError, AssertionError) as e:
            raise SynthesisError(f"gTTS failed: {e}") from e
        if not audio:
            raise SynthesisError("gTTS returned no audio")
        return audio

    async def available(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Playback
# ---------------------------------------------------------------------------

def _duration(path: str) -> Optional[float]:
    try:
        length = float(getattr(MP3(path).info, "length", 0.0) or 0.0)
    except MutagenError:
        return None
    return length or None


class AudioPlayer:
    """Plays MP3 bytes through pygame.mixer without blocking the event loop."""

    # allowance past the MP3's own duration before we stop waiting on the mixer
    SLACK_SECONDS = 2.0

    def __init__(self, tmp_dir: Optional[str] = None, poll_interval: float = 0.05):
        self.tmp_dir = tmp_dir
        self.poll_interval = poll_interval
        self._ready = False

    def _ensure_mixer(self) -> None:
        if self._ready:
            return
        try:
            pygame.mixer.init()
        except pygame.error as e:
            raise PlaybackError(f"audio output unavailable: {e}") from e
        self._ready = True

    async def play(self, audio: bytes) -> None:
        self._ensure_mixer()
        fd, path = tempfile.mkstemp(suffix=".mp3", dir=self.tmp_dir)
        with os.fdopen(fd, "wb") as fh:
            fh.write(audio)
        try:
            length = _duration(path)
            try:
                pygame.mixer.music.load(path)
                pygame.mixer.music.play()
            except pygame.error as e:
                raise PlaybackError(f"pygame could not play audio: {e}") from e
            loop = asyncio.get_running_loop()
            started = loop.time()
            try:
                while pygame.mixer.music.get_busy():
                    if length is not None and loop.time() - started > length + self.SLACK_SECONDS:
                        log.warning("Playback overran %.1fs, stopping", length)
                        pygame.mixer.music.stop()
                        break
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                pygame.mixer.music.stop()
                raise
        finally:
            try:
                pygame.mixer.music.unload()
            except pygame.error:
                pass
            try:
                os.remove(path)
            except OSError:
                pass

    def close(self) -> None:
        if self._ready:
            pygame.mixer.quit()
            self._ready = False


# ---------------------------------------------------------------------------
# Local fallback voice
# ---------------------------------------------------------------------------

def _languages(voice) -> Sequence[str]:
    out = []
    for lang in getattr(voice, "languages", None) or []:
        if isinstance(lang, bytes):
            lang = lang.decode("utf-8", "ignore")
        # espeak prefixes a priority byte, e.g. b"\x05en-gb"
        out.append(re.sub(r"[^a-z_-]", "", str(lang).lower()))
    return out


def is_english(voice) -> bool:
    if any(lang.startswith("en") for lang in _languages(voice)):
        return True
    ident = f"{getattr(voice, 'name', '')} {getattr(voice, 'id', '')}".lower()
    return "english" in ident or "en-us" in ident or "en_us" in ident


def select_voice(voices: Sequence, markers: Sequence[str] = config.PREFERRED_VOICE_MARKERS):
    """Pick the fallback voice.

    Order: an English voice named enhanced/natural/premium (or a vendor voice),
    then any English voice, then whatever comes first.
    """
    english = [v for v in voices if is_english(v)]
    for voice in english:
        name = (getattr(voice, "name", "") or "").lower()
        if any(marker in name for marker in markers):
            return voice
    if english:
        return english[0]
    return voices[0] if voices else None


class _Utterance:
    """One local utterance; `cancelled` and `engine` are guarded by LocalVoice._lock."""

    def __init__(self, text: str):
        self.text = text
        self.cancelled = False
        self.engine = None


class LocalVoice:
    """On-device speech through pyttsx3.

    The engine is created inside the worker thread for every utterance; the
    SAPI/NSSpeech drivers are not safe to share across threads. A worker
    thread cannot be cancelled, so speak() always waits for it to return,
    even when the calling task is cancelled.
    """

    def __init__(
        self,
        rate: int = config.LOCAL_VOICE_RATE,
        volume: float = config.LOCAL_VOICE_VOLUME,
        engine_factory: Callable = pyttsx3.init,
    ):
        self.rate = rate
        self.volume = volume
        self._engine_factory = engine_factory
        self._lock = threading.Lock()
        self.available = True

    def _say(self, utterance: _Utterance) -> None:
        engine = self._engine_factory()
        engine.setProperty("rate", self.rate)
        engine.setProperty("volume", self.volume)
        voice = select_voice(engine.getProperty("voices") or [])
        if voice is not None:
            engine.setProperty("voice", voice.id)
        with self._lock:
            if utterance.cancelled:
                return
            utterance.engine = engine
        try:
            engine.say(utterance.text)
            engine.runAndWait()
        finally:
            with self._lock:
                utterance.engine = None

    async def speak(self, text: str) -> None:
        if not self.available:
            log.info("No local speech synthesis, dropping: %r", text[:60])
            return
        utterance = _Utterance(text)
        worker = asyncio.ensure_future(asyncio.to_thread(self._say, utterance))
        try:
            await asyncio.shield(worker)
        except asyncio.CancelledError:
            self._cancel(utterance)
            await asyncio.wait({worker})
            raise
        except (RuntimeError, OSError, ImportError) as e:
            # no driver on this machine; stay silent from now on
            log.warning("Local speech synthesis unavailable: %s", e)
            self.available = False

    def _cancel(self, utterance: _Utterance) -> None:
        with self._lock:
            utterance.cancelled = True
            engine = utterance.engine
        if engine is not None:
            engine.stop()


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

def _resolve(done: "asyncio.Future[bool]", value: bool) -> None:
    if not done.done():
        done.set_result(value)


class SpeechQueue:
    """FIFO of utterances with at most one in flight.

    An interrupted utterance may need a moment to wind down (a pyttsx3
    worker thread, for one). The next utterance waits for it before it starts.
    """

    def __init__(self, synthesizer, player, fallback):
        self.synthesizer = synthesizer
        self.player = player
        self.fallback = fallback
        self._pending: Deque[Tuple[str, "asyncio.Future[bool]"]] = deque()
        self._current: Optional[asyncio.Task] = None
        self._current_done: Optional["asyncio.Future[bool]"] = None
        self._stopping: Set[asyncio.Task] = set()

    @property
    def state(self) -> SpeechState:
        if self._current is None:
            return SpeechState.IDLE
        if self._pending:
            return SpeechState.SPEAKING_PENDING
        return SpeechState.SPEAKING

    @property
    def is_speaking(self) -> bool:
        return self._current is not None

    @property
    def pending(self) -> Tuple[str, ...]:
        return tuple(text for text, _ in self._pending)

    def submit(self, text: str) -> "asyncio.Future[bool]":
        """Queue `text` for speaking.

        The returned future resolves True once the utterance is over (played or
        given up on), or False if stop() or cancel() discarded it.
        """
        done = asyncio.get_running_loop().create_future()
        if self._current is None:
            self._start(text, done)
        else:
            self._pending.append((text, done))
            log.debug("Queued speech (%d pending): %r", len(self._pending), text[:60])
        return done

    async def speak(self, text: str) -> bool:
        return await self.submit(text)

    def stop(self) -> None:
        """Drop everything pending and cut off the current utterance."""
        dropped = len(self._pending)
        while self._pending:
            _, done = self._pending.popleft()
            _resolve(done, False)
        interrupted = self._interrupt()
        if interrupted or dropped:
            log.info("Speech stopped (%d pending dropped)", dropped)

    def cancel(self, done: "asyncio.Future[bool]") -> None:
        """Drop the one utterance `done` belongs to, leaving the rest queued."""
        for item in self._pending:
            if item[1] is done:
                self._pending.remove(item)
                _resolve(done, False)
                return
        if done is self._current_done and self._interrupt():
            self._advance()

    async def drain(self) -> None:
        """Wait until nothing is playing or pending."""
        while self._current is not None:
            await asyncio.wait({self._current})

    async def close(self) -> None:
        self.stop()
        if self._stopping:
            await asyncio.wait(set(self._stopping))
        if self.synthesizer is not None:
            await self.synthesizer.aclose()
        self.player.close()

    def _interrupt(self) -> bool:
        current, self._current = self._current, None
        done, self._current_done = self._current_done, None
        if current is None:
            return False
        current.cancel()
        self._stopping.add(current)
        current.add_done_callback(self._stopping.discard)
        # a task cancelled before its first step never runs its handlers
        _resolve(done, False)
        return True

    def _start(self, text: str, done: "asyncio.Future[bool]") -> None:
        self._current_done = done
        winding_down = set(self._stopping)
        self._current = asyncio.get_running_loop().create_task(self._run(text, done, winding_down))

    def _advance(self) -> None:
        if self._pending:
            text, done = self._pending.popleft()
            self._start(text, done)

    async def _run(self, text: str, done: "asyncio.Future[bool]", winding_down: Set[asyncio.Task]) -> None:
        try:
            if winding_down:
                await asyncio.wait(winding_down)
            await self._perform(text)
        except asyncio.CancelledError:
            _resolve(done, False)
            raise
        except Exception:
            log.exception("Speech request failed: %r", text[:60])
        finally:
            _resolve(done, True)
            if self._current is asyncio.current_task():
                self._current = None
                self._current_done = None
                self._advance()

    async def _perform(self, text: str) -> None:
        if self.synthesizer is None:
            await self._speak_locally(text)
            return
        try:
            audio = await self.synthesizer.synthesize(text)
        except SynthesisError as e:
            log.warning("Remote synthesis failed, falling back to local voice: %s", e)
            await self._speak_locally(text)
            return
        try:
            await self.player.play(audio)
        except PlaybackError as e:
            log.warning("Playback failed, skipping utterance: %s", e)

    async def _speak_locally(self, text: str) -> None:
        try:
            await self.fallback.speak(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Local speech failed, utterance dropped: %s", e)


def create_speech_queue(client: Optional[httpx.AsyncClient] = None) -> SpeechQueue:
    """Speech queue wired from config (TTS_PROVIDER)."""
    if config.TTS_PROVIDER == "gtts":
        synthesizer = GTTSSynthesizer()
    else:
        synthesizer = ElevenLabsSynthesizer(config.ELEVENLABS_API_KEY, client=client)
    return SpeechQueue(synthesizer, AudioPlayer(), LocalVoice())
