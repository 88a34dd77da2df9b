# voice_thread.py

import json
import logging
import queue
import threading
from functools import lru_cache
from typing import Callable, Optional, Sequence

from vosk import KaldiRecognizer, Model

import config

log = logging.getLogger(__name__)

# ~0.1 s of audio per block at 16 kHz; smaller blocks reduce command latency
BLOCK_SIZE = 1600


@lru_cache(maxsize=1)
def load_model(lang: str = config.VOSK_LANG) -> Model:
    """Vosk model, loaded once per process (downloads on first use)."""
    log.info("Loading Vosk model (%s)", lang)
    return Model(lang=lang)


def _final_text(result: str) -> Optional[str]:
    try:
        text = json.loads(result).get("text") or ""
    except ValueError:
        return None
    text = " ".join(text.lower().split())
    return text or None


class TranscriptRecognizer:
    """Turns 16 kHz mono int16 PCM into finalized transcripts.

    Partial hypotheses are never surfaced; the interpreter only ever sees
    final results.
    """

    def __init__(self, model: Optional[Model] = None, sample_rate: int = config.VOSK_SAMPLE_RATE, grammar: Optional[Sequence[str]] = None):
        model = model or load_model()
        if grammar:
            self._rec = KaldiRecognizer(model, sample_rate, json.dumps(list(grammar)))
        else:
            self._rec = KaldiRecognizer(model, sample_rate)

    def feed(self, pcm: bytes) -> Optional[str]:
        if not pcm or not self._rec.AcceptWaveform(pcm):
            return None
        return _final_text(self._rec.Result())

    def flush(self) -> Optional[str]:
        """Whatever is left in the buffer once the audio ends."""
        return _final_text(self._rec.FinalResult())


class VoiceListener(threading.Thread):
    """Reads the local microphone and reports each final transcript.

    `on_error` receives a recognition error name ("audio-capture",
    "aborted") matching the ones the browser reports. `on_finished` is
    called once when the thread exits, for whatever reason.
    """

    def __init__(
        self,
        on_transcript: Callable[[str], None],
        on_error: Optional[Callable[[str], None]] = None,
        on_finished: Optional[Callable[[], None]] = None,
        recognizer: Optional[TranscriptRecognizer] = None,
    ):
        super().__init__(name="voice-listener", daemon=True)
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.on_finished = on_finished
        self.recognizer = recognizer
        self._stop_event = threading.Event()
        self._audio: "queue.Queue[bytes]" = queue.Queue()

    def stop(self) -> None:
        self._stop_event.set()

    def _callback(self, indata, frames, time, status) -> None:
        if status:
            log.debug("Input status: %s", status)
        self._audio.put(bytes(indata))

    def _report(self, kind: str) -> None:
        if self.on_error is not None:
            self.on_error(kind)

    def run(self) -> None:
        try:
            self._listen()
        finally:
            log.info("Voice listener stopped.")
            if self.on_finished is not None:
                self.on_finished()

    def _listen(self) -> None:
        try:
            # raises OSError when the PortAudio library itself is missing
            import sounddevice as sd
        except (ImportError, OSError) as e:
            log.error("Audio input unavailable: %s", e)
            self._report("audio-capture")
            return

        try:
            recognizer = self.recognizer or TranscriptRecognizer()
            log.info("Voice listener started.")
            with sd.RawInputStream(
                samplerate=config.VOSK_SAMPLE_RATE,
                blocksize=BLOCK_SIZE,
                dtype="int16",
                channels=1,
                callback=self._callback,
            ):
                while not self._stop_event.is_set():
                    try:
                        data = self._audio.get(timeout=0.2)
                    except queue.Empty:
                        continue
                    text = recognizer.feed(data)
                    if text:
                        log.info("Recognized: %r", text)
                        self.on_transcript(text)
        except sd.PortAudioError as e:
            log.error("Microphone unavailable: %s", e)
            self._report("audio-capture")
        except Exception:
            log.exception("Voice listener failed")
            self._report("aborted")
