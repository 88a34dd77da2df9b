"""Assistant orchestration.

An Assistant owns one Session plus everything that acts on it: the command
interpreter, the speech queue and the per-mode handlers. The FastAPI server
holds one for its lifetime; `main()` runs one against the local microphone.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import numpy as np

import config
import vision
from chat import Conversation
from commands import NOT_UNDERSTOOD, Action, CommandInterpreter, Interpretation, Mode, confirmation_for
from dictation import DictationDocument
from gemini import GeminiClient, GeminiError
from navigation import Navigator
from pdf_reader import PdfError, ReadingSession, load_document
from state import Session
from tts import SpeechQueue, create_speech_queue

log = logging.getLogger(__name__)

WELCOME = (
    "Hello {name}, welcome to thirdeye. I'm truly glad you're here. Whether you'd like help "
    "reading text, identifying objects, navigating your world, exploring a PDF, or just "
    "having a friendly chat, I'm right here with you. How can I assist you today?"
)

# Spoken after a speech-recognition error, keyed by the Web Speech API error name.
# None means stay quiet.
RECOGNITION_ERRORS: Dict[str, Optional[str]] = {
    "no-speech": None,
    "aborted": None,
    "audio-capture": "Microphone access denied. Please check your browser permissions and try again.",
    "not-allowed": "Speech recognition permission denied. Please allow microphone access in your browser settings.",
    "network": "Network error occurred. Please check your internet connection.",
}
RECOGNITION_RETRY = "Sorry, I couldn't understand that. Please try again."

PDF_UNREADABLE = (
    "Unable to process this PDF file. The PDF may be password protected, corrupted, or "
    "contain only images. Please try a different PDF file with readable text content."
)


@dataclass
class Outcome:
    """What one request did, in a shape the browser can act on.

    `request` asks the page for something it owns: "frame", "file" or
    "geolocation". `url` is a maps link for the page to open.
    """
    action: Optional[str] = None
    argument: Optional[str] = None
    mode: Optional[str] = None
    spoken: List[str] = field(default_factory=list)
    url: Optional[str] = None
    request: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "argument": self.argument,
            "mode": self.mode,
            "spoken": list(self.spoken),
            "url": self.url,
            "request": self.request,
            "data": dict(self.data),
        }


class Assistant:
    def __init__(
        self,
        session: Optional[Session] = None,
        speech: Optional[SpeechQueue] = None,
        gemini: Optional[GeminiClient] = None,
        http: Optional[httpx.AsyncClient] = None,
        interpreter: Optional[CommandInterpreter] = None,
    ):
        self.session = session or Session()
        self.interpreter = interpreter or CommandInterpreter()
        self.gemini = gemini or GeminiClient()
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=config.TTS_TIMEOUT)
        self.speech = speech or create_speech_queue(self.http)
        self.chat = Conversation(self.gemini)
        self.navigator = Navigator(self.http, self.gemini)
        self.reader = ReadingSession(self.speech)
        self.dictation = DictationDocument()

        self._handlers: Dict[Action, Callable[[Interpretation, Optional[np.ndarray]], Awaitable[Outcome]]] = {
            Action.CAPTURE_IMAGE: lambda i, frame: self.capture_text(frame),
            Action.DETECT_OBJECTS: lambda i, frame: self.detect_objects(frame),
            Action.UPLOAD_PDF: lambda i, frame: self.request_pdf(),
            Action.START_READING: lambda i, frame: self.start_reading(),
            Action.STOP_READING: lambda i, frame: self.stop_reading(),
            Action.GET_LOCATION: lambda i, frame: self.get_location(),
            Action.FIND_NEARBY: lambda i, frame: self.find_nearby(i.argument or ""),
            Action.SET_DESTINATION: lambda i, frame: self.set_destination(i.argument),
            Action.GET_DIRECTIONS: lambda i, frame: self.get_directions(),
            Action.START_RECORDING: lambda i, frame: self.start_recording(),
            Action.STOP_RECORDING: lambda i, frame: self.stop_recording(),
            Action.CLEAR_CHAT: lambda i, frame: self.clear_chat(),
        }

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        log.info("Assistant started in %s mode", self.session.mode.value)
        if not self.gemini.configured:
            log.warning("GEMINI_API_KEY not set; vision and chat use local fallbacks")
        synthesizer = self.speech.synthesizer
        if synthesizer is not None and not await synthesizer.available():
            log.warning("Remote TTS not available, the local voice will be used as fallback")

    async def close(self) -> None:
        self.reader.stop()
        await self.speech.close()
        self.gemini.close()
        if self._owns_http:
            await self.http.aclose()
        log.info("Assistant closed")

    # ------------------------------------------------------------------
    # speech
    # ------------------------------------------------------------------

    def _say(self, outcome: Outcome, text: str) -> None:
        outcome.spoken.append(text)
        self.speech.submit(text)

    def speak(self, text: str) -> Outcome:
        outcome = Outcome()
        if text.strip():
            self._say(outcome, text.strip())
        return outcome

    def stop_speaking(self) -> None:
        self.reader.stop()
        self.speech.stop()

    def welcome(self, name: str) -> Outcome:
        self.session.user_name = name.strip()
        return self.speak(WELCOME.format(name=self.session.user_name or "there"))

    # ------------------------------------------------------------------
    # voice commands
    # ------------------------------------------------------------------

    async def handle_transcript(self, transcript: str, frame: Optional[np.ndarray] = None) -> Outcome:
        """Interpret one final transcript and run whatever it asks for."""
        transcript = transcript.lower().strip()
        if not transcript:
            return Outcome(mode=self.session.mode.value)
        self.session.last_transcript = transcript
        log.info("Voice command received: %r (%s)", transcript, self.session.mode.value)

        result = self.interpreter.interpret(transcript, self.session.mode)
        if result.action is Action.SWITCH_MODE:
            return self.switch_mode(result.mode, result.confirmation)
        if result.action is not None:
            outcome = await self._handlers[result.action](result, frame)
            outcome.action = result.action.value
            outcome.argument = result.argument
            outcome.mode = self.session.mode.value
            return outcome
        if result.passthrough is not None:
            return await self.converse(result.passthrough)

        outcome = Outcome(mode=self.session.mode.value)
        if self.session.mode is Mode.DICTATION and self.dictation.append(transcript):
            outcome.data = {"words": self.dictation.word_count}
            return outcome
        self._say(outcome, NOT_UNDERSTOOD)
        return outcome

    def switch_mode(self, mode: Mode, confirmation: Optional[str] = None) -> Outcome:
        """Enter `mode` (voice or UI selection) and speak its confirmation."""
        previous = self.session.set_mode(mode)
        if previous is Mode.PDF_READER and mode is not Mode.PDF_READER:
            self.reader.stop()
        if previous is Mode.DICTATION and mode is not Mode.DICTATION:
            self.dictation.recording = False
        outcome = Outcome(action=Action.SWITCH_MODE.value, mode=mode.value)
        self._say(outcome, confirmation or confirmation_for(mode))
        return outcome

    def recognition_failed(self, error: str) -> Outcome:
        """Speech recognition gave up; the interpreter is not involved."""
        self.session.listening = False
        log.warning("Speech recognition error: %s", error)
        outcome = Outcome(mode=self.session.mode.value)
        message = RECOGNITION_ERRORS.get(error, RECOGNITION_RETRY)
        if message:
            self._say(outcome, message)
        return outcome

    # ------------------------------------------------------------------
    # chat
    # ------------------------------------------------------------------

    async def converse(self, text: str) -> Outcome:
        reply = await self.chat.respond(text)
        outcome = Outcome(mode=self.session.mode.value, data={"reply": reply})
        self._say(outcome, reply)
        return outcome

    async def clear_chat(self) -> Outcome:
        self.chat.clear()
        outcome = Outcome()
        self._say(outcome, "Chat cleared.")
        return outcome

    # ------------------------------------------------------------------
    # camera
    # ------------------------------------------------------------------

    async def capture_text(self, frame: Optional[np.ndarray]) -> Outcome:
        outcome = Outcome()
        if frame is None:
            outcome.request = "frame"
            self._say(outcome, "No camera frame available to read from.")
            return outcome
        self._say(outcome, "Processing image with AI, please wait")
        try:
            text = await asyncio.to_thread(vision.read_text, self.gemini, frame)
        except GeminiError as e:
            log.error("OCR failed: %s", e)
            self._say(outcome, "Error processing image with AI OCR")
            return outcome
        outcome.data = {"text": text}
        if text:
            self._say(outcome, f"Text detected: {text}")
        else:
            self._say(outcome, "No text found in the image")
        return outcome

    async def detect_objects(self, frame: Optional[np.ndarray]) -> Outcome:
        outcome = Outcome()
        if not self.gemini.configured:
            self._say(outcome, "AI API key is not configured. Please check your settings.")
            return outcome
        if frame is None:
            outcome.request = "frame"
            self._say(outcome, "No camera frame available for object detection.")
            return outcome
        self._say(outcome, "Analyzing objects with AI Vision")
        try:
            detection = await asyncio.to_thread(vision.detect_objects, self.gemini, frame)
        except GeminiError as e:
            log.error("Object detection failed: %s", e)
            self._say(
                outcome,
                "Error analyzing the image with AI Vision. Please check your internet connection and try again.",
            )
            return outcome
        outcome.data = {"description": detection.description, "objects": detection.objects}
        self._say(outcome, detection.spoken())
        return outcome

    # ------------------------------------------------------------------
    # documents
    # ------------------------------------------------------------------

    async def request_pdf(self) -> Outcome:
        return Outcome(request="file")

    async def load_pdf(self, filename: str, content_type: Optional[str], data: bytes) -> Outcome:
        outcome = Outcome(mode=self.session.mode.value)
        is_pdf = content_type == "application/pdf" or (filename or "").lower().endswith(".pdf")
        if not data or not is_pdf:
            self._say(outcome, "Please select a valid PDF file")
            return outcome
        self._say(outcome, "Processing PDF document with AI, please wait")
        try:
            document = await load_document(data, self.gemini)
        except PdfError as e:
            log.error("PDF processing error: %s", e)
            self._say(outcome, PDF_UNREADABLE)
            return outcome
        self.reader.load(document)
        outcome.data = {"pages": document.pages, "words": len(document.words), "text": document.text}
        self._say(outcome, document.summary())
        return outcome

    async def start_reading(self) -> Outcome:
        outcome = Outcome()
        outcome.data = {"status": self.reader.start(), **self.reader.status()}
        return outcome

    async def stop_reading(self) -> Outcome:
        outcome = Outcome()
        if not self.reader.stop():
            self._say(outcome, "No active reading.")
        outcome.data = self.reader.status()
        return outcome

    # ------------------------------------------------------------------
    # navigation
    # ------------------------------------------------------------------

    async def get_location(self) -> Outcome:
        outcome = Outcome()
        if self.navigator.has_location:
            self._say(outcome, f"Your current location is: {self.navigator.address}")
            return outcome
        outcome.request = "geolocation"
        self._say(outcome, "Getting your current location...")
        return outcome

    async def update_location(self, latitude: float, longitude: float) -> Outcome:
        outcome = Outcome(mode=self.session.mode.value)
        self._say(outcome, await self.navigator.locate(latitude, longitude))
        outcome.data = {"address": self.navigator.address}
        return outcome

    async def find_nearby(self, category: str) -> Outcome:
        outcome = Outcome()
        text, outcome.url = self.navigator.find_nearby(category)
        self._say(outcome, text)
        return outcome

    async def set_destination(self, destination: Optional[str]) -> Outcome:
        outcome = Outcome()
        if not destination:
            self._say(outcome, "Please tell me where you'd like to go.")
            return outcome
        self._say(outcome, self.navigator.set_destination(destination))
        return outcome

    async def get_directions(self) -> Outcome:
        outcome = Outcome()
        text, outcome.url = self.navigator.directions()
        self._say(outcome, text)
        return outcome

    async def ask_navigation(self, text: str) -> Outcome:
        """Free-form navigation question from the navigation panel."""
        reply, request = await self.navigator.assist(text)
        outcome = Outcome(mode=self.session.mode.value)
        self._say(outcome, reply)
        if request.destination:
            self._say(outcome, self.navigator.set_destination(request.destination))
        elif request.category:
            spoken, outcome.url = self.navigator.find_nearby(request.category)
            self._say(outcome, spoken)
        return outcome

    # ------------------------------------------------------------------
    # dictation
    # ------------------------------------------------------------------

    async def start_recording(self) -> Outcome:
        outcome = Outcome()
        self._say(outcome, self.dictation.start())
        return outcome

    async def stop_recording(self) -> Outcome:
        outcome = Outcome()
        self._say(outcome, self.dictation.stop())
        outcome.data = {"words": self.dictation.word_count}
        return outcome

    async def enhance_dictation(self) -> Outcome:
        outcome = Outcome(mode=self.session.mode.value)
        self._say(outcome, await self.dictation.enhance(self.gemini))
        outcome.data = {"text": self.dictation.text}
        return outcome

    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        return {
            **self.session.snapshot(),
            "speech": self.speech.state.value,
            "speaking": self.speech.is_speaking,
            "pending_speech": len(self.speech.pending),
            "reading": self.reader.status(),
            "dictation": {"recording": self.dictation.recording, "words": self.dictation.word_count},
            "location": self.navigator.address,
            "chat_messages": len(self.chat.messages),
        }

    def chat_history(self) -> List[Dict[str, Any]]:
        return [message.to_dict() for message in self.chat.messages]


async def run_local(assistant: Optional[Assistant] = None, listener_factory: Optional[Callable[..., Any]] = None) -> None:
    """Drive an assistant from the local microphone.

    Runs until "exit" or "quit" is heard, or until the listener thread dies.
    """
    if listener_factory is None:
        from voice_thread import VoiceListener as listener_factory

    assistant = assistant or Assistant()
    await assistant.start()
    loop = asyncio.get_running_loop()
    # None marks the end of the transcript stream
    transcripts: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    listener = listener_factory(
        on_transcript=lambda text: loop.call_soon_threadsafe(transcripts.put_nowait, text),
        on_error=lambda kind: loop.call_soon_threadsafe(assistant.recognition_failed, kind),
        on_finished=lambda: loop.call_soon_threadsafe(transcripts.put_nowait, None),
    )
    listener.start()
    assistant.session.listening = True
    assistant.speak("thirdeye started. Say a command.")
    try:
        while True:
            text = await transcripts.get()
            if text is None:
                log.warning("Voice listener exited, shutting down")
                break
            if text in ("exit", "quit"):
                await assistant.speech.speak("Goodbye.")
                break
            await assistant.handle_transcript(text)
    finally:
        listener.stop()
        # on_finished must run while the loop is still open
        await asyncio.to_thread(listener.join, 1.0)
        assistant.session.listening = False
        await assistant.close()


def main() -> None:
    config.configure_logging()
    try:
        asyncio.run(run_local())
    except KeyboardInterrupt:
        log.info("Goodbye!")


if __name__ == "__main__":
    main()
