import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response
from pydantic import BaseModel

import config
import vision
from assistant import Assistant
from commands import Mode

log = logging.getLogger(__name__)


# --- Pydantic Models for API ---
class CommandRequest(BaseModel):
    transcript: str
    image_b64: Optional[str] = None


class ModeRequest(BaseModel):
    mode: str


class SpeakRequest(BaseModel):
    text: str


class WelcomeRequest(BaseModel):
    name: str


class AnalyzeRequest(BaseModel):
    command: str  # "ocr" or "detect"
    image_b64: str


class LocationRequest(BaseModel):
    latitude: float
    longitude: float


class NavigationRequest(BaseModel):
    text: str


class RecognitionErrorRequest(BaseModel):
    error: str


def _frame(image_b64: Optional[str]):
    if not image_b64:
        return None
    try:
        return vision.frame_from_b64(image_b64)
    except vision.ImageDecodeError as e:
        log.warning("Error decoding base64 image: %s", e)
        raise HTTPException(status_code=400, detail="Sorry, I could not read the image.")


def create_app(assistant_factory: Callable[[], Assistant] = Assistant) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        assistant = assistant_factory()
        await assistant.start()
        app.state.assistant = assistant
        try:
            yield
        finally:
            await assistant.close()

    app = FastAPI(title="thirdeye", lifespan=lifespan)

    # Allows the browser UI to call the API from other origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_assistant(request: Request) -> Assistant:
        return request.app.state.assistant

    @app.get("/")
    async def get_index():
        """Serves the main index.html web app."""
        if not os.path.exists(config.INDEX_HTML):
            log.error("%s not found in %s", config.INDEX_HTML, os.getcwd())
            raise HTTPException(status_code=404, detail="index.html not found")
        return FileResponse(config.INDEX_HTML)

    @app.get("/api/status")
    async def status(request: Request):
        return get_assistant(request).status()

    @app.get("/api/chat")
    async def chat_history(request: Request):
        """Chat messages so far, oldest first."""
        return get_assistant(request).chat_history()

    @app.post("/api/command")
    async def command(body: CommandRequest, request: Request):
        """Final transcript from the browser's speech recognition."""
        frame = _frame(body.image_b64)
        outcome = await get_assistant(request).handle_transcript(body.transcript, frame)
        return outcome.to_dict()

    @app.post("/api/mode")
    async def select_mode(body: ModeRequest, request: Request):
        try:
            mode = Mode(body.mode)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"unknown mode: {body.mode}")
        return get_assistant(request).switch_mode(mode).to_dict()

    @app.post("/api/speak")
    async def speak(body: SpeakRequest, request: Request):
        return get_assistant(request).speak(body.text).to_dict()

    @app.post("/api/stop")
    async def stop(request: Request):
        assistant = get_assistant(request)
        assistant.stop_speaking()
        return assistant.status()

    @app.post("/api/welcome")
    async def welcome(body: WelcomeRequest, request: Request):
        return get_assistant(request).welcome(body.name).to_dict()

    @app.post("/api/analyze")
    async def analyze(body: AnalyzeRequest, request: Request):
        """OCR or object detection on one camera frame."""
        log.info("Received analyze command: %s", body.command)
        assistant = get_assistant(request)
        frame = _frame(body.image_b64)
        if body.command in ("ocr", "read", "capture"):
            outcome = await assistant.capture_text(frame)
        elif body.command in ("detect", "object-detection", "what"):
            outcome = await assistant.detect_objects(frame)
        else:
            raise HTTPException(status_code=422, detail=f"unknown command: {body.command}")
        return outcome.to_dict()

    @app.post("/api/pdf")
    async def upload_pdf(request: Request, file: UploadFile = File(...)):
        data = await file.read()
        outcome = await get_assistant(request).load_pdf(file.filename or "", file.content_type, data)
        return outcome.to_dict()

    @app.post("/api/location")
    async def location(body: LocationRequest, request: Request):
        outcome = await get_assistant(request).update_location(body.latitude, body.longitude)
        return outcome.to_dict()

    @app.post("/api/navigation")
    async def navigation(body: NavigationRequest, request: Request):
        outcome = await get_assistant(request).ask_navigation(body.text)
        return outcome.to_dict()

    @app.post("/api/recognition-error")
    async def recognition_error(body: RecognitionErrorRequest, request: Request):
        return get_assistant(request).recognition_failed(body.error).to_dict()

    @app.post("/api/dictation/enhance")
    async def enhance_dictation(request: Request):
        outcome = await get_assistant(request).enhance_dictation()
        return outcome.to_dict()

    @app.post("/api/dictation/clear")
    async def clear_dictation(request: Request):
        assistant = get_assistant(request)
        return assistant.speak(assistant.dictation.clear()).to_dict()

    @app.get("/api/dictation/export")
    async def export_dictation(request: Request):
        document = get_assistant(request).dictation
        if not document.text.strip():
            raise HTTPException(status_code=404, detail="No text to download")
        return Response(
            content=document.to_html(),
            media_type="application/msword",
            headers={"Content-Disposition": f'attachment; filename="{document.filename}"'},
        )

    @app.websocket("/ws/voice")
    async def ws_voice(websocket: WebSocket):
        """Streams 16kHz mono PCM int16 audio to Vosk.

        Each final transcript is run through the assistant and answered with
        {"type": "transcript", "text": ..., "outcome": {...}}.
        """
        from voice_thread import TranscriptRecognizer

        await websocket.accept()
        assistant: Assistant = websocket.app.state.assistant
        try:
            recognizer = await asyncio.to_thread(TranscriptRecognizer)
        except Exception as e:
            log.error("Failed to load Vosk model: %s", e)
            await websocket.send_json({"type": "error", "message": "Speech recognition is not available on the server"})
            await websocket.close()
            return

        assistant.session.listening = True
        try:
            while True:
                data = await websocket.receive_bytes()
                text = await asyncio.to_thread(recognizer.feed, data)
                if not text:
                    continue
                log.info("Final: %s", text)
                outcome = await assistant.handle_transcript(text)
                await websocket.send_json({"type": "transcript", "text": text, "outcome": outcome.to_dict()})
        except WebSocketDisconnect:
            log.info("Voice client disconnected")
        except Exception as e:
            log.exception("Voice socket error")
            await websocket.send_json({"type": "error", "message": str(e)})
            await websocket.close()
        finally:
            assistant.session.listening = False

    return app


def main() -> None:
    config.configure_logging()
    log.info("Starting thirdeye server on %s:%d", config.HOST, config.PORT)
    log.info("Looking for %s in: %s", config.INDEX_HTML, os.getcwd())
    uvicorn.run(create_app(), host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
