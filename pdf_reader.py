"""PDF documents and incremental read-aloud sessions.

A ReadingSession feeds the document to the speech queue one chunk at a time,
so a stop cuts off the chunk being read and leaves other queued speech
alone. Chunks prefer sentence boundaries and never exceed CHUNK_MAX characters.
"""
from __future__ import annotations

import asyncio
import io
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from gemini import GeminiClient, GeminiError

log = logging.getLogger(__name__)

CHUNK_MAX = 240  # balance responsiveness with fewer boundaries

_SENTENCE_END_RE = re.compile(r"([.!?])\s+")

CLEANUP_PROMPT = (
    "Please clean up and improve the readability of this PDF text content. Remove any "
    "formatting artifacts, fix spacing issues, and organize it into proper paragraphs. "
    "Make it suitable for text-to-speech reading:\n\n{text}"
)


class PdfError(RuntimeError):
    """The upload is not a readable PDF (corrupt, encrypted, or image-only)."""


def normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def extract_text(data: bytes) -> Tuple[int, str]:
    """(page count, whitespace-normalised text) of a PDF."""
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            raise PdfError("PDF is password protected")
        pages = [page.extract_text() or "" for page in reader.pages]
    except PdfReadError as e:
        raise PdfError(f"could not read PDF: {e}") from e
    text = normalize(" ".join(p for p in pages if p.strip()))
    if not text:
        raise PdfError("PDF contains no readable text")
    return len(pages), text


def next_chunk(text: str, start: int) -> Tuple[str, int]:
    """Return next chunk and new position.
    Prefer sentence boundaries; fall back to fixed size.
    """
    remaining = text[start:]
    if not remaining:
        return "", start
    if len(remaining) <= CHUNK_MAX:
        return remaining, len(text)
    snippet = remaining[:CHUNK_MAX]
    matches = list(_SENTENCE_END_RE.finditer(snippet))
    if matches:
        end = start + matches[-1].end()
        return text[start:end], end
    # no sentence boundary; cut at the last space, else at max
    space = snippet.rfind(" ")
    end = start + (space + 1 if space > 0 else CHUNK_MAX)
    return text[start:end], end


def chunks(text: str) -> List[str]:
    out = []
    pos = 0
    while pos < len(text):
        chunk, pos = next_chunk(text, pos)
        out.append(chunk)
    return out


@dataclass
class PdfDocument:
    text: str
    pages: int
    enhanced: bool = False
    words: List[str] = field(init=False)

    def __post_init__(self) -> None:
        self.words = [w for w in re.split(r"\s+", self.text) if w.strip()]

    def summary(self) -> str:
        how = "with AI enhancement" if self.enhanced else "without AI enhancement"
        return (
            f"PDF processed successfully {how}. The document contains {self.pages} pages "
            f"with {len(self.words)} words. Say \"read PDF\" to start reading with word highlighting."
        )


async def load_document(data: bytes, gemini: Optional[GeminiClient] = None) -> PdfDocument:
    """Extract text (in a worker thread) and let Gemini tidy it when configured."""
    pages, text = await asyncio.to_thread(extract_text, data)
    if gemini is None or not gemini.configured:
        return PdfDocument(text, pages)
    try:
        cleaned = await gemini.generate_async(CLEANUP_PROMPT.format(text=text))
    except GeminiError as e:
        log.warning("Gemini text processing failed, keeping extracted text: %s", e)
        return PdfDocument(text, pages)
    return PdfDocument(cleaned or text, pages, enhanced=bool(cleaned))


class ReadingSession:
    """Reads one document aloud through a SpeechQueue."""

    def __init__(self, speech):
        self.speech = speech
        self.document: Optional[PdfDocument] = None
        self.word_index = 0
        self._task: Optional[asyncio.Task] = None
        self._chunk: Optional[asyncio.Future] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def load(self, document: PdfDocument) -> None:
        self.stop()
        self.document = document
        self.word_index = 0

    def status(self) -> dict:
        total = len(self.document.words) if self.document else 0
        return {"active": self.active, "position": self.word_index, "total": total}

    def start(self) -> str:
        """Begin reading from the top; returns a status message for the UI."""
        if self.document is None:
            self.speech.submit("Please upload a PDF document first")
            return "no document"
        if self.active:
            return "already reading"
        self.word_index = 0
        self._task = asyncio.get_running_loop().create_task(self._read(self.document))
        return "reading"

    def stop(self) -> bool:
        """Stop reading; True if a session was running.

        Only the chunk being read is cut off; other queued speech is kept.
        """
        if not self.active:
            return False
        if self._chunk is not None:
            self.speech.cancel(self._chunk)
            self._chunk = None
        self._task.cancel()
        self._task = None
        return True

    async def _read(self, document: PdfDocument) -> None:
        log.info("Reading %d words", len(document.words))
        for chunk in chunks(document.text):
            self._chunk = self.speech.submit(chunk)
            played = await self._chunk
            if not played:
                # queue was stopped from elsewhere
                log.info("Reading interrupted at word %d", self.word_index)
                return
            self.word_index = min(len(document.words), self.word_index + len(chunk.split()))
        log.info("Finished reading")
