"""Speech-to-document dictation."""
from __future__ import annotations

import html
import logging
import re

from gemini import GeminiClient, GeminiError

log = logging.getLogger(__name__)

ENHANCE_PROMPT = (
    "Please improve and format the following transcribed text for better readability, "
    "correct grammar, add proper punctuation, and organize it into paragraphs where "
    "appropriate. Keep the original meaning and content intact:\n\n{text}"
)

_DOC_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<title>{title}</title>
<style>
body {{ font-family: 'Times New Roman', serif; font-size: 12pt; line-height: 1.5; margin: 1in; }}
h1 {{ font-size: 16pt; font-weight: bold; margin-bottom: 12pt; }}
p {{ margin-bottom: 12pt; text-align: justify; }}
</style>
</head>
<body>
<h1>{title}</h1>
{paragraphs}
</body>
</html>
"""


class DictationDocument:
    """Transcribed text collected while recording is on."""

    def __init__(self, title: str = "My Document"):
        self.title = title
        self.text = ""
        self.recording = False

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    @property
    def filename(self) -> str:
        stem = re.sub(r"[^a-z0-9]", "_", self.title, flags=re.IGNORECASE).lower() or "document"
        return f"{stem}.doc"

    def start(self) -> str:
        if self.recording:
            return "Already recording."
        self.recording = True
        return "Recording started. Begin speaking and I'll transcribe everything you say."

    def stop(self) -> str:
        if not self.recording:
            return "Recording is not active."
        self.recording = False
        return "Recording stopped. Your text has been transcribed."

    def append(self, transcript: str) -> bool:
        """Add a final transcript; ignored unless recording."""
        transcript = transcript.strip()
        if not self.recording or not transcript:
            return False
        self.text = f"{self.text} {transcript}".strip() if self.text else transcript
        return True

    def clear(self) -> str:
        self.text = ""
        return "Text cleared. Ready for new recording."

    async def enhance(self, gemini: GeminiClient) -> str:
        if not self.text.strip():
            return "No text to enhance. Please record some speech first."
        try:
            improved = await gemini.generate_async(ENHANCE_PROMPT.format(text=self.text))
        except GeminiError as e:
            log.warning("Text enhancement failed: %s", e)
            return "Unable to enhance text. The original transcription is still available."
        if improved:
            self.text = improved
        return "Text has been enhanced and formatted for better readability."

    def to_html(self) -> str:
        """Word-compatible HTML export."""
        paragraphs = "\n".join(
            f"<p>{html.escape(p.strip())}</p>" for p in self.text.split("\n") if p.strip()
        )
        return _DOC_TEMPLATE.format(title=html.escape(self.title), paragraphs=paragraphs)
