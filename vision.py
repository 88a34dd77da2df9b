"""Camera-frame understanding: text reading and object detection.

Gemini does the work; when it is not available, text reading falls back to a
local Tesseract pass. Object detection has no local fallback.
"""
from __future__ import annotations

import base64
import binascii
import io
import logging
import os
import re
from dataclasses import dataclass, field
from typing import List, Tuple

import cv2
import numpy as np
import pytesseract
from PIL import Image, UnidentifiedImageError

from gemini import GeminiClient, GeminiError

log = logging.getLogger(__name__)

__all__ = ["frame_from_b64", "encode_jpeg", "read_text", "detect_objects", "parse_detection", "Detection"]

NO_TEXT = "No text found"
MAX_OBJECTS = 8

OCR_PROMPT = (
    "Extract and read all text from this image. If there's no text, respond with "
    f"'{NO_TEXT}'. Be accurate and preserve formatting where possible."
)

DETECTION_PROMPT = (
    "Analyze this image and identify all objects you can see. For each object, provide: "
    "1) The object name, 2) A confidence level (high/medium/low), 3) A brief description "
    "of its location or characteristics. Format your response as a detailed description "
    "followed by a bulleted list of objects. Be specific and helpful for someone who "
    "cannot see the image."
)

_BULLETS = ("•", "-", "*")


class ImageDecodeError(ValueError):
    """Uploaded frame is not a decodable image."""


@dataclass
class Detection:
    description: str = ""
    objects: List[str] = field(default_factory=list)

    def spoken(self) -> str:
        if not self.objects:
            return (
                "I can see the image but couldn't identify specific objects clearly. "
                "Try adjusting the camera angle or lighting."
            )
        if self.description:
            return f"{self.description}. Objects detected: {', '.join(self.objects)}"
        return f"I can see: {', '.join(self.objects)}"


def frame_from_b64(b64_string: str) -> np.ndarray:
    """Decodes a Base64 string (or data URL) into a BGR numpy array."""
    if "," in b64_string and b64_string.lstrip().startswith("data:"):
        b64_string = b64_string.split(",", 1)[1]
    try:
        img_data = base64.b64decode(b64_string)
        pil_image = Image.open(io.BytesIO(img_data)).convert("RGB")
    except (binascii.Error, UnidentifiedImageError, OSError) as e:
        raise ImageDecodeError(f"could not decode image: {e}") from e
    return cv2.cvtColor(np.array(pil_image), cv2.COLOR_RGB2BGR)


def encode_jpeg(img_bgr: np.ndarray, max_side: int = 1280, quality: int = 85) -> Tuple[str, str]:
    """Convert BGR np image to reasonably sized JPEG and base64-encode it.

    Returns (base64_string, mime_type). Scales down the image to reduce latency/cost.
    """
    if img_bgr is None or img_bgr.size == 0:
        raise ValueError("Empty image")
    h, w = img_bgr.shape[:2]
    m = max(h, w)
    if m > max_side:
        scale = max_side / float(m)
        img_bgr = cv2.resize(img_bgr, (int(w * scale), int(h * scale)), interpolation=cv2.INTER_AREA)
    ok, buf = cv2.imencode(".jpg", img_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise RuntimeError("JPEG encoding failed")
    return base64.b64encode(buf.tobytes()).decode("ascii"), "image/jpeg"


# ---------------------------------------------------------------------------
# Text reading
# ---------------------------------------------------------------------------

def _ensure_tesseract_on_windows() -> None:
    if os.name == "nt":
        common = r"C:\Program Files\Tesseract-OCR\tesseract.exe"
        if os.path.exists(common):
            pytesseract.pytesseract.tesseract_cmd = common


def _preprocess(img: np.ndarray) -> Image.Image:
    h, w = img.shape[:2]
    if max(h, w) < 800:
        img = cv2.resize(img, (w * 2, h * 2), interpolation=cv2.INTER_CUBIC)
    gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    gray = cv2.bilateralFilter(gray, 5, 75, 75)
    _, th = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    return Image.fromarray(th)


def _dehyphenate_lines(text: str) -> str:
    """Join hyphenated line breaks like 'exam-\\nple' -> 'example'."""
    text = re.sub(r"-\s*\n\s*", "", text)
    return re.sub(r"\s+", " ", text).strip()


def _tesseract_text(frame: np.ndarray) -> str:
    _ensure_tesseract_on_windows()
    try:
        txt = pytesseract.image_to_string(_preprocess(frame), config="--oem 3 --psm 6 -l eng")
    except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
        log.warning("Tesseract fallback failed: %s", e)
        return ""
    return _dehyphenate_lines(txt or "")


def read_text(client: GeminiClient, frame: np.ndarray) -> str:
    """Text visible in the frame, or "" when there is none.

    Raises GeminiError only when Gemini failed and Tesseract found nothing.
    """
    try:
        txt = client.generate(
            OCR_PROMPT,
            image=encode_jpeg(frame),
            generation_config={"temperature": 0.1, "topK": 32, "topP": 1, "maxOutputTokens": 1024},
        )
    except GeminiError as e:
        log.warning("Gemini OCR failed, using Tesseract: %s", e)
        fallback = _tesseract_text(frame)
        if not fallback:
            raise
        return fallback
    txt = re.sub(r"\n{2,}", "\n", txt.replace("\r", "\n")).strip()
    log.info("Gemini OCR used. Length=%d", len(txt))
    if txt.lower().rstrip(".") == NO_TEXT.lower():
        return ""
    return txt


# ---------------------------------------------------------------------------
# Object detection
# ---------------------------------------------------------------------------

def _is_bullet(line: str) -> bool:
    return line.strip().startswith(_BULLETS)


def parse_detection(analysis: str, limit: int = MAX_OBJECTS) -> Detection:
    """Split a Gemini analysis into a lead description and bullet object names."""
    lines = [line for line in analysis.split("\n") if line.strip()]
    first_bullet = next((i for i, line in enumerate(lines) if _is_bullet(line)), len(lines))
    description = " ".join(line.strip() for line in lines[:first_bullet]).strip()

    objects: List[str] = []
    for line in lines[first_bullet:]:
        if not _is_bullet(line):
            continue
        cleaned = re.sub(r"^[•\-*]+\s*", "", line.strip()).strip()
        # drop markdown bold around names, e.g. "**Chair**: ..."
        cleaned = cleaned.replace("**", "")
        name = re.split(r"[:\-(]", cleaned)[0].strip()
        if name:
            objects.append(name)
        if len(objects) >= limit:
            break
    return Detection(description=description, objects=objects)


def detect_objects(client: GeminiClient, frame: np.ndarray) -> Detection:
    analysis = client.generate(
        DETECTION_PROMPT,
        image=encode_jpeg(frame, quality=80),
        generation_config={"temperature": 0.4, "topK": 32, "topP": 1, "maxOutputTokens": 1024},
    )
    log.info("Gemini vision analysis: %d chars", len(analysis))
    return parse_detection(analysis)

