"""Configuration constants for the thirdeye assistant server.

Notes:
- Do NOT hard-code API keys in source. Prefer environment variables.
- For local development on Windows PowerShell, set env vars like:
	$env:GEMINI_API_KEY = "your-key"
	$env:ELEVENLABS_API_KEY = "your-key"
	$env:TTS_PROVIDER = "gtts"  # optional, skips ElevenLabs entirely
"""

import logging
import os

from dotenv import load_dotenv

# Load environment variables from a local .env file if present
load_dotenv()


def _env_float(name: str, default: float) -> float:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	try:
		return float(raw)
	except ValueError:
		return default


def _env_int(name: str, default: int) -> int:
	return int(_env_float(name, default))


# Gemini API configuration
# Backward compatibility: if an older setup used `API_KEY`, still honor it.
_LEGACY_KEY = os.getenv("API_KEY")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or _LEGACY_KEY or ""
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
GEMINI_API_URL = os.getenv("GEMINI_API_URL", "https://generativelanguage.googleapis.com/v1beta")
GEMINI_TIMEOUT = _env_float("GEMINI_TIMEOUT", 20.0)

# Remote speech synthesis
# TTS_PROVIDER: "elevenlabs" (default) or "gtts"
TTS_PROVIDER = os.getenv("TTS_PROVIDER", "elevenlabs").strip().lower()
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "pNInz6obpgDQGcFmaJgB")
ELEVENLABS_MODEL = os.getenv("ELEVENLABS_MODEL", "eleven_monolingual_v1")
ELEVENLABS_API_URL = os.getenv("ELEVENLABS_API_URL", "https://api.elevenlabs.io/v1")
TTS_TIMEOUT = _env_float("TTS_TIMEOUT", 15.0)
GTTS_LANG = os.getenv("GTTS_LANG", "en")

# Local (on-device) fallback voice, pyttsx3 units
LOCAL_VOICE_RATE = _env_int("LOCAL_VOICE_RATE", 170)
LOCAL_VOICE_VOLUME = _env_float("LOCAL_VOICE_VOLUME", 0.9)
# Name markers of the voices we prefer for the fallback, checked case-insensitively
PREFERRED_VOICE_MARKERS = ("natural", "enhanced", "premium", "google", "microsoft")

# Session behaviour
DEFAULT_MODE = os.getenv("DEFAULT_MODE", "chat")
MAX_CHAT_HISTORY = _env_int("MAX_CHAT_HISTORY", 20)

# Navigation
REVERSE_GEOCODE_URL = os.getenv(
	"REVERSE_GEOCODE_URL", "https://api.bigdatacloud.net/data/reverse-geocode-client"
)
GEOCODE_TIMEOUT = _env_float("GEOCODE_TIMEOUT", 10.0)
MAPS_URL = "https://www.google.com/maps"

# Voice input (Vosk)
VOSK_LANG = os.getenv("VOSK_LANG", "en-us")
VOSK_SAMPLE_RATE = 16000

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 8000)
INDEX_HTML = os.getenv("INDEX_HTML", "index.html")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = LOG_LEVEL) -> None:
	"""Tagged console output, one logger per module."""
	logging.basicConfig(
		level=getattr(logging, level, logging.INFO),
		format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
	)
