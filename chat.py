"""Conversational chat: Gemini replies with canned fallbacks."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import config
from gemini import SAFETY_SETTINGS, GeminiClient, GeminiError

log = logging.getLogger(__name__)

PERSONA_PROMPT = """You are thirdeye, a compassionate AI visual assistant for visually impaired users. Your features include:
- OCR text recognition from camera
- Object detection and identification
- PDF document reading with word highlighting
- Navigation assistance via Google Maps
- Conversational AI support

Respond to this user input in a helpful, encouraging, and accessible way. Keep responses concise (1-2 sentences) and actionable. Focus on how thirdeye can help them.

User input: "{text}\""""

FALLBACK_RESPONSES = (
    "I'm here to help you see beyond limits with thirdeye. What would you like to explore?",
    "That's interesting! I can assist you with text reading, object detection, navigation, or PDF reading. What sounds helpful?",
    "I'm your visual assistant, ready to help with any accessibility needs. Which feature would you like to try?",
    "thirdeye is designed to be your digital eyes. I can read text, identify objects, provide directions, or read documents. What can I help you with?",
    "I'm listening and ready to assist! Whether it's reading text, detecting objects, or navigating, I'm here for you.",
)

# (keywords, reply); first entry with any keyword in the input wins
CONTEXTUAL_RESPONSES = (
    (("hello", "hi", "hey"),
     "Hello! I'm thirdeye, your visual assistant. I'm here to help you see beyond limits. What would you like to do today?"),
    (("help", "what can you do", "features"),
     "I can help you with text recognition using OCR, object detection with AI, navigation assistance, PDF document reading with highlighting, and answer questions about your surroundings. Which feature interests you?"),
    (("ocr", "text", "read text", "camera text"),
     "Great choice! I can read any text through your camera. Point your device at text like signs, documents, or books, then say 'capture' and I'll read it aloud for you."),
    (("object", "detect", "identify", "what do you see"),
     "I can identify objects around you using advanced AI. Point your camera at objects and I'll tell you what I can see. It works best with good lighting."),
    (("navigate", "direction", "maps", "go to"),
     "I can help you get anywhere! Just tell me your destination and I'll open Google Maps with turn-by-turn directions. Where would you like to go?"),
    (("pdf", "document", "file", "read document"),
     "I can read PDF documents aloud! Upload any PDF and I'll extract the text and read it to you, tracking each word as I go. Very helpful for studying or reviewing documents."),
    (("thank", "thanks", "appreciate"),
     "You're very welcome! I'm always here to help you navigate and understand your world. Feel free to ask me anything or try any of my features."),
    (("how does", "how do", "explain"),
     "thirdeye uses AI to process visual information. I combine text recognition, object detection, and natural speech synthesis, all designed with accessibility in mind."),
    (("difficult", "hard", "struggle"),
     "I understand it can be challenging, but remember - you're not alone. thirdeye is here to be your digital eyes and help you see beyond any limits."),
)


def contextual_response(text: str) -> Optional[str]:
    """Canned reply for recognisable topics, None otherwise.

    Plain substring checks, so "hi" also matches inside "this".
    """
    lowered = text.lower()
    for keywords, reply in CONTEXTUAL_RESPONSES:
        if any(k in lowered for k in keywords):
            return reply
    return None


@dataclass
class ChatMessage:
    role: str  # "user" | "assistant"
    content: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp.isoformat()}


class Conversation:
    def __init__(
        self,
        client: GeminiClient,
        max_history: int = config.MAX_CHAT_HISTORY,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.max_history = max_history
        self.rng = rng or random.Random()
        self.messages: List[ChatMessage] = []

    def _remember(self, role: str, content: str) -> None:
        self.messages.append(ChatMessage(role, content))
        if self.max_history and len(self.messages) > self.max_history:
            del self.messages[: len(self.messages) - self.max_history]

    def fallback_reply(self, text: str) -> str:
        return contextual_response(text) or self.rng.choice(FALLBACK_RESPONSES)

    async def respond(self, text: str) -> str:
        self._remember("user", text)
        try:
            reply = await self.client.generate_async(
                PERSONA_PROMPT.format(text=text),
                generation_config={"temperature": 0.7, "topK": 40, "topP": 0.95, "maxOutputTokens": 150},
                safety_settings=SAFETY_SETTINGS,
            )
        except GeminiError as e:
            log.warning("Gemini chat failed, using contextual response: %s", e)
            reply = self.fallback_reply(text)
        if not reply:
            reply = self.fallback_reply(text)
        self._remember("assistant", reply)
        return reply

    def clear(self) -> None:
        self.messages.clear()
