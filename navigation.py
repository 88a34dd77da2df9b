"""Navigation help: location lookup, Google Maps links, nearby searches.

The browser owns geolocation and opens the maps links; this module only
reverse-geocodes coordinates and builds the URLs and spoken replies.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import quote

import httpx

import config
from gemini import GeminiClient, GeminiError

log = logging.getLogger(__name__)

ASSISTANT_PROMPT = """You are thirdeye's navigation assistant. Analyze this user request and provide a helpful response. If they're asking for directions, extract the destination. If they need nearby places, identify what type. If it's a complex travel request, break it down into actionable steps.

User request: "{text}"

Respond in a helpful, conversational way and suggest specific actions I can take to help them navigate. Keep responses concise and actionable."""

DEFAULT_REPLY = "I can help you navigate. Please tell me where you'd like to go or what you're looking for."

_DESTINATION_RE = re.compile(r"(?:go to|navigate to|directions to)\s+(.+)", re.IGNORECASE)

# (keywords, category)
NEARBY_CATEGORIES = (
    (("restaurant", "food"), "restaurants"),
    (("gas", "fuel"), "gas stations"),
    (("hospital", "medical"), "hospitals"),
    (("pharmacy", "pharmacies", "drug store"), "pharmacies"),
)


@dataclass(frozen=True)
class NavigationRequest:
    destination: Optional[str] = None
    category: Optional[str] = None


def parse_request(text: str) -> NavigationRequest:
    """Pull a destination or a nearby-place category out of free speech."""
    match = _DESTINATION_RE.search(text)
    if match:
        return NavigationRequest(destination=match.group(1).strip().rstrip(".?!"))
    lowered = text.lower()
    if any(k in lowered for k in ("find", "nearby", "closest")):
        for keywords, category in NEARBY_CATEGORIES:
            if any(k in lowered for k in keywords):
                return NavigationRequest(category=category)
    return NavigationRequest()


def directions_url(destination: str, origin: Optional[str] = None) -> str:
    if origin:
        return f"{config.MAPS_URL}/dir/{quote(origin, safe='')}/{quote(destination, safe='')}"
    return f"{config.MAPS_URL}/dir/?api=1&destination={quote(destination, safe='')}"


def search_url(category: str, near: str) -> str:
    return f"{config.MAPS_URL}/search/{quote(f'{category} near {near}', safe='')}"


def format_coordinates(latitude: float, longitude: float) -> str:
    return f"{latitude:.4f}, {longitude:.4f}"


def address_from_geocode(data: dict) -> Optional[str]:
    """Human readable place from a BigDataCloud reverse-geocode body."""
    parts = []
    for key in ("locality", "city", "principalSubdivision", "countryName"):
        value = (data.get(key) or "").strip()
        if value and value not in parts:
            parts.append(value)
    return ", ".join(parts) or None


class Navigator:
    def __init__(self, client: httpx.AsyncClient, gemini: GeminiClient, geocode_url: str = config.REVERSE_GEOCODE_URL):
        self.client = client
        self.gemini = gemini
        self.geocode_url = geocode_url
        self.coordinates: Optional[Tuple[float, float]] = None
        self.address: Optional[str] = None
        self.destination: Optional[str] = None

    @property
    def has_location(self) -> bool:
        return self.address is not None

    async def locate(self, latitude: float, longitude: float) -> str:
        """Store the position and return a spoken description of it."""
        self.coordinates = (latitude, longitude)
        coords = format_coordinates(latitude, longitude)
        params = {"latitude": latitude, "longitude": longitude, "localityLanguage": "en"}
        try:
            r = await self.client.get(self.geocode_url, params=params, timeout=config.GEOCODE_TIMEOUT)
            r.raise_for_status()
            address = address_from_geocode(r.json())
        except (httpx.HTTPError, ValueError) as e:
            log.warning("Reverse geocoding failed: %s", e)
            address = None
        if address is None:
            self.address = coords
            return f"Your current coordinates are: {coords}"
        self.address = address
        return f"Your current location is: {address}"

    def set_destination(self, destination: str) -> str:
        self.destination = destination.strip()
        return f"I've set your destination to {self.destination}. Would you like me to get directions?"

    def directions(self) -> Tuple[str, Optional[str]]:
        """(spoken reply, maps url)"""
        if not self.destination:
            return "Please enter a destination first", None
        if self.has_location:
            url = directions_url(self.destination, origin=self.address)
            return f"Opening directions from your current location to {self.destination}", url
        return f"Opening directions to {self.destination}", directions_url(self.destination)

    def find_nearby(self, category: str) -> Tuple[str, Optional[str]]:
        if not self.has_location:
            return "Please get your current location first to find nearby places", None
        return f"Searching for {category} near your location", search_url(category, self.address)

    async def assist(self, text: str) -> Tuple[str, NavigationRequest]:
        """Free-form navigation request: Gemini advice plus whatever we can act on."""
        try:
            reply = await self.gemini.generate_async(
                ASSISTANT_PROMPT.format(text=text),
                generation_config={"temperature": 0.7, "topK": 40, "topP": 0.95, "maxOutputTokens": 200},
            )
        except GeminiError as e:
            log.warning("Gemini navigation assist failed: %s", e)
            reply = DEFAULT_REPLY
        return reply or DEFAULT_REPLY, parse_request(text)
