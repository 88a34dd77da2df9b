"""Voice command interpretation.

A transcript (already lower-cased and trimmed by the caller) plus the active
mode resolves to at most one action:

1. the rules scoped to the active mode, in declaration order;
2. the global mode-switch rules, in declaration order;
3. in chat mode, a pass-through of the whole transcript;
4. nothing.

Matching is plain substring containment, so an earlier rule always wins over
a later one whose trigger overlaps it. Declare specific phrases first.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple


class Mode(Enum):
    """Active application surface."""
    OCR = "ocr"
    OBJECT_DETECTION = "object-detection"
    PDF_READER = "pdf-reader"
    NAVIGATION = "navigation"
    CHAT = "chat"
    DICTATION = "speech-to-text"


class Action(Enum):
    CAPTURE_IMAGE = "capture_image"
    DETECT_OBJECTS = "detect_objects"
    UPLOAD_PDF = "upload_pdf"
    START_READING = "start_reading"
    STOP_READING = "stop_reading"
    GET_LOCATION = "get_location"
    FIND_NEARBY = "find_nearby"
    SET_DESTINATION = "set_destination"
    GET_DIRECTIONS = "get_directions"
    START_RECORDING = "start_recording"
    STOP_RECORDING = "stop_recording"
    CLEAR_CHAT = "clear_chat"
    SWITCH_MODE = "switch_mode"


@dataclass(frozen=True)
class Rule:
    """Trigger phrases mapped to an action.

    `argument` is a fixed payload (e.g. the category of a nearby search).
    With `capture_rest` set, the text following the matched trigger becomes
    the argument instead.
    """
    triggers: Tuple[str, ...]
    action: Action
    argument: Optional[str] = None
    capture_rest: bool = False

    def match(self, transcript: str) -> Optional[str]:
        """Return the matched trigger, or None."""
        for trigger in self.triggers:
            if trigger in transcript:
                return trigger
        return None


@dataclass(frozen=True)
class SwitchRule:
    triggers: Tuple[str, ...]
    mode: Mode
    confirmation: str

    def match(self, transcript: str) -> Optional[str]:
        for trigger in self.triggers:
            if trigger in transcript:
                return trigger
        return None


@dataclass(frozen=True)
class Interpretation:
    """Result of interpreting one transcript.

    Empty (no action, no pass-through) means "no match", which is not an error.
    """
    action: Optional[Action] = None
    argument: Optional[str] = None
    mode: Optional[Mode] = None
    confirmation: Optional[str] = None
    passthrough: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.action is not None

    @property
    def is_empty(self) -> bool:
        return self.action is None and self.passthrough is None


SCOPED_RULES: Dict[Mode, Tuple[Rule, ...]] = {
    Mode.OCR: (
        Rule(("capture", "take picture", "scan"), Action.CAPTURE_IMAGE),
    ),
    Mode.OBJECT_DETECTION: (
        Rule(("detect", "identify", "analyze"), Action.DETECT_OBJECTS),
    ),
    Mode.PDF_READER: (
        Rule(("upload", "select file"), Action.UPLOAD_PDF),
        Rule(("read pdf", "start reading"), Action.START_READING),
        Rule(("stop reading", "pause reading"), Action.STOP_READING),
    ),
    Mode.NAVIGATION: (
        Rule(("get location", "current location", "where am i"), Action.GET_LOCATION),
        Rule(("find restaurants", "nearby restaurants"), Action.FIND_NEARBY, "restaurants"),
        Rule(("find gas stations", "nearby gas"), Action.FIND_NEARBY, "gas stations"),
        Rule(("find hospitals", "nearby hospitals"), Action.FIND_NEARBY, "hospitals"),
        Rule(("find pharmacies", "nearby pharmacies"), Action.FIND_NEARBY, "pharmacies"),
        # "get directions to x" must resolve to a destination, so it comes first
        Rule(("navigate to", "directions to"), Action.SET_DESTINATION, capture_rest=True),
        Rule(("get directions",), Action.GET_DIRECTIONS),
    ),
    Mode.DICTATION: (
        Rule(("start recording", "begin dictation"), Action.START_RECORDING),
        Rule(("stop recording", "end dictation"), Action.STOP_RECORDING),
    ),
    Mode.CHAT: (
        Rule(("clear chat",), Action.CLEAR_CHAT),
    ),
}

SWITCH_RULES: Tuple[SwitchRule, ...] = (
    SwitchRule(
        ("switch to speech", "go to dictation", "open speech to text"),
        Mode.DICTATION,
        "Switching to speech-to-text mode. I'll transcribe everything you say into a document.",
    ),
    SwitchRule(
        ("switch to ocr", "go to text", "open camera"),
        Mode.OCR,
        "Switching to text recognition mode. Point your camera at text and say capture to read it aloud.",
    ),
    SwitchRule(
        ("switch to object", "go to detection", "open objects"),
        Mode.OBJECT_DETECTION,
        "Switching to object detection mode. Point your camera at objects and say detect to identify them.",
    ),
    SwitchRule(
        ("switch to navigation", "go to maps", "open navigation"),
        Mode.NAVIGATION,
        "Switching to navigation mode. Tell me where you want to go.",
    ),
    SwitchRule(
        ("switch to chat", "go to assistant", "open chat"),
        Mode.CHAT,
        "Switching to conversational chat mode. I'm listening - how can I help you today?",
    ),
    SwitchRule(
        ("switch to pdf", "go to document", "open reader"),
        Mode.PDF_READER,
        "Switching to PDF reader mode. Upload a PDF document and I'll read it aloud for you.",
    ),
)

NOT_UNDERSTOOD = "Sorry, I didn't understand that command. Say 'switch to chat' to talk with me."


def confirmation_for(mode: Mode, switch_rules: Sequence[SwitchRule] = SWITCH_RULES) -> str:
    """Spoken confirmation for entering `mode` (also used for UI selection)."""
    for rule in switch_rules:
        if rule.mode is mode:
            return rule.confirmation
    return f"Switching to {mode.value} mode."


class CommandInterpreter:
    """Maps (transcript, mode) to an Interpretation. Holds no session state."""

    def __init__(
        self,
        scoped_rules: Optional[Dict[Mode, Sequence[Rule]]] = None,
        switch_rules: Optional[Sequence[SwitchRule]] = None,
    ):
        self.scoped_rules = SCOPED_RULES if scoped_rules is None else scoped_rules
        self.switch_rules = SWITCH_RULES if switch_rules is None else switch_rules

    def interpret(self, transcript: str, mode: Mode) -> Interpretation:
        for rule in self.scoped_rules.get(mode, ()):
            trigger = rule.match(transcript)
            if trigger is None:
                continue
            argument = rule.argument
            if rule.capture_rest:
                rest = transcript.split(trigger, 1)[1].strip()
                argument = rest or None
            return Interpretation(action=rule.action, argument=argument, mode=mode)

        for rule in self.switch_rules:
            if rule.match(transcript) is not None:
                return Interpretation(
                    action=Action.SWITCH_MODE,
                    mode=rule.mode,
                    confirmation=rule.confirmation,
                )

        if mode is Mode.CHAT:
            return Interpretation(passthrough=transcript)

        return Interpretation()
