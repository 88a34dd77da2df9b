"""Per-session mutable state.

One Session per running assistant, created at start-up and dropped at
shutdown. Everything that used to be a module-level flag (current mode,
listening, who the user is) lives here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

import config
from commands import Mode

log = logging.getLogger(__name__)


def default_mode(value: str = config.DEFAULT_MODE) -> Mode:
    try:
        return Mode(value)
    except ValueError:
        log.warning("Unknown DEFAULT_MODE %r, using chat", value)
        return Mode.CHAT


@dataclass
class Session:
    mode: Mode = field(default_factory=default_mode)
    listening: bool = False
    user_name: str = ""
    last_transcript: str = ""
    started_at: datetime = field(default_factory=datetime.now)

    def set_mode(self, mode: Mode) -> Mode:
        """Switch mode, returning the previous one."""
        previous, self.mode = self.mode, mode
        if previous is not mode:
            log.info("Mode %s -> %s", previous.value, mode.value)
        return previous

    def snapshot(self) -> dict:
        return {
            "mode": self.mode.value,
            "listening": self.listening,
            "user_name": self.user_name,
            "last_transcript": self.last_transcript,
            "started_at": self.started_at.isoformat(),
        }
