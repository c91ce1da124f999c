"""
Weight Update Policy
====================

Pure functions mapping listening events onto new edge weights, plus the
ephemeral "tired" cooldown tracker. Nothing here touches storage: callers
feed the result into TransitionStore.set_weight(), which does the clamping.
"""
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import ChainSettings

logger = logging.getLogger(__name__)


class Feedback(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"
    TIRED = "tired"


def reinforce(current: float, settings: ChainSettings) -> float:
    """Song A was followed by song B during normal forward playback."""
    return current + settings.reinforce_delta


def like(current: float, settings: ChainSettings) -> float:
    return current + settings.like_delta


def dislike(current: float, settings: ChainSettings) -> float:
    return max(0.0, current - settings.dislike_delta)


def apply_feedback(feedback: Feedback, current: float, settings: ChainSettings) -> float:
    """
    New weight for the edge leading into the current song.

    TIRED never changes a persisted weight; it is handled by TiredTracker.
    """
    feedback = Feedback(feedback)
    if feedback is Feedback.LIKE:
        return like(current, settings)
    if feedback is Feedback.DISLIKE:
        return dislike(current, settings)
    return current


class TiredTracker:
    """
    Songs temporarily withheld from selection.

    Cooldowns live only in memory. Marking a song again restarts its
    cooldown; nothing accumulates.
    """

    def __init__(self, cooldown_seconds: float, clock: Callable[[], float] = time.monotonic):
        if cooldown_seconds < 0:
            raise ValueError(f"cooldown_seconds must be non-negative, got {cooldown_seconds}")
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._until: Dict[str, float] = {}

    def mark(self, song: str) -> float:
        """Suppress ``song`` for one cooldown window. Returns the expiry time."""
        expires = self._clock() + self.cooldown_seconds
        self._until[song] = expires
        logger.info(f"Marked tired for {self.cooldown_seconds:.0f}s: {song}")
        return expires

    def clear(self, song: str) -> None:
        self._until.pop(song, None)

    def is_tired(self, song: str) -> bool:
        expires = self._until.get(song)
        if expires is None:
            return False
        if self._clock() >= expires:
            del self._until[song]
            return False
        return True

    def expire(self) -> List[str]:
        """Drop lapsed cooldowns and return the songs that became eligible again."""
        now = self._clock()
        lapsed = [song for song, expires in self._until.items() if now >= expires]
        for song in lapsed:
            del self._until[song]
        if lapsed:
            logger.debug(f"Tired cooldown lapsed for {len(lapsed)} song(s)")
        return lapsed

    def active(self) -> List[str]:
        self.expire()
        return sorted(self._until)

    def remaining(self, song: str) -> Optional[float]:
        if not self.is_tired(song):
            return None
        return self._until[song] - self._clock()

    def __contains__(self, song: str) -> bool:
        return self.is_tired(song)

    def __len__(self) -> int:
        return len(self.active())
