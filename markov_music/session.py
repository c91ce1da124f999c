"""
Session Orchestrator
====================

Ties the transition store, weight policy and selection strategies to the
playback lifecycle:

    song started -> song finished / skipped -> feedback applied -> next selected

States: IDLE -> PLAYING <-> PAUSED, and any state -> STOPPED (terminal).

The session holds only song identifiers; every weight lives in the store.
Reinforcement for a transition is applied only after the player confirmed
the new song started, so a failed play() leaves the chain untouched.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Container, Dict, List, Optional, Set, Tuple

import numpy as np

from .chain import policy
from .chain.config import ChainSettings
from .chain.policy import Feedback, TiredTracker
from .chain.selector import Selector
from .chain.store import TransitionStore
from .chain.strategies import SelectionContext, SelectionStrategy, build_strategy
from .errors import PlayerError, SessionStoppedError, UnknownSongError
from .library import SongSource
from .logging_utils import SessionSummary
from .player import Player, Seek

logger = logging.getLogger(__name__)


class PlayState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SessionStatus:
    """Immutable view of the session for display and the control plane."""

    state: PlayState
    current: Optional[str]
    previous: Optional[str]
    strategy: str
    queued: Optional[str] = None
    volume: Optional[int] = None
    muted: Optional[bool] = None
    percent: Optional[int] = None
    tired: Tuple[str, ...] = field(default_factory=tuple)
    history_length: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "current": self.current,
            "previous": self.previous,
            "strategy": self.strategy,
            "queued": self.queued,
            "volume": self.volume,
            "muted": self.muted,
            "percent": self.percent,
            "tired": list(self.tired),
            "history_length": self.history_length,
        }


class _Withheld:
    """Songs selection must avoid: tired ones plus ones the player failed to start."""

    def __init__(self, tired: Container[str], unplayable: Set[str]):
        self._tired = tired
        self._unplayable = unplayable

    def __contains__(self, song: object) -> bool:
        return song in self._unplayable or song in self._tired


class Session:
    """Single-writer controller for one listening session."""

    def __init__(
        self,
        store: TransitionStore,
        library: SongSource,
        player: Player,
        settings: Optional[ChainSettings] = None,
        strategy: str = "markov",
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.library = library
        self.player = player
        self.settings = settings or ChainSettings()
        self.selector = Selector(library, self.settings.squash, rng)
        self.tired = TiredTracker(self.settings.tired_cooldown_seconds, clock=clock)
        self._strategies: Dict[str, SelectionStrategy] = {}
        self.strategy = self._strategy(strategy)

        self.state = PlayState.IDLE
        self.current_song: Optional[str] = None
        self.previous_song: Optional[str] = None
        self.history: List[str] = []
        self.queued: Optional[str] = None
        self.unplayable: Set[str] = set()
        self._advance_pending = False
        self.summary = SessionSummary("Listening session", logger)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _strategy(self, name: str) -> SelectionStrategy:
        strategy = build_strategy(name, self.selector)
        return self._strategies.setdefault(strategy.name, strategy)

    def _check_running(self) -> None:
        if self.state is PlayState.STOPPED:
            raise SessionStoppedError("Session has been stopped")

    def context(self) -> SelectionContext:
        return SelectionContext(
            current=self.current_song,
            store=self.store,
            history=tuple(self.history),
            tired=_Withheld(self.tired, self.unplayable),
        )

    def _start(self, song: str, reinforce: bool) -> str:
        """Play ``song``; once it has started, shift identifiers and maybe reinforce."""
        self.player.play(str(self.library.path_for(song)))

        self.previous_song, self.current_song = self.current_song, song
        self.history.append(song)
        self.state = PlayState.PLAYING
        self.unplayable.discard(song)
        self._advance_pending = False
        self.summary.increment("songs_played")

        if reinforce and self.previous_song is not None:
            weight = self.store.adjust_weight(
                self.previous_song, song, lambda w: policy.reinforce(w, self.settings)
            )
            logger.debug(f"Reinforced {self.previous_song!r} -> {song!r} to {weight:.3f}")
        logger.info(f"Now playing: {song}")
        return song

    def _advance(self, reinforce: bool, finished: bool) -> str:
        """
        Start the queued pick or the active strategy's choice.

        The state stays PLAYING until a new song has started. When an automatic
        advance (``finished``) fails, the song is withheld from selection and
        the next poll() tries again.
        """
        self._check_running()

        if self.queued is not None:
            # Manual picks are training signal even when reached by a skip
            song, self.queued = self.queued, None
            try:
                return self._start(song, reinforce=True)
            except PlayerError:
                self._start_failed(song, finished)
                if not finished:
                    self.queued = song
                raise

        song = self.strategy.select_next(self.context())
        try:
            return self._start(song, reinforce and self.strategy.reinforces)
        except PlayerError:
            self._start_failed(song, finished)
            raise

    def _start_failed(self, song: str, finished: bool) -> None:
        self.unplayable.add(song)
        if finished:
            self._advance_pending = True
        logger.warning(f"Could not start {song!r}; withholding it from selection")

    # ------------------------------------------------------------------
    # Playback lifecycle
    # ------------------------------------------------------------------

    def start(self) -> str:
        """Begin playback from IDLE (first song comes from the library)."""
        self._check_running()
        if self.state is not PlayState.IDLE:
            return self.current_song
        return self._advance(reinforce=True, finished=False)

    def song_finished(self) -> str:
        """The current song played to its end: move on, reinforcing the transition."""
        if not self._advance_pending:
            self.summary.increment("completed")
        return self._advance(reinforce=True, finished=True)

    def next(self) -> str:
        """Explicit "next": same as a natural end of the current song."""
        return self._advance(reinforce=True, finished=False)

    def skip(self) -> str:
        """Abandon the current song; the new transition counts only if configured."""
        self.summary.increment("skipped")
        return self._advance(reinforce=self.settings.reinforce_on_skip, finished=False)

    def play(self, song: str) -> str:
        """Jump straight to a manually chosen song."""
        self._check_running()
        self._require_in_library(song)
        self.summary.increment("manual_picks")
        return self._start(song, reinforce=True)

    def add(self, song: str) -> Optional[str]:
        """
        Queue a manually browsed song to play next.

        The ``(current, song)`` edge is reinforced when it starts, exactly as
        if the chain had picked it. From IDLE the song starts immediately.
        """
        self._check_running()
        self._require_in_library(song)
        self.summary.increment("manual_picks")
        if self.state is PlayState.IDLE:
            return self._start(song, reinforce=True)
        self.queued = song
        logger.info(f"Queued next: {song}")
        return None

    def random(self) -> str:
        """Play a uniformly random library song right now."""
        self._check_running()
        song = self.selector.random_song(exclude=self.current_song, tired=self.tired)
        return self._start(song, reinforce=False)

    def prev(self) -> Optional[str]:
        """Step back to the song played before the current one."""
        self._check_running()
        if len(self.history) < 2:
            if self.current_song is not None:
                self.seek_begin()
            return self.current_song

        target = self.history[-2]
        self.player.play(str(self.library.path_for(target)))
        self.history.pop()
        self.current_song = target
        self.previous_song = self.history[-2] if len(self.history) >= 2 else None
        self.state = PlayState.PLAYING
        logger.info(f"Back to: {target}")
        return target

    def set_strategy(self, name: str) -> str:
        """Switch between markov, shuffle, random, repeat and loop_back."""
        self._check_running()
        strategy = self._strategy(name)
        strategy.reset()
        self.strategy = strategy
        logger.info(f"Selection strategy: {strategy.name}")
        return strategy.name

    def stop(self) -> None:
        """Stop playback for good; the store outlives the session."""
        if self.state is PlayState.STOPPED:
            return
        try:
            self.player.stop()
        finally:
            self.state = PlayState.STOPPED
            self.queued = None
            logger.info("Session stopped")

    def poll(self) -> Optional[str]:
        """
        Periodic tick from the event loop.

        Expires tired cooldowns and advances when the player reports the
        current song ended, or retries an automatic advance that failed to
        start. Returns the newly started song, if any.
        """
        self.tired.expire()
        if self.state is not PlayState.PLAYING:
            return None
        if self._advance_pending or self.player.is_finished():
            return self.song_finished()
        return None

    def _require_in_library(self, song: str) -> None:
        if not self.library.contains(song):
            raise UnknownSongError(f"Not in library: {song}")

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def feedback(self, feedback: Feedback) -> Optional[float]:
        """
        Apply like/dislike to the edge leading into the current song, or mark
        the current song tired. Never raises; returns the new edge weight
        for like/dislike when an incoming edge exists.
        """
        feedback = Feedback(feedback)
        if self.current_song is None:
            logger.info(f"Ignoring {feedback.value}: nothing is playing")
            return None

        self.summary.increment(feedback.value)
        if feedback is Feedback.TIRED:
            self.tired.mark(self.current_song)
            return None

        if self.previous_song is None:
            logger.info(f"Ignoring {feedback.value}: {self.current_song!r} has no predecessor")
            return None

        weight = self.store.adjust_weight(
            self.previous_song,
            self.current_song,
            lambda w: policy.apply_feedback(feedback, w, self.settings),
        )
        logger.info(f"{feedback.value.title()}: {self.previous_song!r} -> {self.current_song!r} now {weight:.3f}")
        return weight

    def like(self) -> Optional[float]:
        return self.feedback(Feedback.LIKE)

    def dislike(self) -> Optional[float]:
        return self.feedback(Feedback.DISLIKE)

    def mark_tired(self) -> None:
        self.feedback(Feedback.TIRED)

    # ------------------------------------------------------------------
    # Player controls
    # ------------------------------------------------------------------

    def toggle_pause(self) -> PlayState:
        if self.state is PlayState.PLAYING:
            self.player.set_pause(True)
            self.state = PlayState.PAUSED
        elif self.state is PlayState.PAUSED:
            self.player.set_pause(False)
            self.state = PlayState.PLAYING
        return self.state

    def toggle_mute(self) -> bool:
        muted = not self.player.is_muted()
        self.player.set_mute(muted)
        return muted

    def change_volume(self, offset: int) -> int:
        volume = max(0, min(100, self.player.get_volume() + int(offset)))
        self.player.set_volume(volume)
        return volume

    def seek(self, seconds: float) -> None:
        self.player.seek(Seek.by(float(seconds)))

    def seek_begin(self) -> None:
        self.player.seek(Seek.to(0.0))

    def seek_end(self) -> None:
        self.player.seek(Seek.to(-0.001))

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def status(self, include_player: bool = True) -> SessionStatus:
        volume = muted = percent = None
        if include_player and self.state is not PlayState.STOPPED:
            try:
                volume = self.player.get_volume()
                muted = self.player.is_muted()
                percent = self.player.percent_pos() if self.current_song else None
            except PlayerError as e:
                logger.debug(f"Player status unavailable: {e}")
        return SessionStatus(
            state=self.state,
            current=self.current_song,
            previous=self.previous_song,
            strategy=self.strategy.name,
            queued=self.queued,
            volume=volume,
            muted=muted,
            percent=percent,
            tired=tuple(self.tired.active()),
            history_length=len(self.history),
        )
