"""
Selection Strategies
====================

Alternate ways of choosing the next song, all behind the same
``select_next`` call so the session can switch between them at runtime.

Available strategies:
- markov: weighted random walk over the transition graph (default)
- shuffle: every library song once, in random order, then reshuffle
- random: independent uniform picks from the library
- repeat: the current song again
- loop_back: replay this session's history from its first song
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Container, Dict, List, Optional, Sequence, Type

from ..errors import EmptyLibraryError
from .selector import Selector
from .store import TransitionStore

logger = logging.getLogger(__name__)


@dataclass
class SelectionContext:
    """What a strategy may look at when choosing."""

    current: Optional[str]
    """Song playing (or last played) right now."""

    store: TransitionStore
    """Transition graph; strategies only read it."""

    history: Sequence[str] = field(default_factory=tuple)
    """Songs started this session, oldest first."""

    tired: Container[str] = field(default_factory=frozenset)
    """Songs under a tired cooldown."""


class SelectionStrategy(ABC):
    """Abstract base class for next-song strategies.

    Subclasses must implement select_next(). ``reinforces`` says whether a
    transition produced by the strategy counts as an observed sequence.
    """

    name: str = ""
    reinforces: bool = True

    def __init__(self, selector: Selector):
        self.selector = selector

    @abstractmethod
    def select_next(self, context: SelectionContext) -> str:
        """Return the identifier of the song to play next.

        Raises:
            EmptyLibraryError: If nothing is playable
        """
        pass

    def reset(self) -> None:
        """Forget any per-strategy state (called when the strategy is activated)."""
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class MarkovStrategy(SelectionStrategy):
    name = "markov"

    def select_next(self, context: SelectionContext) -> str:
        return self.selector.select_next(context.current, context.store, context.tired)


class RandomStrategy(SelectionStrategy):
    name = "random"

    def select_next(self, context: SelectionContext) -> str:
        return self.selector.random_song(exclude=context.current, tired=context.tired)


class ShuffleStrategy(SelectionStrategy):
    """Walk a random permutation of the library without repeats."""

    name = "shuffle"

    def __init__(self, selector: Selector):
        super().__init__(selector)
        self._order: List[str] = []

    def reset(self) -> None:
        self._order = []

    def _reshuffle(self, current: Optional[str]) -> None:
        songs = list(self.selector.library.songs())
        if not songs:
            raise EmptyLibraryError()
        self.selector.rng.shuffle(songs)
        # Don't start a new round with the song that just ended the last one
        if len(songs) > 1 and songs[-1] == current:
            songs[0], songs[-1] = songs[-1], songs[0]
        self._order = songs
        logger.debug(f"Shuffled {len(songs)} songs")

    def select_next(self, context: SelectionContext) -> str:
        for _ in range(2):
            if not self._order:
                self._reshuffle(context.current)
            while self._order:
                song = self._order.pop()
                if song not in context.tired:
                    return song
        # Whole library is tired: fall back to anything
        return self.selector.random_song(exclude=context.current)


class RepeatStrategy(SelectionStrategy):
    name = "repeat"
    reinforces = False

    def select_next(self, context: SelectionContext) -> str:
        if context.current is None:
            return self.selector.random_song(tired=context.tired)
        return context.current


class LoopBackStrategy(SelectionStrategy):
    """Replay the session history from the start, cycling when it runs out."""

    name = "loop_back"
    reinforces = False

    def __init__(self, selector: Selector):
        super().__init__(selector)
        self._position = 0
        self._loop: List[str] = []

    def reset(self) -> None:
        self._position = 0
        self._loop = []

    def select_next(self, context: SelectionContext) -> str:
        if not self._loop:
            # Snapshot once so replayed songs don't extend the loop
            self._loop = list(dict.fromkeys(context.history))
        if not self._loop:
            return self.selector.random_song(tired=context.tired)
        song = self._loop[self._position % len(self._loop)]
        self._position += 1
        return song


STRATEGIES: Dict[str, Type[SelectionStrategy]] = {
    cls.name: cls
    for cls in (MarkovStrategy, ShuffleStrategy, RandomStrategy, RepeatStrategy, LoopBackStrategy)
}


def build_strategy(name: str, selector: Selector) -> SelectionStrategy:
    """Instantiate a strategy by name ("loop-back" and "loop_back" both work)."""
    key = name.strip().lower().replace("-", "_")
    try:
        cls = STRATEGIES[key]
    except KeyError:
        raise ValueError(
            f"Unknown strategy {name!r}; expected one of {', '.join(sorted(STRATEGIES))}"
        ) from None
    return cls(selector)
