"""
Selector
========

Weighted random walk over the transition graph.

Given the current song, candidate next songs are its outgoing edges minus
anything under a tired cooldown or no longer in the library. Each candidate
weight is passed through a shifted logistic curve over the weight as a
fraction of the store ceiling,

    x = w / weight_max
    squash(w) = sigmoid(slope * (x - midpoint)) - sigmoid(-slope * midpoint)

which is zero at w == 0 and strictly increasing up to the ceiling, flattening
towards it, so a heavily reinforced edge gets more likely without ever becoming
a sure thing. The squashed scores are normalised and one candidate is drawn.

A song without usable edges (a sink, or every neighbour tired) falls back to
a uniform pick over the whole library.
"""
from __future__ import annotations

import logging
from typing import Container, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import EmptyLibraryError
from .config import SquashConfig
from .store import TransitionStore

logger = logging.getLogger(__name__)

_NO_TIRED: Container[str] = frozenset()


def sigmoid(x: np.ndarray) -> np.ndarray:
    # tanh form avoids overflow in exp() for large |x|
    return 0.5 * (1.0 + np.tanh(0.5 * np.asarray(x, dtype=float)))


def squash(weights: Sequence[float], config: SquashConfig, scale: float = 1.0) -> np.ndarray:
    """Map raw edge weights (divided by ``scale``, the weight ceiling) onto non-negative scores."""
    w = np.asarray(weights, dtype=float) / scale
    scores = sigmoid(config.slope * (w - config.midpoint)) - sigmoid(-config.slope * config.midpoint)
    return np.clip(scores, 0.0, None)


class Selector:
    """Pick the next song from the chain, falling back to the library."""

    def __init__(
        self,
        library,
        squash_config: Optional[SquashConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Args:
            library: A SongSource; ``songs()`` feeds the fallback and ``contains()``
                drops edges to songs that have left the library
            squash_config: Logistic curve parameters
            rng: Random source; pass a seeded generator for reproducible draws
        """
        self.library = library
        self.squash_config = squash_config or SquashConfig()
        self.rng = rng if rng is not None else np.random.default_rng()

    def candidates(
        self,
        current: Optional[str],
        store: TransitionStore,
        tired: Container[str] = _NO_TIRED,
    ) -> Tuple[List[str], np.ndarray]:
        """Eligible next songs and their squashed scores (possibly empty)."""
        if current is None:
            return [], np.zeros(0)
        songs: List[str] = []
        weights: List[float] = []
        for next_song, weight in store.outgoing(current):
            if weight <= 0.0 or next_song in tired:
                continue
            if not self.library.contains(next_song):
                logger.debug(f"Skipping {next_song!r}: no longer in the library")
                continue
            songs.append(next_song)
            weights.append(weight)
        scores = squash(weights, self.squash_config, store.weight_max)
        keep = scores > 0.0
        if not keep.all():
            songs = [song for song, k in zip(songs, keep) if k]
            scores = scores[keep]
        return songs, scores

    def probabilities(
        self,
        current: Optional[str],
        store: TransitionStore,
        tired: Container[str] = _NO_TIRED,
    ) -> Dict[str, float]:
        """Sampling distribution over chain candidates; empty for a sink."""
        songs, scores = self.candidates(current, store, tired)
        if not songs:
            return {}
        probs = scores / scores.sum()
        return dict(zip(songs, probs.tolist()))

    def select_next(
        self,
        current: Optional[str],
        store: TransitionStore,
        tired: Container[str] = _NO_TIRED,
    ) -> str:
        """
        Choose the song to play after ``current``.

        Raises:
            EmptyLibraryError: the chain has no candidates and the library is empty
        """
        songs, scores = self.candidates(current, store, tired)
        if not songs:
            logger.debug(f"No chain candidates after {current!r}; picking from library")
            return self.random_song(exclude=current, tired=tired)

        probs = scores / scores.sum()
        index = int(self.rng.choice(len(songs), p=probs))

        tied = np.flatnonzero(scores == scores[index])
        if len(tied) > 1:
            index = int(tied[self.rng.integers(len(tied))])

        chosen = songs[index]
        logger.debug(f"Chain pick after {current!r}: {chosen!r} (p={probs[index]:.3f}, {len(songs)} candidates)")
        return chosen

    def random_song(self, exclude: Optional[str] = None, tired: Container[str] = _NO_TIRED) -> str:
        """
        Uniform pick over the library, preferring songs that are neither
        ``exclude`` nor tired.
        """
        songs = list(self.library.songs())
        if not songs:
            raise EmptyLibraryError()
        preferred = [song for song in songs if song != exclude and song not in tired]
        pool = preferred or songs
        return pool[int(self.rng.integers(len(pool)))]
