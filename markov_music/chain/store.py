"""
Transition Store
================

The learned song-to-song transition graph, kept as an identifier-keyed
adjacency map ``{song: {next: weight}}`` and persisted to a small sqlite
database:

    associations(song TEXT, next TEXT, weight REAL, PRIMARY KEY(song, next))
    meta(key TEXT PRIMARY KEY, value TEXT)

Weights are rounded through float32 on write so a save/load round trip
reproduces them exactly. A zero weight is the same as no edge and is never
kept in memory.
"""
from __future__ import annotations

import logging
import math
import os
import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import numpy as np

from ..errors import MalformedStoreError, StorageError, StorageIOError
from ..logging_utils import format_count, stage_timer

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_WEIGHT_MAX = 100.0

PathLike = Union[str, Path]


@dataclass(frozen=True)
class Association:
    """One directed edge: having just played ``song``, ``next`` followed."""
    song: str
    next: str
    weight: float


def _to_f32(value: float) -> float:
    return float(np.float32(value))


def _f32_ceiling(value: float) -> float:
    """Largest float32 not above ``value``, so clamped weights never round past it."""
    rounded = np.float32(value)
    if float(rounded) > value:
        rounded = np.nextafter(rounded, np.float32(0.0))
    return float(rounded)


class StoreSnapshot:
    """Read-only copy of the store, safe to hand to other threads."""

    def __init__(self, edges: Dict[str, Dict[str, float]]):
        self._edges = MappingProxyType(
            {song: MappingProxyType(dict(nexts)) for song, nexts in edges.items()}
        )

    def get_weight(self, song: str, next_song: str) -> float:
        return self._edges.get(song, {}).get(next_song, 0.0)

    def outgoing(self, song: str) -> Iterator[Tuple[str, float]]:
        return iter(self._edges.get(song, {}).items())

    def edges(self) -> Mapping[str, Mapping[str, float]]:
        return self._edges

    def __len__(self) -> int:
        return sum(len(nexts) for nexts in self._edges.values())


class TransitionStore:
    """
    Sole owner of all association weights.

    Every mutation goes through set_weight(), which clamps to
    [0.0, weight_max] and marks the store dirty.
    """

    def __init__(self, weight_max: float = DEFAULT_WEIGHT_MAX):
        if not math.isfinite(weight_max) or weight_max <= 0:
            raise ValueError(f"weight_max must be positive, got {weight_max}")
        self.weight_max = _f32_ceiling(weight_max)
        self._edges: Dict[str, Dict[str, float]] = {}
        self._dirty = False

    # ------------------------------------------------------------------
    # Point access
    # ------------------------------------------------------------------

    def get_weight(self, song: str, next_song: str) -> float:
        """Current weight of ``song -> next_song``, 0.0 when there is no edge."""
        return self._edges.get(song, {}).get(next_song, 0.0)

    def set_weight(self, song: str, next_song: str, weight: float) -> float:
        """
        Store a clamped weight for ``song -> next_song``.

        Creates the edge when absent and drops it when the clamped weight
        is zero. Returns the weight actually stored.
        """
        weight = float(weight)
        if math.isnan(weight):
            weight = 0.0
        clamped = _to_f32(min(max(weight, 0.0), self.weight_max))

        nexts = self._edges.get(song)
        previous = nexts.get(next_song, 0.0) if nexts else 0.0
        if clamped == previous:
            return clamped

        if clamped == 0.0:
            del nexts[next_song]
            if not nexts:
                del self._edges[song]
        else:
            self._edges.setdefault(song, {})[next_song] = clamped
        self._dirty = True
        logger.debug(f"Weight {song!r} -> {next_song!r}: {previous:.3f} -> {clamped:.3f}")
        return clamped

    def adjust_weight(self, song: str, next_song: str, update: Callable[[float], float]) -> float:
        """Apply ``update`` to the current weight and store the result."""
        return self.set_weight(song, next_song, update(self.get_weight(song, next_song)))

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def outgoing(self, song: str) -> Iterator[Tuple[str, float]]:
        """Yield ``(next, weight)`` for every edge leaving ``song``."""
        for next_song, weight in self._edges.get(song, {}).items():
            yield next_song, weight

    def associations(self) -> Iterator[Association]:
        for song, nexts in self._edges.items():
            for next_song, weight in nexts.items():
                yield Association(song, next_song, weight)

    def songs(self) -> List[str]:
        """Every song appearing on either end of an edge."""
        seen = dict.fromkeys(self._edges)
        for nexts in self._edges.values():
            seen.update(dict.fromkeys(nexts))
        return list(seen)

    def top_edges(self, n: int = 10) -> List[Association]:
        return sorted(self.associations(), key=lambda a: (-a.weight, a.song, a.next))[:n]

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(self._edges)

    def is_sink(self, song: str) -> bool:
        return not self._edges.get(song)

    @property
    def dirty(self) -> bool:
        return self._dirty

    def __len__(self) -> int:
        return sum(len(nexts) for nexts in self._edges.values())

    def __contains__(self, edge: Tuple[str, str]) -> bool:
        song, next_song = edge
        return next_song in self._edges.get(song, {})

    def __repr__(self) -> str:
        return f"TransitionStore({format_count(len(self), 'edge')}, weight_max={self.weight_max})"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path: PathLike, weight_max: float = DEFAULT_WEIGHT_MAX) -> "TransitionStore":
        """
        Load a store from ``path``.

        A missing file yields an empty store. Any invalid record rejects the
        whole file with MalformedStoreError; read failures raise StorageIOError.
        """
        path = Path(path)
        store = cls(weight_max=weight_max)
        if not path.exists():
            logger.info(f"No transition store at {path}; starting empty")
            return store

        try:
            with open(path, 'rb') as f:
                f.read(16)
        except OSError as e:
            raise StorageIOError(f"Cannot read transition store {path}: {e}", path) from e

        with stage_timer("Transition store load", logger):
            rows = cls._read_rows(path)
            seen = set()
            for index, row in enumerate(rows):
                song, next_song, weight = cls._validate_row(path, index, row)
                if (song, next_song) in seen:
                    raise MalformedStoreError(
                        f"Duplicate association {song!r} -> {next_song!r} in {path}", path
                    )
                seen.add((song, next_song))
                if weight > store.weight_max:
                    logger.warning(
                        f"Weight {weight} for {song!r} -> {next_song!r} exceeds ceiling {store.weight_max}; clamping"
                    )
                if weight > 0.0:
                    store._edges.setdefault(song, {})[next_song] = _to_f32(min(weight, store.weight_max))

        store._dirty = False
        logger.info(f"Loaded {format_count(len(store), 'association')} from {path}")
        return store

    @staticmethod
    def _read_rows(path: Path) -> List[tuple]:
        uri = path.resolve().as_uri() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True)
        except sqlite3.Error as e:
            raise StorageIOError(f"Cannot open transition store {path}: {e}", path) from e
        try:
            tables = {
                row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
            if "associations" not in tables:
                raise MalformedStoreError(f"{path} has no associations table", path)
            return conn.execute("SELECT song, next, weight FROM associations").fetchall()
        except sqlite3.DatabaseError as e:
            # "file is not a database", corrupted pages, wrong columns
            raise MalformedStoreError(f"Cannot parse transition store {path}: {e}", path) from e
        finally:
            conn.close()

    @staticmethod
    def _validate_row(path: Path, index: int, row: tuple) -> Tuple[str, str, float]:
        song, next_song, weight = row
        if not isinstance(song, str) or not song or not isinstance(next_song, str) or not next_song:
            raise MalformedStoreError(f"Record {index} in {path} has an invalid song identifier", path)
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise MalformedStoreError(f"Record {index} in {path} has a non-numeric weight: {weight!r}", path)
        weight = float(weight)
        if not math.isfinite(weight) or weight < 0.0:
            raise MalformedStoreError(
                f"Record {index} ({song!r} -> {next_song!r}) in {path} has invalid weight {weight}", path
            )
        return song, next_song, weight

    @classmethod
    def load_or_empty(
        cls,
        path: PathLike,
        weight_max: float = DEFAULT_WEIGHT_MAX,
        fallback_to_empty: bool = False,
    ) -> "TransitionStore":
        """Startup helper: optionally replace an unreadable store with an empty one."""
        try:
            return cls.load(path, weight_max=weight_max)
        except StorageError as e:
            if not fallback_to_empty:
                raise
            logger.error(f"{e}; continuing with an empty transition store")
            return cls(weight_max=weight_max)

    def save(self, path: PathLike) -> None:
        """
        Write every edge to ``path`` atomically.

        The data goes to a temporary file next to ``path`` which is renamed
        over it only after a successful commit; on failure the previous file
        is left as it was.
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            os.close(fd)
        except OSError as e:
            raise StorageIOError(f"Cannot create temporary store next to {path}: {e}", path) from e

        tmp_path = Path(tmp_name)
        try:
            with stage_timer("Transition store save", logger):
                self._write(tmp_path)
                os.replace(tmp_path, path)
        except (OSError, sqlite3.Error) as e:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            raise StorageIOError(f"Cannot write transition store {path}: {e}", path) from e

        self._dirty = False
        logger.info(f"Saved {format_count(len(self), 'association')} to {path}")

    def _write(self, tmp_path: Path) -> None:
        conn = sqlite3.connect(tmp_path)
        try:
            conn.execute("CREATE TABLE meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
            conn.execute(
                """
                CREATE TABLE associations (
                    song TEXT NOT NULL,
                    next TEXT NOT NULL,
                    weight REAL NOT NULL,
                    PRIMARY KEY (song, next)
                )
                """
            )
            conn.execute("INSERT INTO meta (key, value) VALUES (?, ?)", ("schema_version", str(SCHEMA_VERSION)))
            conn.executemany(
                "INSERT INTO associations (song, next, weight) VALUES (?, ?, ?)",
                ((a.song, a.next, a.weight) for a in self.associations()),
            )
            conn.commit()
        finally:
            conn.close()


def save_quietly(store: TransitionStore, path: PathLike, log: Optional[logging.Logger] = None) -> bool:
    """Save on shutdown; report failure instead of raising so the process can exit."""
    try:
        store.save(path)
        return True
    except StorageError as e:
        (log or logger).error(f"Failed to save transition store: {e}")
        return False
