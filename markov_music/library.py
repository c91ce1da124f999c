"""
Music library enumeration.

Song identifiers are library-relative POSIX paths, e.g.
``"Artist/Album/01 Song.flac"``. They are compared exactly (case-sensitive).
"""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

import mutagen
from mutagen import MutagenError

from .logging_utils import format_count

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = {'.mp3', '.flac', '.m4a', '.ogg', '.opus', '.wma', '.wav', '.aac'}


@dataclass(frozen=True)
class SongTags:
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    duration_seconds: Optional[float] = None

    def display(self, fallback: str) -> str:
        """Human label like "Artist - Title", or ``fallback`` when untagged."""
        if self.title and self.artist:
            return f"{self.artist} - {self.title}"
        return self.title or fallback


class SongSource(ABC):
    """Anything that can list the playable song identifiers."""

    @abstractmethod
    def songs(self) -> List[str]:
        pass

    def contains(self, song: str) -> bool:
        return song in self.songs()

    def path_for(self, song: str) -> Path:
        return Path(song)

    def tags(self, song: str) -> "SongTags":
        return SongTags()

    def __len__(self) -> int:
        return len(self.songs())


class StaticLibrary(SongSource):
    """A fixed list of identifiers (used by tools and tests)."""

    def __init__(self, songs: Iterable[str] = ()):
        self._songs = list(dict.fromkeys(songs))

    def songs(self) -> List[str]:
        return list(self._songs)


class Library(SongSource):
    """Audio files under a music directory, scanned lazily and cached."""

    def __init__(self, root: os.PathLike, extensions: Optional[Iterable[str]] = None):
        self.root = Path(root).expanduser()
        self.extensions = {e.lower() for e in (extensions or AUDIO_EXTENSIONS)}
        self._songs: Optional[List[str]] = None
        self._song_set: frozenset = frozenset()

    def _scan(self) -> List[str]:
        if not self.root.is_dir():
            logger.warning(f"Music directory does not exist: {self.root}")
            return []
        found: List[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith('.'))
            for filename in sorted(filenames):
                if filename.startswith('.'):
                    continue
                if Path(filename).suffix.lower() in self.extensions:
                    found.append((Path(dirpath) / filename).relative_to(self.root).as_posix())
        logger.info(f"Found {format_count(len(found), 'song')} under {self.root}")
        return found

    def songs(self) -> List[str]:
        if self._songs is None:
            self._songs = self._scan()
            self._song_set = frozenset(self._songs)
        return list(self._songs)

    def refresh(self) -> int:
        """Rescan the directory; returns the new song count."""
        self._songs = None
        return len(self.songs())

    def contains(self, song: str) -> bool:
        self.songs()
        return song in self._song_set

    def path_for(self, song: str) -> Path:
        """Absolute path of a song identifier."""
        return self.root / Path(*song.split('/'))

    def identify(self, path: os.PathLike) -> str:
        """Song identifier for a file path (absolute or relative to the root)."""
        path = Path(path).expanduser()
        if path.is_absolute():
            return path.resolve().relative_to(self.root.resolve()).as_posix()
        return path.as_posix()

    def tags(self, song: str) -> SongTags:
        """Read basic tags with mutagen; unreadable files give empty tags."""
        path = self.path_for(song)
        try:
            audio = mutagen.File(path, easy=True)
        except (MutagenError, OSError) as e:
            logger.debug(f"Could not read tags for {song}: {e}")
            return SongTags()
        if audio is None:
            return SongTags()

        tags = audio.tags if audio.tags is not None else {}

        def first(key: str) -> Optional[str]:
            values = tags.get(key)
            return str(values[0]) if values else None

        duration = getattr(getattr(audio, 'info', None), 'length', None)
        return SongTags(
            title=first('title'),
            artist=first('artist'),
            album=first('album'),
            duration_seconds=float(duration) if duration else None,
        )
