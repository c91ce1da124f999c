"""Exception hierarchy for markov-music."""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class MarkovMusicError(Exception):
    """Base class for every error raised by this package."""
    pass


class StorageError(MarkovMusicError):
    """Raised when the transition store cannot be loaded or saved."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class StorageIOError(StorageError):
    """The store file could not be read or written."""
    pass


class MalformedStoreError(StorageError):
    """The store file exists but its contents are invalid."""
    pass


class SelectionError(MarkovMusicError):
    """Raised when no next song can be chosen."""
    pass


class EmptyLibraryError(SelectionError):
    """There is nothing playable in the library."""

    def __init__(self, message: str = "Music library contains no playable songs"):
        super().__init__(message)


class PlayerError(MarkovMusicError):
    """Raised by a player backend when a command fails."""
    pass


class SessionStoppedError(MarkovMusicError):
    """The session has been stopped and cannot advance any more."""
    pass


class ProtocolError(MarkovMusicError):
    """A control-plane request could not be decoded."""
    pass


class UnknownSongError(MarkovMusicError):
    """A manually chosen song is not part of the library."""
    pass
