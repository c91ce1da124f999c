"""Test configuration and fixtures."""

import sys
from pathlib import Path
from typing import List, Set

import numpy as np
import pytest

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from markov_music.chain.config import ChainSettings
from markov_music.chain.store import TransitionStore
from markov_music.errors import PlayerError
from markov_music.library import StaticLibrary
from markov_music.player import Player, Seek
from markov_music.session import Session


class FakePlayer(Player):
    """In-memory player that records what it was asked to do."""

    def __init__(self):
        self.played: List[str] = []
        self.fail_paths: Set[str] = set()
        self.paused = False
        self.muted = False
        self.volume = 50
        self.seeks: List[Seek] = []
        self.stopped = 0
        self.finished = False
        self.percent = 0

    def play(self, path: str) -> None:
        if path in self.fail_paths:
            raise PlayerError(f"cannot play {path}")
        self.played.append(path)
        self.finished = False

    def stop(self) -> None:
        self.stopped += 1

    def is_paused(self) -> bool:
        return self.paused

    def set_pause(self, paused: bool) -> None:
        self.paused = paused

    def is_muted(self) -> bool:
        return self.muted

    def set_mute(self, muted: bool) -> None:
        self.muted = muted

    def get_volume(self) -> int:
        return self.volume

    def set_volume(self, volume: int) -> None:
        self.volume = volume

    def seek(self, target: Seek) -> None:
        self.seeks.append(target)

    def percent_pos(self) -> int:
        return self.percent

    def is_finished(self) -> bool:
        finished, self.finished = self.finished, False
        return finished


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def settings():
    return ChainSettings(
        reinforce_delta=1.0,
        like_delta=2.0,
        dislike_delta=2.0,
        weight_max=100.0,
        tired_cooldown_seconds=60.0,
    )


@pytest.fixture()
def library():
    return StaticLibrary(["A", "B", "C", "D", "E"])


@pytest.fixture()
def store(settings):
    return TransitionStore(weight_max=settings.weight_max)


@pytest.fixture()
def player():
    return FakePlayer()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def make_session(store, library, player, settings, clock):
    def _make(strategy: str = "markov", seed: int = 7, **overrides) -> Session:
        return Session(
            overrides.pop("store", store),
            overrides.pop("library", library),
            overrides.pop("player", player),
            settings=overrides.pop("settings", settings),
            strategy=strategy,
            rng=np.random.default_rng(seed),
            clock=clock,
        )
    return _make


@pytest.fixture()
def music_dir(tmp_path):
    """A small on-disk library with a few non-audio files mixed in."""
    root = tmp_path / "Music"
    files = [
        "Alpha/First Album/01 Intro.mp3",
        "Alpha/First Album/02 Song.flac",
        "Beta/Single.ogg",
        "Beta/cover.jpg",
        "notes.txt",
        ".hidden/Secret.mp3",
        "Gamma/LOUD.MP3",
    ]
    for rel in files:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")
    return root
