"""
markov-music: a music player that picks the next song from a Markov chain
learned from what you actually listen to.
"""

__version__ = "0.3.0"

from .chain import ChainSettings, Feedback, Selector, TransitionStore
from .session import PlayState, Session, SessionStatus

__all__ = [
    "ChainSettings",
    "Feedback",
    "PlayState",
    "Selector",
    "Session",
    "SessionStatus",
    "TransitionStore",
    "__version__",
]
