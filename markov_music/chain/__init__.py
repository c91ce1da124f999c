"""
Markov chain core: transition store, weight policy, selector and strategies.
"""

from .config import ChainSettings, SquashConfig
from .policy import Feedback, TiredTracker, apply_feedback, dislike, like, reinforce
from .selector import Selector, sigmoid, squash
from .store import Association, StoreSnapshot, TransitionStore, save_quietly
from .strategies import (
    STRATEGIES,
    LoopBackStrategy,
    MarkovStrategy,
    RandomStrategy,
    RepeatStrategy,
    SelectionContext,
    SelectionStrategy,
    ShuffleStrategy,
    build_strategy,
)

__all__ = [
    "Association",
    "ChainSettings",
    "Feedback",
    "LoopBackStrategy",
    "MarkovStrategy",
    "RandomStrategy",
    "RepeatStrategy",
    "STRATEGIES",
    "SelectionContext",
    "SelectionStrategy",
    "Selector",
    "ShuffleStrategy",
    "SquashConfig",
    "StoreSnapshot",
    "TiredTracker",
    "TransitionStore",
    "apply_feedback",
    "build_strategy",
    "dislike",
    "like",
    "reinforce",
    "save_quietly",
    "sigmoid",
    "squash",
]
