from __future__ import annotations

import math
from dataclasses import dataclass, field


@dataclass(frozen=True)
class SquashConfig:
    """
    Parameters of the logistic curve applied to edge weights before sampling.

    Both are in units of the weight ceiling: the curve sees ``weight / weight_max``.
    """

    slope: float = 3.0
    midpoint: float = 0.0

    def __post_init__(self) -> None:
        if not math.isfinite(self.slope) or self.slope <= 0:
            raise ValueError(f"sigmoid slope must be positive, got {self.slope}")
        if not math.isfinite(self.midpoint):
            raise ValueError(f"sigmoid midpoint must be finite, got {self.midpoint}")


@dataclass(frozen=True)
class ChainSettings:
    reinforce_delta: float = 1.0
    like_delta: float = 2.0
    dislike_delta: float = 2.0
    weight_max: float = 100.0
    tired_cooldown_seconds: float = 3600.0
    squash: SquashConfig = field(default_factory=SquashConfig)
    reinforce_on_skip: bool = False

    def __post_init__(self) -> None:
        for name in ("reinforce_delta", "like_delta", "dislike_delta", "tired_cooldown_seconds"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be a non-negative number, got {value}")
        if not math.isfinite(self.weight_max) or self.weight_max <= 0:
            raise ValueError(f"weight_max must be positive, got {self.weight_max}")
