"""Feature sampling for previews.

Systematic sampling is deterministic: the same input length and limit
always select the same indices.  Random sampling is deterministic for
a given seed.
"""

from __future__ import annotations

import math
import random
from typing import Literal

SamplingMode = Literal["systematic", "random"]

SAMPLING_MODES: tuple[str, ...] = ("systematic", "random")


def sample_indices(
    length: int,
    max_features: int,
    mode: SamplingMode = "systematic",
    seed: int | None = None,
) -> list[int]:
    """Indices of the features to keep, in ascending order.

    Args:
        length: Number of input features.
        max_features: Upper bound on the number of indices returned.
        mode: ``"systematic"`` (every ``ceil(length / max_features)``-th
            feature) or ``"random"``.
        seed: Seed for random mode.

    Returns:
        All indices when ``length <= max_features``.

    Raises:
        ValueError: If ``max_features`` is not positive or ``mode`` is unknown.
    """
    if max_features <= 0:
        msg = f"max_features must be > 0, got {max_features}"
        raise ValueError(msg)
    if mode not in SAMPLING_MODES:
        msg = f"Unknown sampling mode {mode!r}; expected one of {SAMPLING_MODES}"
        raise ValueError(msg)
    if length <= max_features:
        return list(range(length))

    if mode == "random":
        return sorted(random.Random(seed).sample(range(length), max_features))

    step = math.ceil(length / max_features)
    return list(range(0, length, step))[:max_features]
