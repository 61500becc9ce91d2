from __future__ import annotations

import math
import random
from typing import Optional, Sequence, TypeVar

from .errors import EmptyCandidatesError, ValidationError

T = TypeVar("T")

FULL_TURN = 360.0


def winner_index(rotation: float, candidate_count: int) -> int:
    """
    Index of the wheel segment under the top pointer after `rotation` degrees.

    Segment 0 starts at the pointer and segments move against the rotation,
    so the pointer reads (360 - rotation) on the wheel. Must stay bit-for-bit
    stable: audits replay it.
    """
    if candidate_count <= 0:
        raise EmptyCandidatesError()
    if not math.isfinite(rotation):
        raise ValidationError(f"Rotation must be a finite number, got {rotation!r}.")

    segment_angle = FULL_TURN / candidate_count
    normalized = rotation % FULL_TURN
    adjusted = (FULL_TURN - normalized) % FULL_TURN
    return int(math.floor(adjusted / segment_angle)) % candidate_count


def resolve_winner(rotation: float, candidates: Sequence[T]) -> T:
    return candidates[winner_index(rotation, len(candidates))]


def random_rotation(
    rng: Optional[random.Random] = None, min_turns: int = 5, max_turns: int = 10
) -> float:
    """Headless stand-in for the UI spin: a few full turns plus a random offset."""
    rng = rng or random.SystemRandom()
    return rng.randint(min_turns, max_turns - 1) * FULL_TURN + rng.uniform(0.0, FULL_TURN)
