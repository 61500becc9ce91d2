from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .errors import ValidationError
from .identities import identity_for_address
from .models import Candidate, Holder

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateSelection:
    candidates: List[Candidate]
    requested: int
    available: int

    @property
    def shortfall(self) -> bool:
        return len(self.candidates) < self.requested


def select_candidates(
    holders: Sequence[Holder],
    excluded_addresses: Iterable[str],
    count: int,
    rng: Optional[random.Random] = None,
) -> CandidateSelection:
    """
    Random candidate set for one draw.

    Prior winners of the round are removed before sampling. A pool smaller than
    `count` returns everyone left; the caller decides how to report it.
    """
    if count < 1:
        raise ValidationError(f"Candidate count must be at least 1, got {count}.")

    rng = rng or random.SystemRandom()
    excluded = set(excluded_addresses)

    seen = set()
    pool: List[Holder] = []
    for h in holders:
        if h.address in excluded or h.address in seen:
            continue
        seen.add(h.address)
        pool.append(h)

    rng.shuffle(pool)
    picked = pool[:count]

    if len(picked) < count:
        log.warning(
            "Only %d eligible holders left for a draw of %d candidates.",
            len(picked),
            count,
        )

    candidates = [
        Candidate(address=h.address, balance=h.balance, identity=identity_for_address(h.address))
        for h in picked
    ]
    return CandidateSelection(candidates=candidates, requested=count, available=len(pool))
