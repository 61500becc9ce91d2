from __future__ import annotations

import asyncio
import dataclasses
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .candidates import CandidateSelection, select_candidates
from .distribution import Number, floor_sol, to_decimal
from .errors import (
    EmptyCandidatesError,
    NoActiveRoundError,
    RoundAlreadyActiveError,
    StageError,
    ValidationError,
)
from .models import (
    Candidate,
    Holder,
    Participant,
    Round,
    RoundStatus,
    Stage,
    Winner,
    new_id,
    utcnow,
)
from .project_constants import CANDIDATES_PER_DRAW, MAX_DRAWS, SPIN_DURATION_S
from .store import Store
from .wheel import winner_index

log = logging.getLogger(__name__)


def next_stage(stage: Stage | str, winner_count: int, max_draws: int = MAX_DRAWS) -> Optional[Stage]:
    """
    Successor of `stage`, or None when there is none.

    ROUND_START, WINNER_REVEAL and INTERMISSION branch on the winner count, so a
    repeated or duplicated advance can never skip a draw, and a round recovered
    with all of its winners goes straight to ROUND_COMPLETE.
    """
    try:
        stage = Stage(stage)
    except ValueError:
        return None

    if stage is Stage.ROUND_START:
        return Stage.DRAW_PREP if winner_count < max_draws else Stage.ROUND_COMPLETE
    if stage is Stage.DRAW_PREP:
        return Stage.SPINNING
    if stage is Stage.SPINNING:
        return Stage.WINNER_REVEAL
    if stage is Stage.WINNER_REVEAL:
        return Stage.INTERMISSION if winner_count < max_draws else Stage.ROUND_COMPLETE
    if stage is Stage.INTERMISSION:
        return Stage.DRAW_PREP if winner_count < max_draws else Stage.ROUND_COMPLETE
    if stage is Stage.ROUND_COMPLETE:
        return Stage.DISTRIBUTION
    return None


@dataclass
class DrawRecord:
    draw_number: int
    candidates: List[Candidate]
    available: int
    rotation: Optional[float] = None
    winner_index: Optional[int] = None

    @property
    def winner(self) -> Optional[Candidate]:
        if self.winner_index is None:
            return None
        return self.candidates[self.winner_index]


@dataclass
class RoundState:
    round: Round
    winners: List[Winner] = field(default_factory=list)
    candidates: List[Candidate] = field(default_factory=list)
    pending_rotation: Optional[float] = None
    draws: Dict[int, DrawRecord] = field(default_factory=dict)
    # Participants loaded on recovery, then per draw
    base_participants: List[Participant] = field(default_factory=list)
    draw_participants: Dict[int, List[Participant]] = field(default_factory=dict)
    participants_persisted: bool = True

    def participants(self) -> List[Participant]:
        seen: Dict[str, Participant] = {}
        for p in self.base_participants:
            seen.setdefault(p.wallet_address, p)
        for draw in sorted(self.draw_participants):
            for p in self.draw_participants[draw]:
                seen.setdefault(p.wallet_address, p)
        return list(seen.values())


@dataclass(frozen=True)
class RoundSnapshot:
    round_id: str
    sequence_number: int
    status: RoundStatus
    stage: Stage
    current_draw: int
    completed: int
    total: int
    candidates: List[Candidate]
    winners: List[Winner]

    @property
    def remaining(self) -> int:
        return self.total - self.completed

    @property
    def percentage(self) -> float:
        return self.completed / self.total * 100


class RoundController:
    """
    Owns the single in-process round. All mutation happens under one lock;
    the in-memory state is authoritative and persisted after every change.
    """

    def __init__(
        self,
        store: Store,
        max_draws: int = MAX_DRAWS,
        candidates_per_draw: int = CANDIDATES_PER_DRAW,
        spin_duration_s: float = SPIN_DURATION_S,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.max_draws = max_draws
        self.candidates_per_draw = candidates_per_draw
        self.spin_duration_s = spin_duration_s
        self.rng = rng
        self._lock = asyncio.Lock()
        self._state: Optional[RoundState] = None
        self._spin_task: Optional[asyncio.Task] = None

    @property
    def stage(self) -> Stage:
        return self._state.round.current_stage if self._state else Stage.IDLE

    @property
    def round(self) -> Optional[Round]:
        return self._state.round if self._state else None

    @property
    def winners(self) -> List[Winner]:
        return list(self._state.winners) if self._state else []

    @property
    def draw_records(self) -> List[DrawRecord]:
        if not self._state:
            return []
        return [self._state.draws[n] for n in sorted(self._state.draws)]

    def snapshot(self) -> RoundSnapshot:
        state = self._require_state()
        return RoundSnapshot(
            round_id=state.round.id,
            sequence_number=state.round.sequence_number,
            status=state.round.status,
            stage=state.round.current_stage,
            current_draw=state.round.current_draw,
            completed=len(state.winners),
            total=self.max_draws,
            candidates=list(state.candidates),
            winners=list(state.winners),
        )

    def _require_state(self) -> RoundState:
        if self._state is None:
            raise NoActiveRoundError("No round loaded.")
        return self._state

    def _require_active(self) -> RoundState:
        state = self._require_state()
        if state.round.status is not RoundStatus.ACTIVE:
            raise NoActiveRoundError(f"Round {state.round.id} is {state.round.status.value}.")
        return state

    async def start_round(self, prize_pool: Number) -> Round:
        prize = floor_sol(to_decimal(prize_pool, "prize pool"))
        if prize < 0:
            raise ValidationError(f"Prize pool must not be negative, got {prize}.")

        async with self._lock:
            if self._state and self._state.round.status is RoundStatus.ACTIVE:
                raise RoundAlreadyActiveError(self._state.round.id)
            active = await self.store.get_active_round()
            if active is not None:
                raise RoundAlreadyActiveError(active.id)

            now = utcnow()
            rnd = Round(
                id=new_id(),
                sequence_number=await self.store.next_round_sequence(),
                status=RoundStatus.ACTIVE,
                scheduled_at=now,
                executed_at=now,
                total_prize_pool=prize,
                current_stage=Stage.ROUND_START,
                current_draw=1,
            )
            await self.store.create_round(rnd)
            self._cancel_spin_timer()
            self._state = RoundState(round=rnd)
            log.info("Started round #%d (%s), prize pool %s SOL", rnd.sequence_number, rnd.id, prize)
            return rnd

    async def recover_active_round(self, round_id: str, draw_index: int) -> Round:
        """Rebuild state for a round left active by a previous process."""
        if not round_id:
            raise ValidationError("round_id is required.")
        if not 1 <= draw_index <= self.max_draws:
            raise ValidationError(f"Draw index must be within 1-{self.max_draws}, got {draw_index}.")

        async with self._lock:
            current = self._state
            if current and current.round.status is RoundStatus.ACTIVE and current.round.id != round_id:
                raise RoundAlreadyActiveError(current.round.id)

            rnd = await self.store.get_round(round_id)
            if rnd is None:
                raise ValidationError(f"Round {round_id} not found.")
            if rnd.status is not RoundStatus.ACTIVE:
                raise ValidationError(f"Round {round_id} is {rnd.status.value}, not active.")

            log.info("Recovering active round %s at draw %d", round_id, draw_index)
            rnd.current_stage = Stage.ROUND_START
            rnd.current_draw = draw_index
            self._cancel_spin_timer()
            self._state = RoundState(
                round=rnd,
                winners=await self.store.list_winners(round_id),
                base_participants=await self.store.list_participants(round_id),
            )
            await self._persist_round(rnd)
            return rnd

    async def load_round(self, round_id: str) -> Round:
        """Attach to a persisted round at its stored stage, e.g. to complete it after payout."""
        async with self._lock:
            rnd = await self.store.get_round(round_id)
            if rnd is None:
                raise ValidationError(f"Round {round_id} not found.")
            current = self._state
            if current and current.round.status is RoundStatus.ACTIVE and current.round.id != round_id:
                raise RoundAlreadyActiveError(current.round.id)
            self._cancel_spin_timer()
            self._state = RoundState(
                round=rnd,
                winners=await self.store.list_winners(round_id),
                base_participants=await self.store.list_participants(round_id),
            )
            return rnd

    async def advance_stage(self) -> Stage:
        async with self._lock:
            return await self._advance_locked()

    async def _advance_locked(self) -> Stage:
        state = self._require_active()
        current = state.round.current_stage
        nxt = next_stage(current, len(state.winners), self.max_draws)
        if nxt is None:
            log.warning("No stage follows %s; ignoring advance", current)
            return current

        if current is Stage.DRAW_PREP and state.pending_rotation is None:
            log.warning("Draw %d has not been spun; staying in DRAW_PREP", state.round.current_draw)
            return current
        if current is Stage.SPINNING:
            if self._spin_task is not asyncio.current_task():
                self._cancel_spin_timer()
            await self._reveal_winner(state)
        if current is Stage.INTERMISSION and nxt is Stage.DRAW_PREP:
            state.round.current_draw = min(len(state.winners) + 1, self.max_draws)
            state.candidates = []
            state.pending_rotation = None

        state.round.current_stage = nxt
        log.debug("Round %s: %s -> %s", state.round.id, current.value, nxt.value)
        await self._persist_round(state.round)
        return nxt

    async def prepare_draw(self, holders: Sequence[Holder]) -> CandidateSelection:
        async with self._lock:
            state = self._require_active()
            if state.round.current_stage is not Stage.DRAW_PREP:
                raise StageError(f"Candidates are drawn in DRAW_PREP, not {state.round.current_stage.value}.")
            if len(state.winners) >= self.max_draws:
                raise StageError("All draws of this round already have winners.")

            draw = state.round.current_draw
            selection = select_candidates(
                holders,
                [w.wallet_address for w in state.winners],
                self.candidates_per_draw,
                self.rng,
            )
            if selection.shortfall:
                log.warning(
                    "Draw %d degraded: %d of %d candidates available",
                    draw,
                    len(selection.candidates),
                    selection.requested,
                )

            state.candidates = selection.candidates
            state.pending_rotation = None
            state.draws[draw] = DrawRecord(draw, selection.candidates, selection.available)

            known = {p.wallet_address: p for p in state.participants()}
            now = utcnow()
            state.draw_participants[draw] = [
                known.get(c.address)
                or Participant(new_id(), state.round.id, c.address, c.balance, c.identity, now)
                for c in selection.candidates
            ]
            try:
                await self.store.replace_participants(state.round.id, state.participants())
                state.participants_persisted = True
            except Exception:
                state.participants_persisted = False
                log.exception("Failed to persist participants of round %s", state.round.id)
            return selection

    async def spin(self, rotation: float) -> None:
        """Record the client's spin and arm the timer that reveals the winner."""
        if not math.isfinite(rotation):
            raise ValidationError(f"Rotation must be a finite number, got {rotation!r}.")

        async with self._lock:
            state = self._require_active()
            if state.round.current_stage is not Stage.DRAW_PREP:
                raise StageError(f"Cannot spin in {state.round.current_stage.value}.")
            if not state.candidates:
                raise EmptyCandidatesError()

            state.pending_rotation = rotation
            await self._advance_locked()
            self._spin_task = asyncio.create_task(
                self._auto_reveal(state.round.id, len(state.winners))
            )

    async def _auto_reveal(self, round_id: str, winner_count: int) -> None:
        await asyncio.sleep(self.spin_duration_s)
        async with self._lock:
            state = self._state
            if (
                state is None
                or state.round.id != round_id
                or state.round.current_stage is not Stage.SPINNING
                or len(state.winners) != winner_count
            ):
                return
            await self._advance_locked()

    async def wait_for_reveal(self) -> Optional[Winner]:
        """Wait for the spin timer; returns the winner of the draw just spun."""
        task = self._spin_task
        if task is not None:
            await asyncio.wait({task})
            if not task.cancelled():
                task.result()
        state = self._require_state()
        if state.round.current_stage is Stage.WINNER_REVEAL and state.winners:
            return state.winners[-1]
        return None

    def _cancel_spin_timer(self) -> None:
        if self._spin_task is not None and not self._spin_task.done():
            self._spin_task.cancel()

    async def _reveal_winner(self, state: RoundState) -> None:
        rotation = state.pending_rotation
        if rotation is None or not state.candidates:
            log.warning("Draw %d revealed without a spin; no winner", state.round.current_draw)
            return

        idx = winner_index(rotation, len(state.candidates))
        picked = state.candidates[idx]
        participant = None
        if state.participants_persisted:
            participant = next(
                (p for p in state.participants() if p.wallet_address == picked.address), None
            )
        winner = Winner(
            id=new_id(),
            round_id=state.round.id,
            wallet_address=picked.address,
            draw_sequence=state.round.current_draw,
            sequence_number=len(state.winners) + 1,
            identity=picked.identity,
            won_at=utcnow(),
            participant_id=participant.id if participant else None,
        )
        # Persist first: if this fails the same spin can be revealed again
        await self.store.append_winner(winner)

        state.winners.append(winner)
        state.pending_rotation = None
        record = state.draws.get(state.round.current_draw)
        if record is not None:
            record.rotation = rotation
            record.winner_index = idx
        log.info(
            "Draw %d winner #%d: %s (%s)",
            winner.draw_sequence,
            winner.sequence_number,
            winner.wallet_address,
            winner.identity.display(),
        )

    async def complete_round(self) -> Round:
        async with self._lock:
            state = self._require_active()
            if state.round.current_stage not in (Stage.ROUND_COMPLETE, Stage.DISTRIBUTION):
                raise StageError(
                    f"Round can only complete after its draws, not in {state.round.current_stage.value}."
                )
            now = utcnow()
            executed = state.round.executed_at or now
            done = dataclasses.replace(
                state.round,
                status=RoundStatus.COMPLETED,
                completed_at=now,
                round_duration_s=(now - executed).total_seconds(),
                current_stage=Stage.DISTRIBUTION,
            )
            await self.store.update_round(done)
            state.round = done
            log.info("Round #%d completed with %d winners", done.sequence_number, len(state.winners))
            return done

    async def cancel_round(self, reason: str = "") -> Round:
        async with self._lock:
            state = self._require_active()
            cancelled = dataclasses.replace(
                state.round, status=RoundStatus.CANCELLED, current_stage=Stage.IDLE
            )
            await self.store.update_round(cancelled)
            self._cancel_spin_timer()
            state.round = cancelled
            log.warning("Round #%d cancelled: %s", cancelled.sequence_number, reason or "no reason given")
            return cancelled

    async def _persist_round(self, rnd: Round) -> None:
        # Best effort: the next successful write carries the latest stage
        try:
            await self.store.update_round(rnd)
        except Exception:
            log.exception(
                "Failed to persist round %s at %s (draw %d); continuing in memory",
                rnd.id,
                rnd.current_stage.value,
                rnd.current_draw,
            )
