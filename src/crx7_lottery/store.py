from __future__ import annotations

import abc
import copy
import json
import logging
import os
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import (
    DistributionRecord,
    DistributionStatus,
    Identity,
    Participant,
    PayoutPolicy,
    PendingSubmission,
    Round,
    RoundStatus,
    Stage,
    Winner,
)

log = logging.getLogger(__name__)


class Store(abc.ABC):
    """Persistence gateway. Failures surface as exceptions."""

    @abc.abstractmethod
    async def next_round_sequence(self) -> int: ...

    @abc.abstractmethod
    async def create_round(self, rnd: Round) -> None: ...

    @abc.abstractmethod
    async def update_round(self, rnd: Round) -> None: ...

    @abc.abstractmethod
    async def get_round(self, round_id: str) -> Optional[Round]: ...

    @abc.abstractmethod
    async def get_active_round(self) -> Optional[Round]: ...

    @abc.abstractmethod
    async def list_rounds(self) -> List[Round]: ...

    @abc.abstractmethod
    async def replace_participants(self, round_id: str, participants: List[Participant]) -> None: ...

    @abc.abstractmethod
    async def list_participants(self, round_id: str) -> List[Participant]: ...

    @abc.abstractmethod
    async def append_winner(self, winner: Winner) -> None: ...

    @abc.abstractmethod
    async def update_winner(self, winner: Winner) -> None: ...

    @abc.abstractmethod
    async def list_winners(self, round_id: str) -> List[Winner]: ...

    @abc.abstractmethod
    async def create_distribution(self, record: DistributionRecord) -> None: ...

    @abc.abstractmethod
    async def update_distribution(self, record: DistributionRecord) -> None: ...

    @abc.abstractmethod
    async def get_distribution(self, distribution_id: str) -> Optional[DistributionRecord]: ...

    @abc.abstractmethod
    async def list_distributions(self, round_id: Optional[str] = None) -> List[DistributionRecord]: ...


class MemoryStore(Store):
    """Keeps copies, so callers never share objects with the store."""

    def __init__(self) -> None:
        self.rounds: Dict[str, Round] = {}
        self.participants: Dict[str, List[Participant]] = {}
        self.winners: Dict[str, Winner] = {}
        self.distributions: Dict[str, DistributionRecord] = {}

    async def next_round_sequence(self) -> int:
        return max((r.sequence_number for r in self.rounds.values()), default=0) + 1

    async def create_round(self, rnd: Round) -> None:
        if rnd.id in self.rounds:
            raise KeyError(f"Round {rnd.id} already exists")
        if any(r.sequence_number == rnd.sequence_number for r in self.rounds.values()):
            raise ValueError(f"Round sequence {rnd.sequence_number} already used")
        self.rounds[rnd.id] = copy.deepcopy(rnd)
        self._changed()

    async def update_round(self, rnd: Round) -> None:
        if rnd.id not in self.rounds:
            raise KeyError(f"Round {rnd.id} not found")
        self.rounds[rnd.id] = copy.deepcopy(rnd)
        self._changed()

    async def get_round(self, round_id: str) -> Optional[Round]:
        return copy.deepcopy(self.rounds.get(round_id))

    async def get_active_round(self) -> Optional[Round]:
        for r in self.rounds.values():
            if r.status is RoundStatus.ACTIVE:
                return copy.deepcopy(r)
        return None

    async def list_rounds(self) -> List[Round]:
        return sorted(copy.deepcopy(list(self.rounds.values())), key=lambda r: r.sequence_number)

    async def replace_participants(self, round_id: str, participants: List[Participant]) -> None:
        self.participants[round_id] = copy.deepcopy(participants)
        self._changed()

    async def list_participants(self, round_id: str) -> List[Participant]:
        return copy.deepcopy(self.participants.get(round_id, []))

    async def append_winner(self, winner: Winner) -> None:
        if winner.id in self.winners:
            raise KeyError(f"Winner {winner.id} already exists")
        self.winners[winner.id] = copy.deepcopy(winner)
        self._changed()

    async def update_winner(self, winner: Winner) -> None:
        if winner.id not in self.winners:
            raise KeyError(f"Winner {winner.id} not found")
        self.winners[winner.id] = copy.deepcopy(winner)
        self._changed()

    async def list_winners(self, round_id: str) -> List[Winner]:
        found = [w for w in self.winners.values() if w.round_id == round_id]
        return sorted(copy.deepcopy(found), key=lambda w: w.sequence_number)

    async def create_distribution(self, record: DistributionRecord) -> None:
        if record.id in self.distributions:
            raise KeyError(f"Distribution {record.id} already exists")
        self.distributions[record.id] = copy.deepcopy(record)
        self._changed()

    async def update_distribution(self, record: DistributionRecord) -> None:
        if record.id not in self.distributions:
            raise KeyError(f"Distribution {record.id} not found")
        self.distributions[record.id] = copy.deepcopy(record)
        self._changed()

    async def get_distribution(self, distribution_id: str) -> Optional[DistributionRecord]:
        return copy.deepcopy(self.distributions.get(distribution_id))

    async def list_distributions(self, round_id: Optional[str] = None) -> List[DistributionRecord]:
        found = [
            d for d in self.distributions.values() if round_id is None or d.round_id == round_id
        ]
        return sorted(copy.deepcopy(found), key=lambda d: d.executed_at)

    def _changed(self) -> None:
        pass


class JsonFileStore(MemoryStore):
    """MemoryStore mirrored to one JSON document, rewritten on every change."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = path
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                self._load(json.load(f))
            log.debug("Loaded %d rounds from %s", len(self.rounds), path)

    def _changed(self) -> None:
        doc = {
            "rounds": [_dump(r) for r in self.rounds.values()],
            "participants": {
                rid: [_dump(p) for p in ps] for rid, ps in self.participants.items()
            },
            "winners": [_dump(w) for w in self.winners.values()],
            "distributions": [_dump(d) for d in self.distributions.values()],
        }
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2)
        os.replace(tmp, self.path)

    def _load(self, doc: Dict[str, Any]) -> None:
        for r in doc.get("rounds", []):
            rnd = round_from_dict(r)
            self.rounds[rnd.id] = rnd
        for rid, ps in doc.get("participants", {}).items():
            self.participants[rid] = [participant_from_dict(p) for p in ps]
        for w in doc.get("winners", []):
            winner = winner_from_dict(w)
            self.winners[winner.id] = winner
        for d in doc.get("distributions", []):
            record = distribution_from_dict(d)
            self.distributions[record.id] = record


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _dump(obj: Any) -> Dict[str, Any]:
    return _jsonable(asdict(obj))


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def round_from_dict(d: Dict[str, Any]) -> Round:
    return Round(
        id=d["id"],
        sequence_number=int(d["sequence_number"]),
        status=RoundStatus(d["status"]),
        scheduled_at=_dt(d.get("scheduled_at")),
        executed_at=_dt(d.get("executed_at")),
        completed_at=_dt(d.get("completed_at")),
        total_prize_pool=Decimal(d.get("total_prize_pool", "0")),
        round_duration_s=d.get("round_duration_s"),
        current_stage=Stage(d.get("current_stage", Stage.IDLE.value)),
        current_draw=int(d.get("current_draw", 1)),
    )


def participant_from_dict(d: Dict[str, Any]) -> Participant:
    return Participant(
        id=d["id"],
        round_id=d["round_id"],
        wallet_address=d["wallet_address"],
        token_balance=int(d["token_balance"]),
        identity=Identity(**d["identity"]),
        joined_at=_dt(d["joined_at"]),
    )


def winner_from_dict(d: Dict[str, Any]) -> Winner:
    return Winner(
        id=d["id"],
        round_id=d["round_id"],
        wallet_address=d["wallet_address"],
        draw_sequence=int(d["draw_sequence"]),
        sequence_number=int(d["sequence_number"]),
        identity=Identity(**d["identity"]),
        won_at=_dt(d["won_at"]),
        participant_id=d.get("participant_id"),
        prize_amount=Decimal(d.get("prize_amount", "0")),
        transaction_ref=d.get("transaction_ref"),
        paid_at=_dt(d.get("paid_at")),
    )


def distribution_from_dict(d: Dict[str, Any]) -> DistributionRecord:
    return DistributionRecord(
        id=d["id"],
        round_id=d["round_id"],
        total_amount=Decimal(d["total_amount"]),
        winners_amount=Decimal(d["winners_amount"]),
        holding_amount=Decimal(d["holding_amount"]),
        charity_amount=Decimal(d["charity_amount"]),
        executed_by=d["executed_by"],
        executed_at=_dt(d["executed_at"]),
        payout_policy=PayoutPolicy(d.get("payout_policy", PayoutPolicy.EQUAL.value)),
        undistributed_amount=Decimal(d.get("undistributed_amount", "0")),
        winners_transaction_ref=d.get("winners_transaction_ref"),
        holding_transaction_ref=d.get("holding_transaction_ref"),
        charity_transaction_ref=d.get("charity_transaction_ref"),
        status=DistributionStatus(d["status"]),
        failure_reason=d.get("failure_reason"),
        failed_transactions=list(d.get("failed_transactions") or []),
        retry_count=int(d.get("retry_count", 0)),
        last_retry_at=_dt(d.get("last_retry_at")),
        unconfirmed={
            k: PendingSubmission(**v) for k, v in (d.get("unconfirmed") or {}).items()
        },
        notes=d.get("notes"),
    )
