from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoundStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Stage(str, Enum):
    IDLE = "IDLE"
    ROUND_START = "ROUND_START"
    DRAW_PREP = "DRAW_PREP"
    SPINNING = "SPINNING"
    WINNER_REVEAL = "WINNER_REVEAL"
    INTERMISSION = "INTERMISSION"
    ROUND_COMPLETE = "ROUND_COMPLETE"
    DISTRIBUTION = "DISTRIBUTION"


class DistributionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_SUCCESS = "partial_success"
    RETRYING = "retrying"


class Category(str, Enum):
    WINNERS = "winners"
    HOLDING = "holding"
    CHARITY = "charity"


class PayoutPolicy(str, Enum):
    EQUAL = "equal"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Identity:
    name: str
    glyph: str

    def display(self) -> str:
        return f"{self.glyph} {self.name}"


@dataclass(frozen=True)
class Holder:
    address: str
    balance: int  # raw token units


@dataclass(frozen=True)
class Candidate:
    address: str
    balance: int
    identity: Identity


@dataclass
class Round:
    id: str
    sequence_number: int
    status: RoundStatus = RoundStatus.SCHEDULED
    scheduled_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_prize_pool: Decimal = Decimal("0")
    round_duration_s: Optional[float] = None
    current_stage: Stage = Stage.IDLE
    current_draw: int = 1


@dataclass
class Participant:
    id: str
    round_id: str
    wallet_address: str
    token_balance: int
    identity: Identity
    joined_at: datetime


@dataclass
class Winner:
    id: str
    round_id: str
    wallet_address: str
    draw_sequence: int  # which draw (1-7) produced it
    sequence_number: int  # overall order within the round
    identity: Identity
    won_at: datetime
    participant_id: Optional[str] = None
    prize_amount: Decimal = Decimal("0")
    transaction_ref: Optional[str] = None
    paid_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.transaction_ref is not None


@dataclass(frozen=True)
class PendingSubmission:
    """A submitted transaction whose confirmation was inconclusive."""

    signature: str
    blockhash: str


@dataclass
class DistributionRecord:
    id: str
    round_id: str
    total_amount: Decimal
    winners_amount: Decimal
    holding_amount: Decimal
    charity_amount: Decimal
    executed_by: str
    executed_at: datetime
    payout_policy: PayoutPolicy = PayoutPolicy.EQUAL
    undistributed_amount: Decimal = Decimal("0")
    winners_transaction_ref: Optional[str] = None
    holding_transaction_ref: Optional[str] = None
    charity_transaction_ref: Optional[str] = None
    status: DistributionStatus = DistributionStatus.PENDING
    failure_reason: Optional[str] = None
    failed_transactions: List[str] = field(default_factory=list)
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    unconfirmed: Dict[str, PendingSubmission] = field(default_factory=dict)
    notes: Optional[str] = None

    def amount_for(self, category: Category) -> Decimal:
        return getattr(self, f"{category.value}_amount")

    def transaction_ref(self, category: Category) -> Optional[str]:
        return getattr(self, f"{category.value}_transaction_ref")

    def set_transaction_ref(self, category: Category, signature: str) -> None:
        setattr(self, f"{category.value}_transaction_ref", signature)
