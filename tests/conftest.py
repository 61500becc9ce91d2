from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Set

import pytest
from solders.pubkey import Pubkey

from crx7_lottery.bundler import BundleResult, SubmissionState
from crx7_lottery.errors import TransactionRejectedError
from crx7_lottery.identities import identity_for_address
from crx7_lottery.models import Category, Holder, Round, RoundStatus, Stage, Winner, new_id
from crx7_lottery.store import MemoryStore


def new_address() -> str:
    return str(Pubkey.new_unique())


def make_holders(n: int, balance: int = 5_000_000) -> List[Holder]:
    return [Holder(new_address(), balance + i) for i in range(n)]


async def seed_round(store: MemoryStore, winner_count: int = 7) -> Round:
    rnd = Round(
        id=new_id(),
        sequence_number=await store.next_round_sequence(),
        status=RoundStatus.ACTIVE,
        total_prize_pool=Decimal("100"),
        current_stage=Stage.ROUND_COMPLETE,
        current_draw=7,
    )
    await store.create_round(rnd)
    for i in range(1, winner_count + 1):
        addr = new_address()
        await store.append_winner(
            Winner(
                id=new_id(),
                round_id=rnd.id,
                wallet_address=addr,
                draw_sequence=i,
                sequence_number=i,
                identity=identity_for_address(addr),
                won_at=datetime(2025, 1, 1, 12, i, tzinfo=timezone.utc),
            )
        )
    return rnd


class FakeBundler:
    """Stands in for TransactionBundler; categories in `fail` are rejected."""

    def __init__(self, fail: Iterable[str] = ()) -> None:
        self.fail: Set[str] = set(fail)
        self.calls: List[tuple] = []
        self.states = {}
        self.payer_address = new_address()
        self.raise_for: dict = {}

    @property
    def categories_sent(self) -> List[str]:
        return [c.value for c, _ in self.calls]

    async def send_bundle(self, category: Category, transfers) -> BundleResult:
        self.calls.append((category, list(transfers)))
        if category.value in self.raise_for:
            raise self.raise_for[category.value]
        if category.value in self.fail:
            raise TransactionRejectedError(f"{category.value} simulated failure")
        lamports = sum(t.lamports for t in transfers)
        return BundleResult(category, f"sig-{category.value}-{len(self.calls)}", 1, lamports)

    async def check_submission(self, pending) -> SubmissionState:
        return self.states.get(pending.signature, SubmissionState.EXPIRED)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def wallets():
    from crx7_lottery.config import PayoutWallets

    return PayoutWallets(holding=new_address(), charity=new_address())
