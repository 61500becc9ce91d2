from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Dict, Iterable, List, Mapping, Optional, Set

from .bundler import SubmissionState, Transfer, TransactionBundler, validate_wallet_addresses
from .config import PayoutWallets
from .distribution import (
    DistributionPercentages,
    Number,
    calculate_distribution,
    plan_winner_payouts,
    to_lamports,
)
from .errors import (
    ConfirmationTimeoutError,
    DistributionExistsError,
    DistributionNotFoundError,
    LotteryError,
    NoPendingWinnersError,
    RetryInProgressError,
    RetryLimitExceededError,
    ValidationError,
)
from .models import (
    Category,
    DistributionRecord,
    DistributionStatus,
    PayoutPolicy,
    PendingSubmission,
    Winner,
    new_id,
    utcnow,
)
from .project_constants import MAX_DISTRIBUTION_RETRIES
from .store import Store

log = logging.getLogger(__name__)

# Submission order; sequential keeps fee handling and failure attribution simple
CATEGORY_ORDER = (Category.WINNERS, Category.HOLDING, Category.CHARITY)


def applicable_categories(record: DistributionRecord) -> List[Category]:
    return [c for c in CATEGORY_ORDER if to_lamports(record.amount_for(c)) > 0]


def resolve_status(record: DistributionRecord) -> DistributionStatus:
    categories = applicable_categories(record)
    succeeded = [c for c in categories if record.transaction_ref(c)]
    if len(succeeded) == len(categories):
        return DistributionStatus.COMPLETED
    if succeeded:
        return DistributionStatus.PARTIAL_SUCCESS
    return DistributionStatus.FAILED


@dataclass(frozen=True)
class PendingWinnersSummary:
    count: int
    total_amount: Decimal
    winners: List[Winner]


class DistributionCoordinator:
    def __init__(
        self,
        store: Store,
        bundler: TransactionBundler,
        wallets: PayoutWallets,
        percentages: Optional[DistributionPercentages] = None,
        max_retries: int = MAX_DISTRIBUTION_RETRIES,
    ) -> None:
        self.store = store
        self.bundler = bundler
        self.wallets = wallets
        self.percentages = percentages or DistributionPercentages()
        self.max_retries = max_retries
        self._running: Set[str] = set()

    @asynccontextmanager
    async def _single_flight(self, key: str) -> AsyncIterator[None]:
        # Checked and set without an await in between, so no lock is needed
        if key in self._running:
            raise RetryInProgressError(key)
        self._running.add(key)
        try:
            yield
        finally:
            self._running.discard(key)

    async def pending_winners(self, round_id: str) -> List[Winner]:
        return [w for w in await self.store.list_winners(round_id) if not w.is_paid]

    async def pending_winners_summary(self, round_id: str) -> PendingWinnersSummary:
        pending = await self.pending_winners(round_id)
        total = sum((w.prize_amount for w in pending), Decimal(0))
        return PendingWinnersSummary(len(pending), total, pending)

    async def execute(
        self,
        round_id: str,
        total_amount: Number,
        executed_by: str,
        policy: PayoutPolicy,
        custom_amounts: Optional[Mapping[str, Number]] = None,
    ) -> DistributionRecord:
        if not round_id:
            raise ValidationError("round_id is required.")
        try:
            policy = PayoutPolicy(policy)
        except ValueError:
            raise ValidationError(f"Unknown payout policy: {policy!r}") from None

        async with self._single_flight(f"round {round_id}"):
            if await self.store.get_round(round_id) is None:
                raise ValidationError(f"Round {round_id} not found.")
            existing = await self.store.list_distributions(round_id)
            if existing:
                raise DistributionExistsError(round_id, existing[-1].id)

            amounts = calculate_distribution(total_amount, self.percentages)
            pending = await self.pending_winners(round_id)
            undistributed = amounts.undistributed

            errors = validate_wallet_addresses(
                [self.wallets.holding, self.wallets.charity] + [w.wallet_address for w in pending]
            )
            if errors:
                raise ValidationError("; ".join(errors))

            if to_lamports(amounts.winners) > 0:
                if not pending:
                    raise NoPendingWinnersError(round_id, amounts.winners)
                payouts, remainder = plan_winner_payouts(pending, amounts.winners, policy, custom_amounts)
                undistributed += remainder
                by_id = {p.winner_id: p.amount for p in payouts}
                for w in pending:
                    w.prize_amount = by_id[w.id]
                    await self.store.update_winner(w)

            record = DistributionRecord(
                id=new_id(),
                round_id=round_id,
                total_amount=amounts.total,
                winners_amount=amounts.winners,
                holding_amount=amounts.holding,
                charity_amount=amounts.charity,
                undistributed_amount=undistributed,
                executed_by=executed_by,
                executed_at=utcnow(),
                payout_policy=policy,
                status=DistributionStatus.PENDING,
            )
            await self.store.create_distribution(record)
            log.info(
                "Distribution %s for round %s: total=%s winners=%s holding=%s charity=%s",
                record.id,
                round_id,
                record.total_amount,
                record.winners_amount,
                record.holding_amount,
                record.charity_amount,
            )

            failures = await self._submit(record, applicable_categories(record))
            self._finish(record, failures)
            await self.store.update_distribution(record)
            self._log_outcome(record)
            return record

    async def retry(
        self, distribution_id: str, categories: Optional[Iterable[str]] = None
    ) -> DistributionRecord:
        if not distribution_id:
            raise ValidationError("distribution_id is required.")

        async with self._single_flight(f"distribution {distribution_id}"):
            record = await self.store.get_distribution(distribution_id)
            if record is None:
                raise DistributionNotFoundError(distribution_id)

            requested = self._parse_categories(categories) if categories is not None else None
            missing = [c for c in applicable_categories(record) if not record.transaction_ref(c)]
            targets = [c for c in missing if requested is None or c in requested]

            if requested:
                skipped = [c.value for c in requested if c not in missing]
                if skipped:
                    log.info("Not resubmitting already paid categories: %s", ", ".join(skipped))
            if not targets:
                log.info("Distribution %s has nothing to retry (status %s)", record.id, record.status.value)
                return record

            if record.retry_count >= self.max_retries:
                raise RetryLimitExceededError(
                    record.id, record.retry_count, [c.value for c in missing]
                )

            # Counted before submitting, so an attempt that crashes still uses up a retry
            record.status = DistributionStatus.RETRYING
            record.retry_count += 1
            record.last_retry_at = utcnow()
            await self.store.update_distribution(record)
            log.info(
                "Retry %d/%d for distribution %s: %s",
                record.retry_count,
                self.max_retries,
                record.id,
                ", ".join(c.value for c in targets),
            )

            failures = await self._submit(record, targets)
            self._finish(record, failures)
            await self.store.update_distribution(record)
            self._log_outcome(record)
            return record

    @staticmethod
    def _parse_categories(categories: Iterable[str]) -> List[Category]:
        out: List[Category] = []
        for name in categories:
            try:
                out.append(Category(name))
            except ValueError:
                raise ValidationError(f"Unknown payout category: {name!r}") from None
        return out

    async def _submit(self, record: DistributionRecord, targets: List[Category]) -> Dict[Category, str]:
        """Submit each target category in order. Returns failure reasons by category."""
        failures: Dict[Category, str] = {}
        for category in targets:
            try:
                await self._submit_category(record, category, failures)
            except Exception as e:
                # Write back what is known (refs, unconfirmed signatures) before propagating
                failures[category] = f"unexpected error: {e!r}"
                self._finish(record, failures)
                await self.store.update_distribution(record)
                raise
            await self.store.update_distribution(record)
        return failures

    async def _submit_category(
        self, record: DistributionRecord, category: Category, failures: Dict[Category, str]
    ) -> None:
        try:
            signature = await self._pay_category(record, category)
        except ConfirmationTimeoutError as e:
            record.unconfirmed[category.value] = PendingSubmission(e.signature, e.blockhash)
            failures[category] = str(e)
            log.error("%s transfer unconfirmed: %s", category.value, e)
            return
        except LotteryError as e:
            failures[category] = str(e)
            log.error("%s transfer failed: %s", category.value, e)
            return

        if signature is None:
            failures[category] = "earlier submission still in flight"
            return
        record.set_transaction_ref(category, signature)
        record.unconfirmed.pop(category.value, None)
        if category is Category.WINNERS:
            await self._mark_winners_paid(record.round_id, signature)

    async def _pay_category(self, record: DistributionRecord, category: Category) -> Optional[str]:
        """Signature once the category is paid; None while an earlier attempt may still land."""
        pending = record.unconfirmed.get(category.value)
        if pending is not None:
            state = await self.bundler.check_submission(pending)
            if state is SubmissionState.LANDED:
                log.info("Earlier %s transaction %s landed; not resubmitting", category.value, pending.signature)
                return pending.signature
            if state is SubmissionState.IN_FLIGHT:
                log.warning(
                    "Earlier %s transaction %s may still land; skipping resubmission",
                    category.value,
                    pending.signature,
                )
                return None
            log.info("Earlier %s transaction %s %s; resubmitting", category.value, pending.signature, state.value)
            record.unconfirmed.pop(category.value, None)

        transfers = await self._transfers_for(record, category)
        result = await self.bundler.send_bundle(category, transfers)
        return result.signature

    async def _transfers_for(self, record: DistributionRecord, category: Category) -> List[Transfer]:
        if category is Category.HOLDING:
            return [Transfer(self.wallets.holding, to_lamports(record.holding_amount))]
        if category is Category.CHARITY:
            return [Transfer(self.wallets.charity, to_lamports(record.charity_amount))]

        pending = await self.pending_winners(record.round_id)
        if not pending:
            raise NoPendingWinnersError(record.round_id, record.winners_amount)
        return [Transfer(w.wallet_address, to_lamports(w.prize_amount)) for w in pending]

    async def _mark_winners_paid(self, round_id: str, signature: str) -> None:
        paid_at = utcnow()
        for w in await self.pending_winners(round_id):
            w.transaction_ref = signature
            w.paid_at = paid_at
            await self.store.update_winner(w)

    @staticmethod
    def _finish(record: DistributionRecord, failures: Dict[Category, str]) -> None:
        record.status = resolve_status(record)
        record.failed_transactions = [
            c.value for c in applicable_categories(record) if not record.transaction_ref(c)
        ]
        if record.status is DistributionStatus.COMPLETED:
            record.failure_reason = None
        else:
            record.failure_reason = "; ".join(
                f"{c.value}: {reason}" for c, reason in failures.items()
            ) or record.failure_reason

    @staticmethod
    def _log_outcome(record: DistributionRecord) -> None:
        if record.status is DistributionStatus.COMPLETED:
            log.info("Distribution %s completed", record.id)
        else:
            log.warning(
                "Distribution %s %s; failed: %s",
                record.id,
                record.status.value,
                ", ".join(record.failed_transactions),
            )
