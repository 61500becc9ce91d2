from __future__ import annotations

from decimal import Decimal
from typing import List, Optional


class LotteryError(RuntimeError):
    """Base class for every error raised by the lottery core."""


class ValidationError(LotteryError, ValueError):
    """Malformed input. Rejected before anything is applied."""


class RoundAlreadyActiveError(LotteryError):
    def __init__(self, round_id: str) -> None:
        super().__init__(f"Round {round_id} is already active.")
        self.round_id = round_id


class NoActiveRoundError(LotteryError):
    pass


class StageError(LotteryError):
    """Operation is not allowed in the current stage."""


class EmptyCandidatesError(LotteryError):
    def __init__(self) -> None:
        super().__init__("Cannot resolve a winner from an empty candidate list.")


class LedgerError(LotteryError):
    """Transport or RPC failure talking to the ledger."""


class RpcError(LedgerError):
    def __init__(self, method: str, error: object) -> None:
        super().__init__(f"RPC error from {method}: {error}")
        self.method = method
        self.error = error


class RpcTransportError(LedgerError):
    """The request may or may not have reached the node."""

    def __init__(self, method: str, cause: Exception) -> None:
        super().__init__(f"{method} failed in transport: {cause}")
        self.method = method


class TransactionRejectedError(LedgerError):
    def __init__(self, reason: str, signature: Optional[str] = None) -> None:
        super().__init__(f"Transaction rejected: {reason}")
        self.reason = reason
        self.signature = signature


class ConfirmationTimeoutError(LedgerError):
    """Confirmation did not arrive in time and the status check was inconclusive."""

    def __init__(self, signature: str, blockhash: str, timeout_s: float) -> None:
        super().__init__(
            f"Transaction {signature} not confirmed within {timeout_s:.0f}s; status unknown."
        )
        self.signature = signature
        self.blockhash = blockhash
        self.timeout_s = timeout_s


class InsufficientFundsError(LotteryError):
    def __init__(self, payer: str, available: Decimal, requested: Decimal) -> None:
        super().__init__(
            f"Insufficient balance in {payer}. Available: {available} SOL, requested: {requested} SOL."
        )
        self.payer = payer
        self.available = available
        self.requested = requested


class DistributionNotFoundError(LotteryError):
    def __init__(self, distribution_id: str) -> None:
        super().__init__(f"Distribution {distribution_id} not found.")
        self.distribution_id = distribution_id


class DistributionExistsError(LotteryError):
    def __init__(self, round_id: str, distribution_id: str) -> None:
        super().__init__(
            f"Round {round_id} already has distribution {distribution_id}; retry it instead."
        )
        self.round_id = round_id
        self.distribution_id = distribution_id


class NoPendingWinnersError(LotteryError):
    def __init__(self, round_id: str, winners_amount: Decimal) -> None:
        super().__init__(
            f"No pending winners for round {round_id} (winners allocation {winners_amount} SOL)."
        )
        self.round_id = round_id
        self.winners_amount = winners_amount


class RetryLimitExceededError(LotteryError):
    def __init__(
        self, distribution_id: str, retry_count: int, failed_categories: List[str]
    ) -> None:
        super().__init__(
            f"Distribution {distribution_id} reached {retry_count} retries; "
            f"still failing: {', '.join(failed_categories) or 'none'}. Manual action required."
        )
        self.distribution_id = distribution_id
        self.retry_count = retry_count
        self.failed_categories = failed_categories


class RetryInProgressError(LotteryError):
    def __init__(self, key: str) -> None:
        super().__init__(f"A payout for {key} is already running.")
        self.key = key
