from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ValidationError
from .models import PayoutPolicy, Winner
from .project_constants import (
    CHARITY_PERCENTAGE,
    HOLDING_PERCENTAGE,
    LAMPORTS_PER_SOL,
    SOL_DECIMALS,
    WINNERS_PERCENTAGE,
)

Number = Union[int, str, Decimal]

LAMPORT = Decimal(1).scaleb(-SOL_DECIMALS)  # 0.000000001 SOL
HUNDRED = Decimal(100)


def to_decimal(value: Number, what: str = "amount") -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        d = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {what}: {value!r}") from None
    if not d.is_finite():
        raise ValidationError(f"Invalid {what}: {value!r}")
    return d


def floor_sol(amount: Decimal) -> Decimal:
    return amount.quantize(LAMPORT, rounding=ROUND_DOWN)


def to_lamports(amount: Decimal) -> int:
    return int((amount * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))


def from_lamports(lamports: int) -> Decimal:
    return Decimal(lamports) * LAMPORT


@dataclass(frozen=True)
class DistributionPercentages:
    winners: Decimal = Decimal(WINNERS_PERCENTAGE)
    holding: Decimal = Decimal(HOLDING_PERCENTAGE)
    charity: Decimal = Decimal(CHARITY_PERCENTAGE)

    def __post_init__(self) -> None:
        for name in ("winners", "holding", "charity"):
            value = to_decimal(getattr(self, name), f"{name} percentage")
            if value < 0 or value > HUNDRED:
                raise ValidationError(f"{name} percentage must be within 0-100, got {value}.")
            object.__setattr__(self, name, value)
        total = self.winners + self.holding + self.charity
        if total != HUNDRED:
            raise ValidationError(
                f"Distribution percentages must sum to 100, got {total} "
                f"({self.winners}/{self.holding}/{self.charity})."
            )

    def describe(self) -> str:
        return (
            f"{self.winners}% to winners • {self.holding}% to future rounds • "
            f"{self.charity}% to charity"
        )


@dataclass(frozen=True)
class DistributionAmounts:
    total: Decimal
    winners: Decimal
    holding: Decimal
    charity: Decimal

    @property
    def undistributed(self) -> Decimal:
        return self.total - self.winners - self.holding - self.charity


def calculate_distribution(
    total: Number, percentages: Optional[DistributionPercentages] = None
) -> DistributionAmounts:
    """Split `total` SOL by percentage, each share rounded down to one lamport."""
    pct = percentages or DistributionPercentages()
    total_d = floor_sol(to_decimal(total, "total amount"))
    if total_d < 0:
        raise ValidationError(f"Total amount must not be negative, got {total_d}.")

    return DistributionAmounts(
        total=total_d,
        winners=floor_sol(total_d * pct.winners / HUNDRED),
        holding=floor_sol(total_d * pct.holding / HUNDRED),
        charity=floor_sol(total_d * pct.charity / HUNDRED),
    )


def per_winner_amount(winners_amount: Decimal, winner_count: int) -> Decimal:
    # Infinity for zero winners; callers must check before paying
    if winner_count == 0:
        return Decimal("Infinity")
    return floor_sol(winners_amount / winner_count)


@dataclass(frozen=True)
class WinnerPayout:
    winner_id: str
    wallet_address: str
    amount: Decimal


def plan_winner_payouts(
    winners: Sequence[Winner],
    winners_amount: Decimal,
    policy: PayoutPolicy,
    custom_amounts: Optional[Mapping[str, Number]] = None,
) -> Tuple[List[WinnerPayout], Decimal]:
    """
    Per-winner amounts and the remainder left unpaid by rounding.

    EQUAL splits the allocation evenly. CUSTOM takes one amount per winner
    address from `custom_amounts`, which must not exceed the allocation.
    """
    if not winners:
        raise ValidationError("No winners to plan payouts for.")

    if policy is PayoutPolicy.EQUAL:
        if custom_amounts:
            raise ValidationError("Custom amounts given with the equal payout policy.")
        share = per_winner_amount(winners_amount, len(winners))
        if to_lamports(share) < 1:
            raise ValidationError(
                f"Winners allocation {winners_amount} SOL is less than one lamport "
                f"for each of {len(winners)} winners."
            )
        payouts = [WinnerPayout(w.id, w.wallet_address, share) for w in winners]
    elif policy is PayoutPolicy.CUSTOM:
        if not custom_amounts:
            raise ValidationError("The custom payout policy requires per-winner amounts.")
        amounts: Dict[str, Decimal] = {
            addr: floor_sol(to_decimal(v, f"amount for {addr}")) for addr, v in custom_amounts.items()
        }
        missing = [w.wallet_address for w in winners if w.wallet_address not in amounts]
        if missing:
            raise ValidationError(f"Missing custom amounts for: {', '.join(missing)}")
        payouts = [WinnerPayout(w.id, w.wallet_address, amounts[w.wallet_address]) for w in winners]
        if any(p.amount <= 0 for p in payouts):
            raise ValidationError("Custom payout amounts must be positive.")
    else:
        raise ValidationError(f"Unknown payout policy: {policy!r}")

    paid = sum((p.amount for p in payouts), Decimal(0))
    if paid > winners_amount:
        raise ValidationError(
            f"Winner payouts {paid} exceed the winners allocation {winners_amount}."
        )
    return payouts, winners_amount - paid
