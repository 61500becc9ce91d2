from __future__ import annotations

import asyncio
import base64
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import base58
from solders.compute_budget import set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from .distribution import from_lamports
from .errors import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    LedgerError,
    RpcError,
    RpcTransportError,
    TransactionRejectedError,
    ValidationError,
)
from .models import Category, PendingSubmission
from .project_constants import (
    CONFIRM_TIMEOUT_S,
    FEE_RESERVE_LAMPORTS,
    MAX_SEND_RETRIES,
    MIN_PRIORITY_FEE,
)
from .rpc import RpcClient

log = logging.getLogger(__name__)

CONFIRMED = ("confirmed", "finalized")


@dataclass(frozen=True)
class Transfer:
    to: str
    lamports: int


@dataclass(frozen=True)
class BundleResult:
    category: Category
    signature: str
    priority_fee: int
    lamports: int


class SubmissionState(str, Enum):
    LANDED = "landed"
    FAILED = "failed"
    IN_FLIGHT = "in_flight"
    EXPIRED = "expired"


def validate_wallet_addresses(addresses: Sequence[str]) -> List[str]:
    errors: List[str] = []
    for i, addr in enumerate(addresses):
        try:
            Pubkey.from_string(addr)
        except ValueError:
            errors.append(f"Invalid wallet address at index {i}: {addr}")
    return errors


def _is_confirmed(status: Optional[Dict[str, Any]], signature: str) -> bool:
    if not status:
        return False
    if status.get("err"):
        raise TransactionRejectedError(f"on-chain error {status['err']}", signature)
    return status.get("confirmationStatus") in CONFIRMED


class TransactionBundler:
    """
    One atomic transaction per payout category: every transfer in a bundle
    lands together or not at all.
    """

    def __init__(
        self,
        rpc: RpcClient,
        payer: Keypair,
        confirm_timeout_s: float = CONFIRM_TIMEOUT_S,
        poll_interval_s: float = 2.0,
        max_send_retries: int = MAX_SEND_RETRIES,
    ) -> None:
        self.rpc = rpc
        self.payer = payer
        self.confirm_timeout_s = confirm_timeout_s
        self.poll_interval_s = poll_interval_s
        self.max_send_retries = max_send_retries

    @property
    def payer_address(self) -> str:
        return str(self.payer.pubkey())

    def build_instructions(self, transfers: Sequence[Transfer]) -> List[Instruction]:
        if not transfers:
            raise ValidationError("A bundle needs at least one transfer.")
        errors = validate_wallet_addresses([t.to for t in transfers])
        if errors:
            raise ValidationError("; ".join(errors))

        ixs: List[Instruction] = []
        for t in transfers:
            if t.lamports <= 0:
                raise ValidationError(f"Transfer to {t.to} must be positive, got {t.lamports} lamports.")
            ixs.append(
                transfer(
                    TransferParams(
                        from_pubkey=self.payer.pubkey(),
                        to_pubkey=Pubkey.from_string(t.to),
                        lamports=t.lamports,
                    )
                )
            )
        return ixs

    async def estimate_priority_fee(self, instructions: List[Instruction]) -> int:
        """Low-priority fee estimate. Never blocks the payout: falls back to the minimum."""
        message = Message.new_with_blockhash(instructions, self.payer.pubkey(), Hash.default())
        unsigned = Transaction.new_unsigned(message)
        try:
            estimate = await self.rpc.get_priority_fee_estimate(
                base58.b58encode(bytes(unsigned)).decode("ascii")
            )
        except LedgerError as e:
            log.warning("Priority fee estimate failed, using minimal fee: %s", e)
            return MIN_PRIORITY_FEE

        if estimate is None:
            log.info("No priority fee estimate, using minimal fee")
            return MIN_PRIORITY_FEE
        fee = max(MIN_PRIORITY_FEE, math.ceil(estimate))
        log.debug("Priority fee estimate (Low): %d micro-lamports", fee)
        return fee

    async def send_bundle(self, category: Category, transfers: Sequence[Transfer]) -> BundleResult:
        instructions = self.build_instructions(transfers)
        total = sum(t.lamports for t in transfers)
        log.info(
            "Building %s bundle: %d transfer(s), %d lamports", category.value, len(transfers), total
        )

        fee = await self.estimate_priority_fee(instructions)

        latest = await self.rpc.get_latest_blockhash()
        blockhash = latest["blockhash"]
        try:
            recent = Hash.from_string(blockhash)
        except ValueError:
            raise RpcError("getLatestBlockhash", f"invalid blockhash {blockhash!r}") from None
        message = Message.new_with_blockhash(
            [set_compute_unit_price(fee), *instructions],
            self.payer.pubkey(),
            recent,
        )
        tx = Transaction([self.payer], message, recent)
        signature = str(tx.signatures[0])

        try:
            await self._submit_and_confirm(category, tx, signature, blockhash)
        except (TransactionRejectedError, ConfirmationTimeoutError):
            raise
        except Exception as e:
            # Once sent, the outcome is unknown: keep the signature for a later status check
            log.exception("%s transaction %s: unexpected error after submission", category.value, signature)
            raise ConfirmationTimeoutError(signature, blockhash, self.confirm_timeout_s) from e
        return BundleResult(category, signature, fee, total)

    async def _submit_and_confirm(
        self, category: Category, tx: Transaction, signature: str, blockhash: str
    ) -> None:
        try:
            await self.rpc.send_transaction(
                base64.b64encode(bytes(tx)).decode("ascii"), self.max_send_retries
            )
        except RpcError as e:
            raise TransactionRejectedError(str(e.error), signature) from e
        except RpcTransportError as e:
            # The node may have accepted it before the connection dropped
            log.warning("%s submission interrupted (%s); checking status of %s", category.value, e, signature)
            await self._resolve_ambiguous(signature, blockhash)
            return

        log.info("%s transaction sent: %s", category.value, signature)
        await self._await_confirmation(signature, blockhash)
        log.info("%s transaction confirmed: %s", category.value, signature)

    async def check_funds(self, lamports: int, reserve: int = FEE_RESERVE_LAMPORTS) -> int:
        """Payer balance, once it covers `lamports` plus a reserve for fees."""
        balance = await self.rpc.get_balance(self.payer_address)
        available = max(0, balance - reserve)
        if lamports > available:
            raise InsufficientFundsError(
                self.payer_address, from_lamports(available), from_lamports(lamports)
            )
        log.info(
            "Payer %s balance %s SOL covers %s SOL",
            self.payer_address,
            from_lamports(balance),
            from_lamports(lamports),
        )
        return balance

    async def _await_confirmation(self, signature: str, blockhash: str) -> None:
        async def poll() -> None:
            while True:
                try:
                    status = await self.rpc.get_signature_status(signature)
                except LedgerError as e:
                    log.debug("Status poll for %s failed: %s", signature, e)
                    status = None
                if _is_confirmed(status, signature):
                    return
                await asyncio.sleep(self.poll_interval_s)

        try:
            await asyncio.wait_for(poll(), timeout=self.confirm_timeout_s)
        except asyncio.TimeoutError:
            log.warning("Confirmation timed out, checking transaction status: %s", signature)
            await self._resolve_ambiguous(signature, blockhash)

    async def _resolve_ambiguous(self, signature: str, blockhash: str) -> None:
        try:
            status = await self.rpc.get_signature_status(signature, search_history=True)
        except LedgerError as e:
            log.warning("Failed to check transaction status of %s: %s", signature, e)
            status = None
        if _is_confirmed(status, signature):
            log.info("Transaction succeeded despite timeout: %s", signature)
            return
        raise ConfirmationTimeoutError(signature, blockhash, self.confirm_timeout_s)

    async def check_submission(self, pending: PendingSubmission) -> SubmissionState:
        """Where an earlier, unconfirmed submission stands now."""
        status = await self.rpc.get_signature_status(pending.signature, search_history=True)
        if status:
            if status.get("err"):
                return SubmissionState.FAILED
            if status.get("confirmationStatus") in CONFIRMED:
                return SubmissionState.LANDED
            return SubmissionState.IN_FLIGHT
        if await self.rpc.is_blockhash_valid(pending.blockhash):
            return SubmissionState.IN_FLIGHT
        return SubmissionState.EXPIRED
