from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Dict, List, Optional

from .audit import build_round_audit, write_audit
from .bundler import TransactionBundler
from .config import Settings
from .coordinator import DistributionCoordinator
from .distribution import calculate_distribution, to_decimal, to_lamports
from .identities import format_wallet_address
from .models import DistributionRecord, Holder, PayoutPolicy, RoundStatus, Stage
from .project_constants import EXCLUDED_WALLETS_FILE, MIN_RAW_BALANCE, SPIN_DURATION_S, TOKEN_DECIMALS
from .round_controller import RoundController
from .rpc import RpcClient
from .store import JsonFileStore
from .token_accounts import fetch_eligible_holders, load_excluded_wallets
from .verify import verify_audit
from .wheel import random_rotation


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def to_tokens(raw_amount: int) -> float:
    return round(raw_amount / (10**TOKEN_DECIMALS), 1)


def _rpc(settings: Settings, args: argparse.Namespace) -> RpcClient:
    return RpcClient(
        settings.rpc_url, timeout_s=args.timeout, fee_estimator_url=settings.fee_estimator_url
    )


async def _eligible(settings: Settings, args: argparse.Namespace) -> List[Holder]:
    excluded = load_excluded_wallets(args.excluded_file)
    async with _rpc(settings, args) as rpc:
        return await fetch_eligible_holders(rpc, settings.token_mint, excluded, MIN_RAW_BALANCE)


def cmd_holders(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    holders = asyncio.run(_eligible(settings, args))
    print(f"Mint             : {settings.token_mint}")
    print(f"Eligible holders : {len(holders)}")
    for h in sorted(holders, key=lambda h: h.balance, reverse=True)[: args.top]:
        print(f"  {h.address}  {to_tokens(h.balance)}")
    return 0


async def _run_round(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    log = logging.getLogger("round")
    store = JsonFileStore(settings.data_file)
    controller = RoundController(store, spin_duration_s=args.spin_seconds)

    holders = await _eligible(settings, args)
    if not holders:
        raise SystemExit("No eligible holders. Check mint / exclusions / min balance.")

    if args.recover:
        await controller.recover_active_round(args.recover, args.draw)
    else:
        await controller.start_round(to_decimal(args.prize_pool, "prize pool"))

    while controller.stage is not Stage.ROUND_COMPLETE:
        stage = controller.stage
        if stage is Stage.DRAW_PREP:
            selection = await controller.prepare_draw(holders)
            if not selection.candidates:
                await controller.cancel_round("no candidates left")
                raise SystemExit("Ran out of eligible holders; round cancelled.")
            await controller.spin(random_rotation())
            await controller.wait_for_reveal()
            continue
        await controller.advance_stage()

    snapshot = controller.snapshot()
    log.info("Round complete: %d winners", snapshot.completed)

    audit = build_round_audit(
        controller.round, controller.draw_records, controller.winners, settings.token_mint, len(holders)
    )
    write_audit(audit, args.out)

    print("========================================")
    print(f"CRX7 ROUND #{snapshot.sequence_number}")
    print("========================================")
    print(f"Round id      : {snapshot.round_id}")
    print(f"Prize pool    : {controller.round.total_prize_pool} SOL")
    print("----------------------------------------")
    for w in snapshot.winners:
        print(f"#{w.sequence_number} {w.identity.display():<12} {w.wallet_address}")
    print("----------------------------------------")
    print(f"Wrote audit: {args.out}")
    print(f"Next: crx7-lottery distribute --round-id {snapshot.round_id} --policy equal")
    return 0


def cmd_run_round(args: argparse.Namespace) -> int:
    return asyncio.run(_run_round(args))


def _load_custom_amounts(path: Optional[str]) -> Optional[Dict[str, str]]:
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return {str(k): str(v) for k, v in data.items()}


def _print_record(record: DistributionRecord) -> None:
    print(f"Distribution  : {record.id}")
    print(f"Round         : {record.round_id}")
    print(f"Status        : {record.status.value}")
    print(f"Total         : {record.total_amount} SOL")
    print(f"Winners       : {record.winners_amount} SOL  tx={record.winners_transaction_ref}")
    print(f"Holding       : {record.holding_amount} SOL  tx={record.holding_transaction_ref}")
    print(f"Charity       : {record.charity_amount} SOL  tx={record.charity_transaction_ref}")
    print(f"Undistributed : {record.undistributed_amount} SOL")
    print(f"Retries       : {record.retry_count}")
    if record.failed_transactions:
        print(f"Failed        : {', '.join(record.failed_transactions)}")
        print(f"Reason        : {record.failure_reason}")


def _payout_policy(args: argparse.Namespace) -> PayoutPolicy:
    policy = PayoutPolicy(args.policy)
    if args.custom_amounts and policy is not PayoutPolicy.CUSTOM:
        raise SystemExit("--custom-amounts requires --policy custom.")
    if policy is PayoutPolicy.CUSTOM and not args.custom_amounts:
        raise SystemExit("--policy custom requires --custom-amounts.")
    return policy


async def _distribute(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    store = JsonFileStore(settings.data_file)
    controller = RoundController(store)
    rnd = await controller.load_round(args.round_id)
    if rnd.status is RoundStatus.ACTIVE and rnd.current_stage not in (
        Stage.ROUND_COMPLETE,
        Stage.DISTRIBUTION,
    ):
        raise SystemExit(f"Round {rnd.id} is still at {rnd.current_stage.value}; finish its draws first.")

    policy = _payout_policy(args)
    total = to_decimal(args.amount, "amount") if args.amount else rnd.total_prize_pool
    amounts = calculate_distribution(total, settings.percentages)
    print(settings.percentages.describe())
    print(f"Winners : {amounts.winners} SOL")
    print(f"Holding : {amounts.holding} SOL -> {format_wallet_address(settings.wallets.holding)}")
    print(f"Charity : {amounts.charity} SOL -> {format_wallet_address(settings.wallets.charity)}")
    if not args.yes:
        print("Dry run. Re-run with --yes to send the transactions.")
        return 0

    async with _rpc(settings, args) as rpc:
        bundler = TransactionBundler(rpc, settings.admin_keypair(), confirm_timeout_s=args.timeout)
        await bundler.check_funds(to_lamports(amounts.total))
        coordinator = DistributionCoordinator(store, bundler, settings.wallets, settings.percentages)
        record = await coordinator.execute(
            rnd.id,
            total,
            bundler.payer_address,
            policy=policy,
            custom_amounts=_load_custom_amounts(args.custom_amounts),
        )

    if rnd.status is RoundStatus.ACTIVE:
        await controller.complete_round()
    _print_record(record)
    return 0 if not record.failed_transactions else 1


def cmd_distribute(args: argparse.Namespace) -> int:
    return asyncio.run(_distribute(args))


async def _retry(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    store = JsonFileStore(settings.data_file)
    async with _rpc(settings, args) as rpc:
        bundler = TransactionBundler(rpc, settings.admin_keypair(), confirm_timeout_s=args.timeout)
        coordinator = DistributionCoordinator(store, bundler, settings.wallets, settings.percentages)
        record = await coordinator.retry(args.distribution_id, args.category or None)
    _print_record(record)
    return 0 if not record.failed_transactions else 1


def cmd_retry(args: argparse.Namespace) -> int:
    return asyncio.run(_retry(args))


async def _history(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    store = JsonFileStore(settings.data_file)
    for rnd in await store.list_rounds():
        if args.round_id and rnd.id != args.round_id:
            continue
        print(
            f"Round #{rnd.sequence_number} {rnd.id} {rnd.status.value} "
            f"stage={rnd.current_stage.value} pool={rnd.total_prize_pool}"
        )
        for w in await store.list_winners(rnd.id):
            state = "paid" if w.is_paid else "pending"
            print(f"  #{w.sequence_number} {w.wallet_address} {w.prize_amount} SOL {state}")
        for record in await store.list_distributions(rnd.id):
            print(
                f"  distribution {record.id} {record.status.value} "
                f"retries={record.retry_count} failed={','.join(record.failed_transactions) or '-'}"
            )
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    return asyncio.run(_history(args))


def cmd_verify(args: argparse.Namespace) -> int:
    result = verify_audit(args.audit)
    print("✅ AUDIT VERIFIED")
    print(f"Round         : {result['round_id']}")
    print(f"Draws replayed: {result['draws_verified']}")
    for i, w in enumerate(result["winners"], start=1):
        print(f"  #{i} {w}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="crx7-lottery",
        description="Seven-draw Solana token-holder lottery with on-chain payouts.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--rpc-url", default=None, help="Override RPC URL (else use env).")
    p.add_argument("--timeout", type=float, default=60.0, help="RPC/confirmation timeout seconds.")
    p.add_argument(
        "--excluded-file",
        default=EXCLUDED_WALLETS_FILE,
        help="Public list of wallets that never take part.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    h = sub.add_parser("holders", help="List eligible holders.")
    h.add_argument("--top", type=int, default=10, help="How many of the largest to print.")
    h.set_defaults(func=cmd_holders)

    r = sub.add_parser("run-round", help="Run all draws of a round and write an audit JSON.")
    r.add_argument("--prize-pool", default="0", help="Prize pool in SOL.")
    r.add_argument("--spin-seconds", type=float, default=SPIN_DURATION_S, help="Spin animation length.")
    r.add_argument("--recover", default=None, metavar="ROUND_ID", help="Resume an active round.")
    r.add_argument("--draw", type=int, default=1, help="Draw to resume from with --recover.")
    r.add_argument("--out", default="audit.json", help="Audit output JSON path.")
    r.set_defaults(func=cmd_run_round)

    d = sub.add_parser("distribute", help="Pay out a completed round.")
    d.add_argument("--round-id", required=True)
    d.add_argument("--amount", default=None, help="Total SOL to distribute (default: prize pool).")
    d.add_argument(
        "--policy",
        required=True,
        choices=[p.value for p in PayoutPolicy],
        help="How the winners share is split: equal, or custom amounts per winner.",
    )
    d.add_argument(
        "--custom-amounts",
        default=None,
        help="JSON file mapping winner address to SOL amount (with --policy custom).",
    )
    d.add_argument("--yes", action="store_true", help="Send the transactions.")
    d.set_defaults(func=cmd_distribute)

    t = sub.add_parser("retry", help="Retry the failed categories of a distribution.")
    t.add_argument("--distribution-id", required=True)
    t.add_argument(
        "--category",
        action="append",
        choices=["winners", "holding", "charity"],
        help="Limit the retry to a category (repeatable).",
    )
    t.set_defaults(func=cmd_retry)

    s = sub.add_parser("history", help="Show rounds, winners and distributions.")
    s.add_argument("--round-id", default=None)
    s.set_defaults(func=cmd_history)

    v = sub.add_parser("verify", help="Verify an existing audit.json deterministically.")
    v.add_argument("--audit", required=True, help="Path to audit.json.")
    v.set_defaults(func=cmd_verify)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    raise SystemExit(args.func(args))
