import asyncio
import base64
import json
import struct

import httpx
from solders.pubkey import Pubkey

from crx7_lottery.rpc import RpcClient
from crx7_lottery.token_accounts import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    aggregate_holders_from_b64,
    apply_exclusions_and_min,
    fetch_eligible_holders,
    load_excluded_wallets,
    parse_owner_and_amount,
)

MINT = Pubkey.new_unique()


def account_b64(owner: Pubkey, amount: int, extra: bytes = b"") -> str:
    data = bytes(MINT) + bytes(owner) + struct.pack("<Q", amount) + bytes(93) + extra
    return base64.b64encode(data).decode("ascii")


def test_parse_owner_and_amount():
    owner = Pubkey.new_unique()
    raw = base64.b64decode(account_b64(owner, 42))
    assert parse_owner_and_amount(raw) == (str(owner), 42)
    assert parse_owner_and_amount(raw[:71]) is None


def test_balances_summed_per_owner():
    a, b = Pubkey.new_unique(), Pubkey.new_unique()
    items = [account_b64(a, 10), account_b64(a, 5), account_b64(b, 0), "!!not base64!!"]
    assert aggregate_holders_from_b64(items) == {str(a): 15}


def test_exclusions_and_minimum():
    balances = {"C": 500, "A": 100, "B": 99, "X": 1000}
    holders = apply_exclusions_and_min(balances, {"X"}, 100)
    assert [h.address for h in holders] == ["A", "C"]
    assert holders[1].balance == 500


def test_load_excluded_wallets(tmp_path):
    path = tmp_path / "excluded.txt"
    path.write_text("# team wallets\nAAA\n\n  BBB  \n", encoding="utf-8")
    assert load_excluded_wallets(str(path)) == {"AAA", "BBB"}
    assert load_excluded_wallets(None) == set()


def test_fetch_scans_both_token_programs():
    alice, bob, pool = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    accounts = {
        TOKEN_PROGRAM_ID: [account_b64(alice, 3_000_000), account_b64(pool, 9_000_000)],
        TOKEN_2022_PROGRAM_ID: [account_b64(alice, 1_000_000, b"ext"), account_b64(bob, 10)],
    }
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        program, opts = body["params"]
        seen.append((program, opts["filters"]))
        result = [{"account": {"data": [d, "base64"]}} for d in accounts[program]]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    async def scenario():
        async with RpcClient("http://rpc.test", transport=httpx.MockTransport(handler)) as rpc:
            return await fetch_eligible_holders(rpc, str(MINT), {str(pool)}, 1_000_000)

    holders = asyncio.run(scenario())
    assert [(h.address, h.balance) for h in holders] == [(str(alice), 4_000_000)]
    assert seen[0][1] == [{"memcmp": {"offset": 0, "bytes": str(MINT)}}, {"dataSize": 165}]
    assert seen[1][1] == [{"memcmp": {"offset": 0, "bytes": str(MINT)}}]
