import asyncio
import base64
import json

import httpx
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction

from conftest import new_address, seed_round
from crx7_lottery.bundler import (
    SubmissionState,
    TransactionBundler,
    Transfer,
    validate_wallet_addresses,
)
from crx7_lottery.coordinator import DistributionCoordinator
from crx7_lottery.errors import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    RpcError,
    RpcTransportError,
    TransactionRejectedError,
    ValidationError,
)
from crx7_lottery.models import Category, DistributionStatus, PayoutPolicy, PendingSubmission
from crx7_lottery.project_constants import FEE_RESERVE_LAMPORTS, LAMPORTS_PER_SOL, MIN_PRIORITY_FEE
from crx7_lottery.rpc import RpcClient


class FakeNode:
    """JSON-RPC node answering from per-method handlers."""

    def __init__(self):
        self.blockhash = str(Hash.new_unique())
        self.sent = []
        self.requests = []
        self.status = {"confirmationStatus": "confirmed", "err": None}
        self.history_status = None
        self.fee_estimate = 1234.2
        self.blockhash_valid = False
        self.send_error = None
        self.send_exception = None
        self.fee_error = None
        self.status_html = False
        self.balance = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        self.requests.append(method)
        if method == "getPriorityFeeEstimate":
            if self.fee_error:
                return self._error(body, self.fee_error)
            return self._ok(body, {"priorityFeeEstimate": self.fee_estimate})
        if method == "getLatestBlockhash":
            return self._ok(body, {"value": {"blockhash": self.blockhash, "lastValidBlockHeight": 100}})
        if method == "sendTransaction":
            if self.send_exception:
                raise self.send_exception(request)
            if self.send_error:
                return self._error(body, self.send_error)
            self.sent.append(Transaction.from_bytes(base64.b64decode(params[0])))
            return self._ok(body, str(self.sent[-1].signatures[0]))
        if method == "getSignatureStatuses":
            history = params[1]["searchTransactionHistory"]
            if self.status_html and not history:
                return httpx.Response(200, text="<html>502 Bad Gateway</html>")
            status = self.history_status if history else self.status
            return self._ok(body, {"value": [status]})
        if method == "isBlockhashValid":
            return self._ok(body, {"value": self.blockhash_valid})
        if method == "getBalance":
            return self._ok(body, {"context": {"slot": 1}, "value": self.balance})
        return httpx.Response(404)

    @staticmethod
    def _ok(body, result):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    @staticmethod
    def _error(body, error):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": error})


def make_bundler(node, estimator=True, **kwargs):
    rpc = RpcClient(
        "http://rpc.test",
        fee_estimator_url="http://fees.test" if estimator else None,
        transport=httpx.MockTransport(node),
    )
    kwargs.setdefault("confirm_timeout_s", 0.2)
    kwargs.setdefault("poll_interval_s", 0.01)
    return TransactionBundler(rpc, Keypair(), **kwargs)


def test_bundle_sent_as_one_transaction():
    node = FakeNode()
    bundler = make_bundler(node)
    transfers = [Transfer(new_address(), 1_000 + i) for i in range(7)]

    result = asyncio.run(bundler.send_bundle(Category.WINNERS, transfers))

    assert len(node.sent) == 1
    tx = node.sent[0]
    # compute unit price plus one transfer per recipient
    assert len(tx.message.instructions) == 8
    assert str(tx.message.recent_blockhash) == node.blockhash
    assert str(tx.message.account_keys[0]) == bundler.payer_address
    assert result.signature == str(tx.signatures[0])
    assert result.lamports == sum(t.lamports for t in transfers)
    assert result.priority_fee == 1235
    assert result.category is Category.WINNERS


def test_priority_fee_falls_back_to_minimum():
    node = FakeNode()
    bundler = make_bundler(node, estimator=False)
    result = asyncio.run(bundler.send_bundle(Category.HOLDING, [Transfer(new_address(), 5)]))
    assert result.priority_fee == MIN_PRIORITY_FEE
    assert "getPriorityFeeEstimate" not in node.requests

    node = FakeNode()
    node.fee_error = {"code": -32600, "message": "estimator down"}
    bundler = make_bundler(node)
    result = asyncio.run(bundler.send_bundle(Category.HOLDING, [Transfer(new_address(), 5)]))
    assert result.priority_fee == MIN_PRIORITY_FEE
    assert len(node.sent) == 1


def test_timeout_resolved_by_history_search():
    node = FakeNode()
    node.status = None
    node.history_status = {"confirmationStatus": "finalized", "err": None}
    bundler = make_bundler(node, confirm_timeout_s=0.05)
    result = asyncio.run(bundler.send_bundle(Category.CHARITY, [Transfer(new_address(), 5)]))
    assert result.signature == str(node.sent[0].signatures[0])


def test_unresolved_timeout_keeps_signature():
    node = FakeNode()
    node.status = None
    bundler = make_bundler(node, confirm_timeout_s=0.05)
    with pytest.raises(ConfirmationTimeoutError) as exc:
        asyncio.run(bundler.send_bundle(Category.CHARITY, [Transfer(new_address(), 5)]))
    assert exc.value.signature == str(node.sent[0].signatures[0])
    assert exc.value.blockhash == node.blockhash


def test_rejected_submission():
    node = FakeNode()
    node.send_error = {"code": -32002, "message": "insufficient funds for fee"}
    bundler = make_bundler(node)
    with pytest.raises(TransactionRejectedError) as exc:
        asyncio.run(bundler.send_bundle(Category.HOLDING, [Transfer(new_address(), 5)]))
    assert "insufficient funds" in str(exc.value)
    assert exc.value.signature


def test_on_chain_error_is_a_rejection():
    node = FakeNode()
    node.status = {"confirmationStatus": "confirmed", "err": {"InstructionError": [1, "Custom"]}}
    bundler = make_bundler(node)
    with pytest.raises(TransactionRejectedError):
        asyncio.run(bundler.send_bundle(Category.WINNERS, [Transfer(new_address(), 5)]))


def test_dropped_connection_checks_status():
    node = FakeNode()
    node.send_exception = lambda request: httpx.ReadTimeout("timed out", request=request)
    node.history_status = {"confirmationStatus": "confirmed", "err": None}
    bundler = make_bundler(node)

    async def scenario():
        result = await bundler.send_bundle(Category.WINNERS, [Transfer(new_address(), 5)])
        assert result.signature

        node.history_status = None
        with pytest.raises(ConfirmationTimeoutError):
            await bundler.send_bundle(Category.WINNERS, [Transfer(new_address(), 5)])

    asyncio.run(scenario())


def test_invalid_transfers_rejected():
    bundler = make_bundler(FakeNode())
    with pytest.raises(ValidationError):
        bundler.build_instructions([])
    with pytest.raises(ValidationError):
        bundler.build_instructions([Transfer("not-a-wallet", 5)])
    with pytest.raises(ValidationError):
        bundler.build_instructions([Transfer(new_address(), 0)])


def test_validate_wallet_addresses_reports_each_bad_entry():
    good = new_address()
    errors = validate_wallet_addresses([good, "xyz", good, "0OIl"])
    assert len(errors) == 2
    assert "index 1" in errors[0]
    assert "index 3" in errors[1]


def test_check_submission_states():
    node = FakeNode()
    bundler = make_bundler(node)
    pending = PendingSubmission("sig", node.blockhash)

    async def scenario():
        node.history_status = {"confirmationStatus": "finalized", "err": None}
        assert await bundler.check_submission(pending) is SubmissionState.LANDED

        node.history_status = {"confirmationStatus": "processed", "err": None}
        assert await bundler.check_submission(pending) is SubmissionState.IN_FLIGHT

        node.history_status = {"confirmationStatus": "confirmed", "err": {"InsufficientFundsForRent": {}}}
        assert await bundler.check_submission(pending) is SubmissionState.FAILED

        node.history_status = None
        node.blockhash_valid = True
        assert await bundler.check_submission(pending) is SubmissionState.IN_FLIGHT

        node.blockhash_valid = False
        assert await bundler.check_submission(pending) is SubmissionState.EXPIRED

    asyncio.run(scenario())


def test_non_json_status_reply_keeps_signature():
    node = FakeNode()
    node.status_html = True
    bundler = make_bundler(node, confirm_timeout_s=0.05)
    with pytest.raises(ConfirmationTimeoutError) as exc:
        asyncio.run(bundler.send_bundle(Category.WINNERS, [Transfer(new_address(), 5)]))
    assert exc.value.signature == str(node.sent[0].signatures[0])
    assert len(node.sent) == 1


def test_rpc_client_rejects_malformed_replies():
    replies = iter(
        [
            httpx.Response(200, text="<html>overloaded</html>"),
            httpx.Response(200, json=["not", "an", "object"]),
            httpx.Response(200, json={"jsonrpc": "2.0", "id": 3, "result": None}),
            httpx.Response(200, json={"jsonrpc": "2.0", "id": 4, "result": {"value": ["oops"]}}),
        ]
    )
    rpc = RpcClient("http://rpc.test", transport=httpx.MockTransport(lambda request: next(replies)))

    async def scenario():
        with pytest.raises(RpcTransportError):
            await rpc.get_signature_status("sig")
        with pytest.raises(RpcError):
            await rpc.get_signature_status("sig")
        with pytest.raises(RpcError):
            await rpc.get_latest_blockhash()
        with pytest.raises(RpcError):
            await rpc.get_signature_status("sig")
        await rpc.close()

    asyncio.run(scenario())


def test_winners_not_resent_after_garbled_status(store, wallets):
    node = FakeNode()
    node.status_html = True
    bundler = make_bundler(node, confirm_timeout_s=0.05)

    async def scenario():
        rnd = await seed_round(store)
        coord = DistributionCoordinator(store, bundler, wallets)
        record = await coord.execute(rnd.id, 100, "admin", PayoutPolicy.EQUAL)
        winners_sig = str(node.sent[0].signatures[0])

        assert record.status is not DistributionStatus.PENDING
        assert record.winners_transaction_ref is None
        assert record.unconfirmed["winners"].signature == winners_sig
        stored = await store.get_distribution(record.id)
        assert stored.unconfirmed["winners"].signature == winners_sig
        assert stored.failed_transactions == ["winners", "holding", "charity"]

        sent_before = len(node.sent)
        node.status_html = False
        node.history_status = {"confirmationStatus": "finalized", "err": None}
        record = await coord.retry(record.id)

        assert record.status is DistributionStatus.COMPLETED
        assert record.winners_transaction_ref == winners_sig
        # Every earlier submission is found in history, so nothing is sent again
        assert len(node.sent) == sent_before
        for w in await store.list_winners(rnd.id):
            assert w.transaction_ref == winners_sig

    asyncio.run(scenario())


def test_check_funds_keeps_fee_reserve():
    node = FakeNode()
    bundler = make_bundler(node)
    amount = 2 * LAMPORTS_PER_SOL

    async def scenario():
        node.balance = amount + FEE_RESERVE_LAMPORTS
        assert await bundler.check_funds(amount) == node.balance

        node.balance = amount + FEE_RESERVE_LAMPORTS - 1
        with pytest.raises(InsufficientFundsError) as exc:
            await bundler.check_funds(amount)
        assert exc.value.payer == bundler.payer_address
        assert exc.value.requested == 2

        node.balance = FEE_RESERVE_LAMPORTS // 2
        with pytest.raises(InsufficientFundsError) as exc:
            await bundler.check_funds(1)
        assert exc.value.available == 0

    asyncio.run(scenario())


def test_unexpected_error_after_send_keeps_signature():
    node = FakeNode()
    bundler = make_bundler(node)

    async def broken_status(signature, search_history=False):
        raise KeyError("value")

    bundler.rpc.get_signature_status = broken_status
    with pytest.raises(ConfirmationTimeoutError) as exc:
        asyncio.run(bundler.send_bundle(Category.HOLDING, [Transfer(new_address(), 5)]))
    assert exc.value.signature == str(node.sent[0].signatures[0])
    assert isinstance(exc.value.__cause__, KeyError)
