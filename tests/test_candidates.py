import random

import pytest

from conftest import make_holders
from crx7_lottery.candidates import select_candidates
from crx7_lottery.errors import ValidationError
from crx7_lottery.identities import IDENTITY_CATALOG, format_wallet_address, identity_for_address
from crx7_lottery.models import Holder


def test_short_pool_returns_everyone():
    holders = make_holders(3)
    selection = select_candidates(holders, [], 7, random.Random(1))
    assert len(selection.candidates) == 3
    assert selection.shortfall
    assert {c.address for c in selection.candidates} == {h.address for h in holders}


def test_prior_winners_excluded():
    holders = make_holders(10)
    winners = [h.address for h in holders[:4]]
    for seed in range(20):
        selection = select_candidates(holders, winners, 7, random.Random(seed))
        assert len(selection.candidates) == 6
        assert not set(winners) & {c.address for c in selection.candidates}
        assert selection.available == 6


def test_full_pool_samples_requested_count():
    holders = make_holders(50)
    selection = select_candidates(holders, [], 7, random.Random(3))
    assert len(selection.candidates) == 7
    assert not selection.shortfall
    assert len({c.address for c in selection.candidates}) == 7


def test_seeded_selection_is_reproducible():
    holders = make_holders(30)
    a = select_candidates(holders, [], 7, random.Random(99))
    b = select_candidates(holders, [], 7, random.Random(99))
    assert a.candidates == b.candidates


def test_duplicate_holders_counted_once():
    holders = [Holder("A", 1), Holder("A", 1), Holder("B", 2)]
    selection = select_candidates(holders, [], 7, random.Random(0))
    assert sorted(c.address for c in selection.candidates) == ["A", "B"]


def test_identity_matches_standalone_lookup():
    holders = make_holders(12)
    selection = select_candidates(holders, [], 7, random.Random(5))
    for c in selection.candidates:
        assert c.identity == identity_for_address(c.address)
        assert c.identity in IDENTITY_CATALOG


def test_count_must_be_positive():
    with pytest.raises(ValidationError):
        select_candidates(make_holders(3), [], 0)


def test_format_wallet_address():
    assert format_wallet_address("EgFrJidrBi89nXA8qbBnZ1PMWUPRunX8bA7CWJFhbdEt") == "EgFr...bdEt"
    assert format_wallet_address("") == ""
    assert format_wallet_address("short") == "short"
