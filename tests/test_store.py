import asyncio
import json
import random

from conftest import FakeBundler, make_holders, seed_round
from crx7_lottery.coordinator import DistributionCoordinator
from crx7_lottery.models import DistributionStatus, PayoutPolicy, PendingSubmission, RoundStatus, Stage
from crx7_lottery.round_controller import RoundController
from crx7_lottery.store import JsonFileStore, MemoryStore


def test_memory_store_returns_copies():
    async def scenario():
        store = MemoryStore()
        rnd = await seed_round(store, winner_count=1)
        loaded = await store.get_round(rnd.id)
        loaded.current_stage = Stage.IDLE
        assert (await store.get_round(rnd.id)).current_stage is Stage.ROUND_COMPLETE

        winner = (await store.list_winners(rnd.id))[0]
        winner.transaction_ref = "changed"
        assert (await store.list_winners(rnd.id))[0].transaction_ref is None

    asyncio.run(scenario())


def test_json_store_survives_reload(tmp_path, wallets):
    path = str(tmp_path / "lottery.json")

    async def scenario():
        store = JsonFileStore(path)
        controller = RoundController(store, spin_duration_s=0, rng=random.Random(3))
        rnd = await controller.start_round("2.5")
        holders = make_holders(12)
        while controller.stage is not Stage.ROUND_COMPLETE:
            if controller.stage is Stage.DRAW_PREP:
                await controller.prepare_draw(holders)
                await controller.spin(777.7)
                await controller.wait_for_reveal()
            else:
                await controller.advance_stage()
        await controller.complete_round()

        coord = DistributionCoordinator(store, FakeBundler(fail={"charity"}), wallets)
        record = await coord.execute(rnd.id, "2.5", "admin", PayoutPolicy.EQUAL)
        record.unconfirmed["charity"] = PendingSubmission("sig-x", "hash-x")
        await store.update_distribution(record)

        reloaded = JsonFileStore(path)
        assert await reloaded.list_rounds() == await store.list_rounds()
        assert await reloaded.list_winners(rnd.id) == await store.list_winners(rnd.id)
        assert await reloaded.list_participants(rnd.id) == await store.list_participants(rnd.id)
        assert await reloaded.get_distribution(record.id) == await store.get_distribution(record.id)

        again = await reloaded.get_distribution(record.id)
        assert again.status is DistributionStatus.PARTIAL_SUCCESS
        assert again.unconfirmed["charity"].signature == "sig-x"
        assert (await reloaded.get_round(rnd.id)).status is RoundStatus.COMPLETED
        assert await reloaded.next_round_sequence() == 2

    asyncio.run(scenario())

    with open(path, encoding="utf-8") as f:
        doc = json.load(f)
    assert doc["rounds"][0]["status"] == "completed"
    assert len(doc["winners"]) == 7
