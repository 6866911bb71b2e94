import threading

import pytest

from conftest import FARMER, T0
from errors import NotFound
from ledger import parse_batch_id
from locks import KeyedLocks
from schemas import InitiateHandoff


def handoff_body(batch_id):
    return InitiateHandoff(batchAsaId=str(batch_id), fromAddr=FARMER, toAddr="CARRIER")


def test_parse_batch_id():
    assert parse_batch_id("12") == 12
    assert parse_batch_id(" 7 ") == 7
    assert parse_batch_id(3) == 3
    assert parse_batch_id("0") is None
    assert parse_batch_id("-4") is None
    assert parse_batch_id("abc") is None
    assert parse_batch_id("") is None


def test_created_batch_mirrors_input(db, services, new_batch):
    batch = new_batch(practices="Organic drip irrigation")
    details = services.ledger.batch_details(db, batch.id)
    assert details.cropType == "Tomato"
    assert details.weight == 120.5
    assert details.farmGps == "13.7563|100.5018"
    assert details.farmingPractices == "Organic drip irrigation"
    assert details.farmerAddr == FARMER
    assert details.checkpointCount == 0
    assert details.handoffCount == 0
    assert details.checkpoints == [] and details.handoffs == []
    assert details.verification is None


def test_batch_creation_counts_towards_reputation(db, services, new_batch):
    new_batch()
    new_batch()
    rep = services.reputation.get(db, FARMER)
    assert rep.total_batches == 2
    assert rep.tier == "bronze"


def test_checkpoint_indexes_grow_by_one(db, services, new_batch, add_checkpoint):
    batch = new_batch()
    assert add_checkpoint(batch.id, 13.0, 100.0, T0) == 1
    assert add_checkpoint(batch.id, 13.1, 100.0, T0 + 3600, temperature=4.5) == 2
    cps = services.ledger.get_checkpoints(db, batch.id)
    assert [cp.index for cp in cps] == [1, 2]
    assert cps[1].gps == "13.1|100.0"
    assert cps[1].temperature == 4.5
    assert services.ledger.batch_details(db, batch.id).checkpointCount == 2


def test_checkpoint_on_unknown_batch(db, add_checkpoint):
    with pytest.raises(NotFound):
        add_checkpoint(404, 13.0, 100.0, T0)


def test_handoff_lifecycle(db, services, new_batch):
    batch = new_batch()
    assert services.ledger.initiate_handoff(db, batch.id, handoff_body(batch.id)) == 1
    assert services.ledger.initiate_handoff(db, batch.id, handoff_body(batch.id)) == 2

    h = services.ledger.confirm_handoff(db, batch.id, 1, confirmed_at=T0)
    assert h.status == "confirmed" and h.confirmed_at == T0

    statuses = [h.status for h in services.ledger.get_handoffs(db, batch.id)]
    assert statuses == ["confirmed", "pending"]


def test_confirming_twice_keeps_first_timestamp(db, services, new_batch):
    batch = new_batch()
    services.ledger.initiate_handoff(db, batch.id, handoff_body(batch.id))
    services.ledger.confirm_handoff(db, batch.id, 1, confirmed_at=T0)
    again = services.ledger.confirm_handoff(db, batch.id, 1, confirmed_at=T0 + 500)
    assert again.status == "confirmed"
    assert again.confirmed_at == T0


def test_confirm_unknown_handoff(db, services, new_batch):
    batch = new_batch()
    with pytest.raises(NotFound):
        services.ledger.confirm_handoff(db, batch.id, 3)


def test_farmer_batches_newest_first(db, services, new_batch):
    first = new_batch(crop="Kale")
    second = new_batch(crop="Spinach")
    new_batch(farmer="SOMEONEELSE")
    listed = services.ledger.farmer_batches(db, FARMER)
    assert [b.batchId for b in listed] == [str(second.id), str(first.id)]


def test_keyed_locks_are_reentrant_and_dropped():
    locks = KeyedLocks("test")
    with locks.hold("1"):
        with locks.hold(1):
            assert len(locks) == 1
    assert len(locks) == 0


def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks("test")
    counter = {"value": 0}

    def bump():
        for _ in range(200):
            with locks.hold("batch"):
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert counter["value"] == 800
    assert len(locks) == 0
