"""
Tests for distribution ledger storage.
"""

import json
import os
import time

import pytest

from reflector.core.exceptions import LedgerError, LedgerLockedError
from reflector.services.reflections.core.types import DistributionRecord, LedgerState, RunRecord
from reflector.services.reflections.storage.ledger import InMemoryLedgerStore, JsonFileLedgerStore


MINT = "So11111111111111111111111111111111111111112"


def run_record(total: int, timestamp: str = "2024-01-01T00:00:00+00:00") -> RunRecord:
    return RunRecord(
        timestamp=timestamp,
        success_count=1,
        fail_count=0,
        total_distributed=total,
        records=[DistributionRecord(owner="wallet", amount=total, batch_ref="sig")]
    )


def test_missing_state_loads_empty(tmp_path):
    state = JsonFileLedgerStore(tmp_path).load(MINT)

    assert state.last_distribution is None
    assert state.total_distributed == 0
    assert state.distributions == []


def test_save_and_load_document_layout(tmp_path):
    store = JsonFileLedgerStore(tmp_path / "state")
    state = LedgerState()
    state.append(run_record(2 ** 70))

    store.save(MINT, state)

    with open(tmp_path / "state" / f"state-{MINT}.json") as f:
        document = json.load(f)
    assert document["totalDistributed"] == str(2 ** 70)
    assert document["lastDistribution"] == "2024-01-01T00:00:00+00:00"
    assert document["distributions"][0]["records"] == [
        {"owner": "wallet", "amount": str(2 ** 70), "batchRef": "sig"}
    ]
    assert store.load(MINT).total_distributed == 2 ** 70
    assert [p.name for p in (tmp_path / "state").iterdir()] == [f"state-{MINT}.json"]


def test_history_truncated_to_newest_hundred():
    state = LedgerState()
    for i in range(105):
        state.append(run_record(1, timestamp=f"t{i}"))

    assert len(state.distributions) == 100
    assert state.distributions[0].timestamp == "t5"
    assert state.total_distributed == 105


def test_corrupt_state_raises(tmp_path):
    (tmp_path / f"state-{MINT}.json").write_text("{not json")

    with pytest.raises(LedgerError):
        JsonFileLedgerStore(tmp_path).load(MINT)


def test_lease_is_exclusive(tmp_path):
    store = JsonFileLedgerStore(tmp_path)
    store.acquire(MINT)

    with pytest.raises(LedgerLockedError):
        JsonFileLedgerStore(tmp_path).acquire(MINT)

    store.release(MINT)
    JsonFileLedgerStore(tmp_path).acquire(MINT)


def test_expired_lease_is_reclaimed(tmp_path):
    lock = tmp_path / f"state-{MINT}.lock"
    lock.write_text(json.dumps({"pid": 1, "acquired_at": time.time() - 7200}))

    JsonFileLedgerStore(tmp_path, lease_ttl_seconds=3600).acquire(MINT)

    assert json.loads(lock.read_text())["pid"] == os.getpid()


def test_release_keeps_a_lease_reclaimed_by_another_run(tmp_path):
    first = JsonFileLedgerStore(tmp_path, lease_ttl_seconds=3600)
    first.acquire(MINT)

    # Second run considers the first one abandoned
    second = JsonFileLedgerStore(tmp_path, lease_ttl_seconds=0)
    second.acquire(MINT)

    first.release(MINT)

    with pytest.raises(LedgerLockedError):
        JsonFileLedgerStore(tmp_path, lease_ttl_seconds=3600).acquire(MINT)

    second.release(MINT)
    JsonFileLedgerStore(tmp_path, lease_ttl_seconds=3600).acquire(MINT)


def test_reclaim_backs_off_when_lease_was_renewed(tmp_path, monkeypatch):
    lock = tmp_path / f"state-{MINT}.lock"
    lock.write_text(json.dumps({"pid": 2, "token": "fresh", "acquired_at": time.time()}))

    store = JsonFileLedgerStore(tmp_path, lease_ttl_seconds=3600)
    read_lock = store._read_lock

    def expired_snapshot(path):
        if path == lock:
            return {"pid": 1, "token": "expired", "acquired_at": time.time() - 7200}
        return read_lock(path)

    monkeypatch.setattr(store, "_read_lock", expired_snapshot)

    with pytest.raises(LedgerLockedError):
        store.acquire(MINT)

    assert json.loads(lock.read_text())["token"] == "fresh"
    assert list(tmp_path.glob("*.stale")) == []


def test_reclaim_leaves_no_stale_files(tmp_path):
    lock = tmp_path / f"state-{MINT}.lock"
    lock.write_text(json.dumps({"pid": 1, "token": "old", "acquired_at": time.time() - 7200}))

    store = JsonFileLedgerStore(tmp_path, lease_ttl_seconds=3600)
    store.acquire(MINT)

    assert json.loads(lock.read_text())["token"] != "old"
    assert list(tmp_path.glob("*.stale")) == []

    store.release(MINT)
    assert not lock.exists()


def test_in_memory_store_copies_state():
    store = InMemoryLedgerStore()
    state = LedgerState()
    state.append(run_record(10))
    store.save(MINT, state)

    state.append(run_record(5))

    assert store.load(MINT).total_distributed == 10
    store.acquire(MINT)
    with pytest.raises(LedgerLockedError):
        store.acquire(MINT)
