import csv

import pytest

import benchmark
from optimistic_updater import OptimisticUpdater, jittered_backoff
from versioned_store import Snapshot


def test_gini_coefficient():
    assert benchmark.gini_coefficient([]) == 0
    assert benchmark.gini_coefficient([0, 0]) == 0
    assert benchmark.gini_coefficient([5, 5, 5, 5]) == pytest.approx(0)
    assert benchmark.gini_coefficient([0, 0, 0, 10]) == pytest.approx(0.75)


def test_run_benchmark_scenario(store, tmp_path):
    store.put("sku-1", 5, version=0)
    updater = OptimisticUpdater(store, 3, backoff=jittered_backoff(0.0005, 0.005))

    records = benchmark.run_scenario(store, updater, "sku-1", benchmark.SCENARIO_DELTAS, "Scenario", out_dir=str(tmp_path))

    assert [r["txn_id"] for r in records] == [1, 2, 3, 4, 5]
    assert any(r["ok"] for r in records)
    with open(tmp_path / "Scenario_raw.csv", newline="") as f:
        assert len(list(csv.DictReader(f))) == 5
    with open(tmp_path / "Scenario_summary.csv", newline="") as f:
        rows = list(csv.reader(f))
    assert rows[1][0] == "Scenario"
    assert rows[1][1] == "5"


def test_summarize_counts_outcomes():
    records = [
        {"delta": -1, "ok": True, "outcome": "Success", "latency_ms": 2.0},
        {"delta": 2, "ok": True, "outcome": "Success", "latency_ms": 4.0},
        {"delta": -9, "ok": False, "outcome": "InsufficientInventory", "latency_ms": 1.0},
    ]

    summary = benchmark.summarize(records)

    assert summary["calls"] == 3
    assert summary["outcomes"]["Success"] == 2
    assert summary["outcomes"]["InsufficientInventory"] == 1
    assert summary["outcomes"]["VersionConflictExhausted"] == 0
    assert summary["success_delta"] == 1
    assert summary["max_latency_ms"] == 4.0


def test_check_invariants_flags_lost_update():
    records = [{"delta": -1, "ok": True}, {"delta": -1, "ok": True}]

    benchmark.check_invariants(Snapshot(5, 0), Snapshot(3, 2), records)
    with pytest.raises(RuntimeError):
        benchmark.check_invariants(Snapshot(5, 0), Snapshot(4, 1), records)


def test_worker_record_shape(store):
    store.put("sku-1", 1)
    record = benchmark.worker_occ(OptimisticUpdater(store, 1), "t-1", "sku-1", -3)

    assert record["outcome"] == "InsufficientInventory"
    assert record["ok"] is False
    assert record["attempts"] is None
    assert record["latency_ms"] >= 0


def test_crashed_call_is_recorded(store, tmp_path, monkeypatch):
    store.put("sku-1", 5)

    def broken_read(item_id):
        raise KeyError(item_id)

    monkeypatch.setattr(store, "read", broken_read)
    updater = OptimisticUpdater(store, 3)

    records = benchmark.run_benchmark(updater, "sku-1", [-1, -1, 2], "Crash", out_dir=str(tmp_path))

    assert len(records) == 3
    assert [r["outcome"] for r in records] == ["Error"] * 3
    assert benchmark.summarize(records)["outcomes"]["Error"] == 3


def test_run_scenario_rejects_missing_records(store, tmp_path, monkeypatch):
    store.put("sku-1", 5)
    monkeypatch.setattr(benchmark, "run_benchmark", lambda *args, **kwargs: [])

    with pytest.raises(RuntimeError, match="0 records for 2 calls"):
        benchmark.run_scenario(store, OptimisticUpdater(store, 1), "sku-1", [-1, 1], "Short", out_dir=str(tmp_path))


def test_make_client_without_tls():
    client = benchmark.make_client("mongodb://localhost:27017/", connect=False)
    try:
        assert client.options.retry_writes is False
    finally:
        client.close()


def test_make_client_srv_uses_certifi_bundle(monkeypatch):
    seen = {}

    def fake_client(uri, **kwargs):
        seen.update(kwargs, uri=uri)

    monkeypatch.setattr(benchmark, "MongoClient", fake_client)

    benchmark.make_client("mongodb+srv://user:pw@cluster0.example.net/")

    assert seen["tls"] is True
    assert seen["tlsCAFile"] == benchmark.certifi.where()
    assert seen["retryWrites"] is False
