# ----This file drives concurrent writers against one item: setup, contention runs, invariant checks, plotting----

import csv
import os
import random
import statistics
import threading
import time
from collections import Counter

import certifi
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
from bson.int64 import Int64
from pymongo import ASCENDING, MongoClient

from optimistic_updater import OptimisticUpdater, jittered_backoff
from versioned_store import MongoVersionedStore

MONGO_URI = os.environ.get("MONGO_URI", "mongodb://localhost:27017/")
DB_NAME = os.environ.get("DB_NAME", "INVENTORY")
ITEM_COLL = "items"
ITEM_ID = "sku-1"
NUM_THREADS = 100
MAX_ATTEMPTS = 3
BACKOFF_BASE_S = 0.005
BACKOFF_CAP_S = 0.2

SCENARIO_QUANTITY = 5
SCENARIO_DELTAS = [-1, -2, -2, 2, -1]

# ---------- Setup ----------
def setup_db(client):
    client.drop_database(DB_NAME)
    db = client[DB_NAME]
    db.create_collection(
        ITEM_COLL,
        validator={
            "$jsonSchema": {
                "bsonType": "object",
                "required": ["item_id", "quantity", "version"],
                "properties": {
                    "item_id": {"bsonType": "string"},
                    "quantity": {"bsonType": "long", "minimum": 0},
                    "version": {"bsonType": "long", "minimum": 0},
                },
            }
        },
    )
    db[ITEM_COLL].create_index([("item_id", ASCENDING)], unique=True)
    return db

def seed_item(coll, item_id=ITEM_ID, quantity=SCENARIO_QUANTITY):
    coll.delete_many({"item_id": item_id})
    coll.insert_one({"item_id": item_id, "quantity": Int64(quantity), "version": Int64(0)})

def gini_coefficient(values):
    if not values: return 0
    sorted_vals = sorted(values)
    n = len(values)
    cumvals = [sum(sorted_vals[:i+1]) for i in range(n)]
    if cumvals[-1] == 0: return 0
    return (n + 1 - 2 * sum(cumvals) / cumvals[-1]) / n

# ---------- Workers ----------
def worker_occ(updater, tid, item_id, delta):
    start = time.perf_counter()
    outcome = updater.apply(item_id, delta)
    latency_ms = (time.perf_counter() - start) * 1000
    return {
        "thread_id": tid,
        "delta": delta,
        "outcome": type(outcome).__name__,
        "ok": outcome.ok,
        "attempts": getattr(outcome, "attempts", None),
        "final_quantity": getattr(outcome, "final_quantity", None),
        "latency_ms": latency_ms,
    }

# ---------- Benchmark ----------
def run_benchmark(updater, item_id, deltas, label="OCC", out_dir="."):
    threads, records = [], []
    lock = threading.Lock()
    def timed_worker(tid, txn_id, delta):
        try:
            record = worker_occ(updater, tid, item_id, delta)
        except Exception as e:
            print(f"[ERROR] {tid}: {type(e).__name__}: {e}")
            record = {"thread_id": tid, "delta": delta, "outcome": "Error", "ok": False,
                      "attempts": None, "final_quantity": None, "latency_ms": 0.0}
        record["txn_id"] = txn_id
        with lock:
            records.append(record)
    for i, delta in enumerate(deltas):
        tid = f"{label}-thread-{i+1}"
        t = threading.Thread(target=timed_worker, args=(tid, i+1, delta))
        threads.append(t)
        t.start()
    for t in threads: t.join()
    records.sort(key=lambda r: r["txn_id"])

    fields = ["txn_id","thread_id","delta","outcome","attempts","final_quantity","latency_ms"]
    with open(os.path.join(out_dir, f"{label}_raw.csv"), "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fields, extrasaction="ignore")
        writer.writeheader(); writer.writerows(records)

    summary = summarize(records)
    with open(os.path.join(out_dir, f"{label}_summary.csv"), "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["System","Calls","Successes","Insufficient","Exhausted","Store_Errors","Errors","Avg_Latency","Max_Latency","Gini_Fairness"])
        writer.writerow([label, summary["calls"], summary["outcomes"]["Success"],
                         summary["outcomes"]["InsufficientInventory"], summary["outcomes"]["VersionConflictExhausted"],
                         summary["outcomes"]["StoreError"], summary["outcomes"]["Error"], summary["avg_latency_ms"], summary["max_latency_ms"],
                         summary["fairness"]])

    print(f"\n--- {label} Results ---")
    print(f"Calls: {summary['calls']}, Successes: {summary['outcomes']['Success']}, "
          f"Avg latency: {summary['avg_latency_ms']:.2f} ms")
    return records

def summarize(records):
    latencies = [r["latency_ms"] for r in records]
    outcomes = Counter({name: 0 for name in ("Success", "InsufficientInventory", "VersionConflictExhausted", "NotFound", "StoreError", "Error")})
    outcomes.update(r["outcome"] for r in records)
    return {
        "calls": len(records),
        "outcomes": outcomes,
        "success_delta": sum(r["delta"] for r in records if r["ok"]),
        "avg_latency_ms": statistics.mean(latencies) if latencies else 0.0,
        "max_latency_ms": max(latencies) if latencies else 0.0,
        "fairness": gini_coefficient(latencies),
    }

def check_invariants(initial, final, records):
    successes = [r for r in records if r["ok"]]
    expected_version = initial.version + len(successes)
    expected_quantity = initial.quantity + sum(r["delta"] for r in successes)
    if final.version != expected_version:
        raise RuntimeError(f"version {final.version} != {expected_version} (initial + successes)")
    if final.quantity != expected_quantity:
        raise RuntimeError(f"quantity {final.quantity} != {expected_quantity} (initial + successful deltas)")
    if final.quantity < 0:
        raise RuntimeError(f"quantity went negative: {final.quantity}")

def run_scenario(store, updater, item_id, deltas, label, out_dir="."):
    initial = store.read(item_id)
    records = run_benchmark(updater, item_id, deltas, label=label, out_dir=out_dir)
    if len(records) != len(deltas):
        raise RuntimeError(f"{label}: {len(records)} records for {len(deltas)} calls")
    final = store.read(item_id)
    check_invariants(initial, final, records)
    print(f"{label}: quantity {initial.quantity} -> {final.quantity}, version {initial.version} -> {final.version}")
    return records

def make_client(uri=MONGO_URI, **kwargs):
    # tlsCAFile is only accepted when TLS is on
    if uri.startswith("mongodb+srv"):
        kwargs.update(tls=True, tlsCAFile=certifi.where())
    return MongoClient(uri, retryWrites=False, **kwargs)

def main():
    client = make_client()
    backoff = jittered_backoff(BACKOFF_BASE_S, BACKOFF_CAP_S)

    # Literal scenario
    db = setup_db(client); coll = db[ITEM_COLL]; seed_item(coll, ITEM_ID, SCENARIO_QUANTITY)
    store = MongoVersionedStore(coll)
    updater = OptimisticUpdater(store, MAX_ATTEMPTS, backoff=backoff)
    scenario_results = run_scenario(store, updater, ITEM_ID, SCENARIO_DELTAS, "Scenario")

    # High contention
    db = setup_db(client); coll = db[ITEM_COLL]; seed_item(coll, ITEM_ID, NUM_THREADS)
    store = MongoVersionedStore(coll)
    updater = OptimisticUpdater(store, MAX_ATTEMPTS, backoff=backoff)
    deltas = [random.choice([-3, -2, -1, 1, 2]) for _ in range(NUM_THREADS)]
    contention_results = run_scenario(store, updater, ITEM_ID, deltas, "Contention")

    # Plots
    plt.plot([r["latency_ms"] for r in contention_results], label="Contention")
    plt.plot([r["latency_ms"] for r in scenario_results], label="Scenario")
    plt.xlabel("Call #"); plt.ylabel("Latency (ms)")
    plt.title("Latency per Call"); plt.legend(); plt.savefig("latency_per_call.png"); plt.close()

    counts = summarize(contention_results)["outcomes"]
    names = list(counts)
    plt.bar(names, [counts[n] for n in names])
    plt.ylabel("Calls"); plt.title("Outcomes under Contention"); plt.xticks(rotation=20)
    plt.tight_layout(); plt.savefig("outcomes.png"); plt.close()

    attempts = [r["attempts"] for r in contention_results if r["attempts"]]
    plt.hist(attempts, bins=range(1, MAX_ATTEMPTS + 2), align="left", rwidth=0.8)
    plt.xlabel("Attempts"); plt.ylabel("Calls")
    plt.title("Attempts per Call"); plt.savefig("attempts_histogram.png"); plt.close()

if __name__ == "__main__":
    main()
