"""
run_e2e_demo.py

End-to-end check of encrypted age statistics:
- Simulate a population of ages.
- Count "age < t" in the clear.
- Encrypt every age, submit it through the HTTP API (in-process TestClient),
  fetch the encrypted per-threshold counts and decrypt them client-side.
- Compare the two and log the result to results/results_e2e.csv.

Keys are generated into a temporary directory, so this never touches a real
deployment's key bundles.
"""

from __future__ import annotations

import argparse
import csv
import tempfile
import time
from pathlib import Path
from typing import Dict, Iterable, List

import numpy as np
from fastapi.testclient import TestClient

from agestats.client import AgeStatsClient
from agestats.config import ServiceConfig, parse_thresholds
from agestats.keys import KeyManager
from agestats.server import create_app
from agestats.storage import CiphertextStore
from agestats.utils import configure_logging, set_global_seeds


def simulate_ages(num_users: int, max_age: int = 120, seed: int = 21780) -> List[int]:
    """Roughly adult-skewed ages, clipped to 0..max_age."""
    rng = np.random.default_rng(seed=seed)
    ages = rng.normal(loc=38.0, scale=15.0, size=num_users).round().astype(int)
    return np.clip(ages, 0, max_age).tolist()


def plain_counts(ages: Iterable[int], thresholds: Iterable[int]) -> Dict[int, int]:
    arr = np.asarray(list(ages))
    return {t: int((arr < t).sum()) for t in thresholds}


def main() -> None:
    parser = argparse.ArgumentParser(description="Encrypted vs plaintext age counts")
    parser.add_argument("--users", type=int, default=20)
    parser.add_argument("--thresholds", type=parse_thresholds, default=(18, 25, 35, 65))
    parser.add_argument("--mode", choices=["recompute", "incremental"], default="recompute")
    args = parser.parse_args()

    configure_logging("WARNING")
    set_global_seeds(21780)

    # ------------------------------------------------------------------
    # 1) Keys + in-process server
    # ------------------------------------------------------------------
    with tempfile.TemporaryDirectory() as key_dir:
        manager = KeyManager.in_directory(key_dir)
        pair = manager.generate_and_persist()
        config = ServiceConfig(
            evaluation_key_path=manager.evaluation_path,
            thresholds=args.thresholds,
            stats_mode=args.mode,
        )
        app = create_app(config, store=CiphertextStore(":memory:"))
        secret_key = manager.load_for_decryption()

    client = AgeStatsClient(secret_key, base_url="http://testserver", session=TestClient(app))

    # ------------------------------------------------------------------
    # 2) Submit encrypted ages
    # ------------------------------------------------------------------
    ages = simulate_ages(args.users)
    t0 = time.time()
    for age in ages:
        client.submit_age(age)
    submit_time = time.time() - t0

    # ------------------------------------------------------------------
    # 3) Encrypted stats vs plaintext
    # ------------------------------------------------------------------
    t0 = time.time()
    stats = client.get_stats()
    stats_time = time.time() - t0
    expected = plain_counts(ages, args.thresholds)
    mismatches = [t for t in args.thresholds if stats.counts.get(t) != expected[t]]

    print("=== Encrypted age statistics demo ===")
    print(f"Key pair         : {pair.key_id}")
    print(f"Mode             : {args.mode}")
    print(f"Users            : {stats.total_users}")
    for t in args.thresholds:
        print(f"  under {t:>3}      : encrypted={stats.counts.get(t)} plain={expected[t]}")
    print(f"Submit time (s)  : {submit_time:.3f}")
    print(f"Stats time (s)   : {stats_time:.3f}")
    print(f"Mismatches       : {mismatches or 'none'}")

    # ------------------------------------------------------------------
    # 4) Save a small CSV in results/
    # ------------------------------------------------------------------
    project_root = Path(__file__).resolve().parents[1]
    results_dir = project_root / "results"
    results_dir.mkdir(exist_ok=True)

    csv_path = results_dir / "results_e2e.csv"
    with csv_path.open("w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["threshold", "plain_count", "encrypted_count", "users", "mode",
                         "submit_time_s", "stats_time_s"])
        for t in args.thresholds:
            writer.writerow([t, expected[t], stats.counts.get(t), stats.total_users, args.mode,
                             submit_time, stats_time])

    print(f"\nResults written to: {csv_path}")


if __name__ == "__main__":
    main()
