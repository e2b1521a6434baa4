"""
run_stats_scaling.py

Latency of submit and stats as the number of stored records grows, for both
stats modes (recompute vs incremental).

For each (mode, record count) it:
  - Submits that many encrypted ages through the service layer.
  - Times the mean submit and one stats request.
  - Appends a row to results/stats_scaling.csv.

Outputs:
  - results/stats_scaling.csv
  - results/stats_latency_vs_records.png
  - results/submit_latency_vs_records.png
"""

from __future__ import annotations

import argparse
import time
from pathlib import Path

import numpy as np

from agestats.codec import CiphertextCodec
from agestats.he import generate_key_pair
from agestats.service import AgeStatsService
from agestats.storage import CiphertextStore
from agestats.utils import append_to_csv, configure_logging, encoded_size_bytes, plot_latency

MODES = ["recompute", "incremental"]
THRESHOLDS = (25, 35)


def run_one(pair, mode: str, records: int, rng) -> dict:
    codec = CiphertextCodec(pair.secret_key)
    service = AgeStatsService(CiphertextStore(":memory:"), pair.evaluation_key, THRESHOLDS, mode=mode)

    encoded = [codec.encode(pair.secret_key.encrypt(int(a))) for a in rng.integers(0, 100, size=records)]

    t0 = time.time()
    for blob in encoded:
        service.submit(blob)
    submit_time = (time.time() - t0) / max(records, 1)

    t0 = time.time()
    service.get_stats()
    stats_time = time.time() - t0

    print(f"[scaling] mode={mode:<11} records={records:<5} "
          f"submit={submit_time:.4f}s stats={stats_time:.3f}s")
    return {
        "mode": mode,
        "records": records,
        "submit_time_s": submit_time,
        "stats_time_s": stats_time,
        "ciphertext_bytes": encoded_size_bytes(encoded[0]) if encoded else 0,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Submit/stats latency vs stored records")
    parser.add_argument("--sizes", type=int, nargs="+", default=[1, 10, 50, 100])
    args = parser.parse_args()

    configure_logging("WARNING")

    project_root = Path(__file__).resolve().parents[1]
    results_dir = project_root / "results"
    results_dir.mkdir(exist_ok=True)
    csv_path = results_dir / "stats_scaling.csv"
    if csv_path.exists():
        csv_path.unlink()

    pair = generate_key_pair()
    rng = np.random.default_rng(seed=21780)
    for mode in MODES:
        for records in args.sizes:
            append_to_csv(csv_path, run_one(pair, mode, records, rng))

    plot_latency(csv_path, save_dir=str(results_dir))
    print(f"[scaling] Results written to: {csv_path}")


if __name__ == "__main__":
    main()
