import logging
import os
import random
import sys

import numpy as np
import pandas as pd


def configure_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def set_global_seeds(seed=42):
    random.seed(seed)
    np.random.seed(seed)


def encoded_size_bytes(encoded: str) -> int:
    """Wire size of a base64 ciphertext (what actually crosses the network)."""
    return len(encoded.encode("ascii"))


def append_to_csv(path, row_dict):
    df = pd.DataFrame([row_dict])
    if not os.path.exists(path):
        df.to_csv(path, index=False)
    else:
        df.to_csv(path, mode="a", index=False, header=False)


def plot_latency(csv_path, save_dir="results"):
    import matplotlib
    matplotlib.use("Agg")  # headless
    import matplotlib.pyplot as plt

    df = pd.read_csv(csv_path)

    # Stats latency vs stored records
    plt.figure(figsize=(6, 4))
    for mode, part in df.groupby("mode"):
        plt.plot(part["records"], part["stats_time_s"], marker="o", label=mode)
    plt.xlabel("Stored records")
    plt.ylabel("Stats latency (s)")
    plt.title("Encrypted stats latency vs records")
    plt.grid(True)
    plt.legend()
    plt.savefig(os.path.join(save_dir, "stats_latency_vs_records.png"))
    plt.close()

    # Submit latency vs stored records
    plt.figure(figsize=(6, 4))
    for mode, part in df.groupby("mode"):
        plt.plot(part["records"], part["submit_time_s"], marker="o", label=mode)
    plt.xlabel("Stored records")
    plt.ylabel("Mean submit latency (s)")
    plt.title("Submit latency vs records")
    plt.grid(True)
    plt.legend()
    plt.savefig(os.path.join(save_dir, "submit_latency_vs_records.png"))
    plt.close()
