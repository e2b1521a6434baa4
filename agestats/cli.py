"""
cli.py

Command-line entry point (`agestats`).

    agestats generate-keys [--key-dir DIR | --evaluation-out F --secret-out F] [--force]
    agestats submit --age N [--user-id ID]
    agestats stats
    agestats serve [--host H] [--port P] [--db-path F] [--thresholds 25,35] [--mode M]
    agestats rebuild-aggregates
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from agestats.client import AgeStatsClient
from agestats.config import load_client_config, load_service_config, parse_thresholds
from agestats.errors import AgeStatsError
from agestats.keys import KeyManager
from agestats.utils import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agestats",
        description="Encrypted age statistics: clients submit FHE-encrypted ages, "
                    "the server counts them below policy thresholds without decrypting.",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate-keys", help="Generate and persist a new key pair (admin)")
    gen.add_argument("--key-dir", type=Path, default=None, help="Write evaluation.key and secret.key here")
    gen.add_argument("--evaluation-out", type=Path, default=None, help="Path of the server (evaluation) bundle")
    gen.add_argument("--secret-out", type=Path, default=None, help="Path of the client (secret) bundle")
    gen.add_argument("--force", action="store_true", help="Replace existing bundles (invalidates stored ciphertexts)")

    submit = sub.add_parser("submit", help="Encrypt an age and submit it")
    submit.add_argument("--age", type=int, required=True)
    submit.add_argument("--user-id", default=None)
    submit.add_argument("--server-url", default=None)
    submit.add_argument("--secret-key", type=Path, default=None)

    stats = sub.add_parser("stats", help="Fetch encrypted stats and decrypt them locally")
    stats.add_argument("--server-url", default=None)
    stats.add_argument("--secret-key", type=Path, default=None)

    for name, help_text in (("serve", "Run the stats server"),
                            ("rebuild-aggregates", "Recompute running aggregates from stored records")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--evaluation-key", type=Path, default=None)
        p.add_argument("--db-path", default=None)
        p.add_argument("--thresholds", type=parse_thresholds, default=None, help="e.g. 25,35")
        if name == "serve":
            p.add_argument("--host", default=None)
            p.add_argument("--port", type=int, default=None)
            p.add_argument("--mode", choices=["recompute", "incremental"], default=None)
            p.add_argument("--stats-timeout", type=float, default=None)

    return parser


def _generate_keys(args) -> int:
    if args.key_dir is not None:
        manager = KeyManager.in_directory(args.key_dir)
    else:
        client_cfg = load_client_config()
        service_cfg = load_service_config()
        manager = KeyManager(
            args.evaluation_out or service_cfg.evaluation_key_path,
            args.secret_out or client_cfg.secret_key_path,
        )
    print("[keys] Generating new key pair...")
    pair = manager.generate_and_persist(overwrite=args.force)
    print(f"[keys] Key pair {pair.key_id}")
    print(f"[keys]   evaluation bundle (server): {manager.evaluation_path}")
    print(f"[keys]   secret bundle     (client): {manager.secret_path}")
    return 0


def _make_client(args) -> AgeStatsClient:
    cfg = load_client_config(server_url=args.server_url, secret_key_path=args.secret_key)
    manager = KeyManager(cfg.secret_key_path.with_name("evaluation.key"), cfg.secret_key_path, cfg.scheme)
    secret_key = manager.load_for_decryption()
    return AgeStatsClient(
        secret_key,
        base_url=cfg.server_url,
        timeout=cfg.request_timeout_s,
        max_age=cfg.max_age,
    )


def _submit(args) -> int:
    client = _make_client(args)
    user_id = client.submit_age(args.age, user_id=args.user_id)
    print(f"[client] Successfully submitted age (user id {user_id})")
    return 0


def _stats(args) -> int:
    client = _make_client(args)
    stats = client.get_stats()
    print(f"[client] Total users: {stats.total_users}")
    for threshold, count in stats.counts.items():
        status = stats.statuses[threshold]
        if count is None:
            print(f"[client] Users under {threshold}: unavailable ({status})")
        else:
            print(f"[client] Users under {threshold}: {count}")
    if stats.skipped_records:
        print(f"[client] Server skipped {stats.skipped_records} malformed record(s)")
    return 0


def _service_config(args):
    overrides = dict(
        evaluation_key_path=args.evaluation_key,
        db_path=args.db_path,
        thresholds=args.thresholds,
    )
    if args.command == "serve":
        overrides.update(
            host=args.host,
            port=args.port,
            stats_mode=args.mode,
            stats_timeout_s=args.stats_timeout,
        )
    return load_service_config(**overrides)


def _serve(args) -> int:
    from agestats.server import serve

    serve(_service_config(args))
    return 0


def _rebuild(args) -> int:
    from agestats.service import AgeStatsService
    from agestats.storage import CiphertextStore

    cfg = _service_config(args)
    key = KeyManager(cfg.evaluation_key_path, params=cfg.scheme).load_for_evaluation()
    service = AgeStatsService(CiphertextStore(cfg.db_path), key, cfg.thresholds, mode="incremental")
    fresh = service.rebuild_aggregates()
    print(f"[server] Rebuilt running aggregates for thresholds {sorted(fresh)}")
    return 0


COMMANDS = {
    "generate-keys": _generate_keys,
    "submit": _submit,
    "stats": _stats,
    "serve": _serve,
    "rebuild-aggregates": _rebuild,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        return COMMANDS[args.command](args)
    except AgeStatsError as e:
        print(f"[agestats] error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
