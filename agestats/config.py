# agestats/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Tuple

# =============================================================================
# Runtime configuration for the encrypted age statistics service.
# =============================================================================
# Scheme parameters are shared by the key generator, the server and the client.
# Keys produced under one SchemeParams are only ever used with that same set;
# the key tag embedded in every ciphertext makes a mismatch detectable.
#
# Environment overrides (all optional):
#   AGESTATS_KEY_DIR          directory holding evaluation.key / secret.key
#   AGESTATS_EVALUATION_KEY   explicit path of the evaluation bundle
#   AGESTATS_SECRET_KEY       explicit path of the secret bundle
#   AGESTATS_DB_PATH          SQLite file for stored ciphertexts
#   AGESTATS_HOST / AGESTATS_PORT
#   AGESTATS_THRESHOLDS       comma separated, e.g. "25,35"
#   AGESTATS_STATS_TIMEOUT    seconds allowed for one stats computation
#   AGESTATS_STATS_MODE       "recompute" | "incremental"
#   AGESTATS_LOG_LEVEL
#   AGESTATS_SERVER_URL       base URL used by the client
# =============================================================================

DEFAULT_THRESHOLDS: Tuple[int, ...] = (25, 35)
STATS_MODES = ("recompute", "incremental")


@dataclass(frozen=True)
class SchemeParams:
    """
    BFV parameter set.

    plain_modulus must be a prime congruent to 1 mod 2 * poly_modulus_degree
    so that TenSEAL can batch values into slots.
    """
    poly_modulus_degree: int = 4096
    plain_modulus: int = 1032193
    width_bits: int = 8

    @property
    def domain_size(self) -> int:
        """Number of representable ages (one slot per value)."""
        return 2 ** self.width_bits

    @property
    def max_aggregate(self) -> int:
        # BFV decoding is centered around zero; anything above t/2 wraps negative.
        return (self.plain_modulus - 1) // 2

    def as_dict(self) -> dict:
        return {
            "poly_modulus_degree": self.poly_modulus_degree,
            "plain_modulus": self.plain_modulus,
            "width_bits": self.width_bits,
        }


@dataclass(frozen=True)
class ServiceConfig:
    """Server-side settings. The server only ever needs the evaluation bundle."""
    evaluation_key_path: Path = Path("keys/evaluation.key")
    db_path: str = "agestats.sqlite3"
    host: str = "127.0.0.1"
    port: int = 8080

    # Fixed by policy: thresholds leak information about the compared ages.
    thresholds: Tuple[int, ...] = DEFAULT_THRESHOLDS

    stats_timeout_s: float = 60.0
    stats_mode: str = "recompute"
    log_level: str = "INFO"
    scheme: SchemeParams = field(default_factory=SchemeParams)


@dataclass(frozen=True)
class ClientConfig:
    """Client-side settings. Only the client holds the secret bundle."""
    secret_key_path: Path = Path("keys/secret.key")
    server_url: str = "http://127.0.0.1:8080"
    request_timeout_s: Optional[float] = 120.0

    # Policy ceiling applied before encryption; the scheme itself allows 0..255.
    max_age: int = 120
    log_level: str = "INFO"
    scheme: SchemeParams = field(default_factory=SchemeParams)


def parse_thresholds(raw: str) -> Tuple[int, ...]:
    """Parse "25,35" into a sorted, de-duplicated tuple of ints."""
    values = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        values.add(int(part))
    if not values:
        raise ValueError("at least one threshold is required")
    return tuple(sorted(values))


def validate_thresholds(thresholds, scheme: SchemeParams) -> Tuple[int, ...]:
    """Thresholds must lie in 1..domain_size; 0 would compare against nothing."""
    out = tuple(sorted(set(int(t) for t in thresholds)))
    if not out:
        raise ValueError("at least one threshold is required")
    for t in out:
        if not (1 <= t <= scheme.domain_size):
            raise ValueError(
                f"threshold {t} outside supported range 1..{scheme.domain_size}"
            )
    return out


def _key_dir() -> Optional[Path]:
    raw = os.getenv("AGESTATS_KEY_DIR")
    return Path(raw) if raw else None


def load_service_config(**overrides) -> ServiceConfig:
    """
    Build a ServiceConfig from defaults, then environment, then keyword overrides
    (used by the CLI). Overrides set to None are ignored.
    """
    cfg = ServiceConfig()
    env = {}

    key_dir = _key_dir()
    if os.getenv("AGESTATS_EVALUATION_KEY"):
        env["evaluation_key_path"] = Path(os.environ["AGESTATS_EVALUATION_KEY"])
    elif key_dir is not None:
        env["evaluation_key_path"] = key_dir / "evaluation.key"
    if os.getenv("AGESTATS_DB_PATH"):
        env["db_path"] = os.environ["AGESTATS_DB_PATH"]
    if os.getenv("AGESTATS_HOST"):
        env["host"] = os.environ["AGESTATS_HOST"]
    if os.getenv("AGESTATS_PORT"):
        env["port"] = int(os.environ["AGESTATS_PORT"])
    if os.getenv("AGESTATS_THRESHOLDS"):
        env["thresholds"] = parse_thresholds(os.environ["AGESTATS_THRESHOLDS"])
    if os.getenv("AGESTATS_STATS_TIMEOUT"):
        env["stats_timeout_s"] = float(os.environ["AGESTATS_STATS_TIMEOUT"])
    if os.getenv("AGESTATS_STATS_MODE"):
        env["stats_mode"] = os.environ["AGESTATS_STATS_MODE"]
    if os.getenv("AGESTATS_LOG_LEVEL"):
        env["log_level"] = os.environ["AGESTATS_LOG_LEVEL"]

    env.update({k: v for k, v in overrides.items() if v is not None})
    cfg = replace(cfg, **env)

    if cfg.stats_mode not in STATS_MODES:
        raise ValueError(f"unknown stats mode {cfg.stats_mode!r}; expected one of {STATS_MODES}")
    return replace(cfg, thresholds=validate_thresholds(cfg.thresholds, cfg.scheme))


def load_client_config(**overrides) -> ClientConfig:
    """Client counterpart of load_service_config."""
    cfg = ClientConfig()
    env = {}

    key_dir = _key_dir()
    if os.getenv("AGESTATS_SECRET_KEY"):
        env["secret_key_path"] = Path(os.environ["AGESTATS_SECRET_KEY"])
    elif key_dir is not None:
        env["secret_key_path"] = key_dir / "secret.key"
    if os.getenv("AGESTATS_SERVER_URL"):
        env["server_url"] = os.environ["AGESTATS_SERVER_URL"]
    if os.getenv("AGESTATS_LOG_LEVEL"):
        env["log_level"] = os.environ["AGESTATS_LOG_LEVEL"]

    env.update({k: v for k, v in overrides.items() if v is not None})
    return replace(cfg, **env)
