"""
keys.py

Key lifecycle: generate once, persist as two separate bundles, load by role.

    evaluation.key -> server (EvaluationKey, no secret key inside)
    secret.key     -> client (SecretKey, encrypt + decrypt)

Both bundles come from one generate_key_pair() call and share a key_id.
Regenerating invalidates every stored ciphertext, so generation is an explicit
administrative action and refuses to replace existing bundles by default.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import tenseal as ts

from agestats.config import SchemeParams
from agestats.errors import KeyLoadError, StorageError
from agestats.he import EvaluationKey, KeyPair, SecretKey, generate_key_pair, key_tag

logger = logging.getLogger(__name__)

BUNDLE_FORMAT = "agestats-key/1"
ROLE_EVALUATION = "evaluation"
ROLE_SECRET = "secret"


def _bundle_record(role: str, context_bytes: bytes, params: SchemeParams, key_id: str) -> bytes:
    record = {
        "format": BUNDLE_FORMAT,
        "role": role,
        "key_id": key_id,
        "scheme": params.as_dict(),
        "tag": key_tag(params, key_id).hex(),
        "context": base64.b64encode(context_bytes).decode("ascii"),
    }
    return json.dumps(record, sort_keys=True).encode("utf-8")


class KeyManager:
    """
    Persists and loads the two halves of a key pair.

    Workflow:
        1) generate_and_persist()   (admin, once)
        2) load_for_evaluation()    (server start-up)
        3) load_for_decryption()    (client)
    """

    def __init__(
        self,
        evaluation_path: os.PathLike | str,
        secret_path: Optional[os.PathLike | str] = None,
        params: Optional[SchemeParams] = None,
    ) -> None:
        self.evaluation_path = Path(evaluation_path)
        self.secret_path = Path(secret_path) if secret_path is not None else None
        self.params = params if params is not None else SchemeParams()

    @classmethod
    def in_directory(cls, key_dir: os.PathLike | str, params: Optional[SchemeParams] = None) -> "KeyManager":
        key_dir = Path(key_dir)
        return cls(key_dir / "evaluation.key", key_dir / "secret.key", params)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def generate_and_persist(self, overwrite: bool = False) -> KeyPair:
        """
        Generate a new pair and write both bundles.

        Both bundles are staged as temporary files next to their targets and
        only renamed into place once every write has succeeded, so a failure
        never leaves a half-written bundle behind. Existing bundles are backed
        up first; if the second rename fails the first one is restored, so the
        pair on disk always shares one key_id.
        """
        if self.secret_path is None:
            raise StorageError("generating keys needs both an evaluation and a secret path")
        existing = [p for p in (self.evaluation_path, self.secret_path) if p.exists()]
        if existing and not overwrite:
            raise StorageError(
                f"refusing to replace existing key bundle(s) {', '.join(map(str, existing))}; "
                "regenerating keys invalidates all stored ciphertexts"
            )

        pair = generate_key_pair(self.params)
        eval_record = _bundle_record(
            ROLE_EVALUATION,
            pair.evaluation_key.context.serialize(save_secret_key=False),
            self.params,
            pair.key_id,
        )
        secret_record = _bundle_record(
            ROLE_SECRET,
            pair.secret_key.context.serialize(save_secret_key=True, save_galois_keys=False),
            self.params,
            pair.key_id,
        )

        staged: List[Tuple[Path, Path]] = []
        backups: Dict[Path, Path] = {}
        replaced: List[Path] = []
        try:
            for target, payload in ((self.evaluation_path, eval_record), (self.secret_path, secret_record)):
                staged.append((self._stage(target, payload), target))
            for _, target in staged:
                if target.exists():
                    backup = target.with_name(f".{target.name}.bak")
                    shutil.copy2(target, backup)
                    backups[target] = backup
            for tmp, target in staged:
                os.replace(tmp, target)
                replaced.append(target)
        except OSError as e:
            for tmp, _ in staged:
                tmp.unlink(missing_ok=True)
            # both bundles or neither: put back whatever was already swapped in
            for target in replaced:
                if target in backups:
                    os.replace(backups.pop(target), target)
                else:
                    target.unlink(missing_ok=True)
            raise StorageError(f"could not persist key bundles: {e}") from e
        finally:
            for backup in backups.values():
                backup.unlink(missing_ok=True)

        logger.info(
            "Generated key pair %s (evaluation=%s, secret=%s)",
            pair.key_id, self.evaluation_path, self.secret_path,
        )
        return pair

    @staticmethod
    def _stage(target: Path, payload: bytes) -> Path:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        return tmp

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load_for_evaluation(self) -> EvaluationKey:
        """Load the server half. Never touches the secret bundle."""
        context, key_id = self._read_bundle(self.evaluation_path, ROLE_EVALUATION)
        if context.is_private():
            raise KeyLoadError(f"{self.evaluation_path} carries a secret key; refusing to load it server-side")
        logger.info("Loaded evaluation key %s from %s", key_id, self.evaluation_path)
        return EvaluationKey(context, self.params, key_id)

    def load_for_decryption(self) -> SecretKey:
        """Load the client half used to encrypt ages and decrypt aggregates."""
        if self.secret_path is None:
            raise KeyLoadError("no secret key path configured")
        context, key_id = self._read_bundle(self.secret_path, ROLE_SECRET)
        logger.info("Loaded secret key %s from %s", key_id, self.secret_path)
        return SecretKey(context, self.params, key_id)

    def _read_bundle(self, path: Path, role: str) -> Tuple[ts.Context, str]:
        try:
            raw = path.read_bytes()
        except FileNotFoundError as e:
            raise KeyLoadError(f"key bundle not found: {path} (run `agestats generate-keys` first)") from e
        except OSError as e:
            raise KeyLoadError(f"cannot read key bundle {path}: {e}") from e

        try:
            record = json.loads(raw.decode("utf-8"))
            fmt = record["format"]
            found_role = record["role"]
            key_id = str(record["key_id"])
            scheme = record["scheme"]
            tag = record["tag"]
            context_bytes = base64.b64decode(record["context"], validate=True)
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, binascii.Error) as e:
            raise KeyLoadError(f"corrupt key bundle {path}") from e

        if fmt != BUNDLE_FORMAT:
            raise KeyLoadError(f"{path}: unsupported bundle format {fmt!r}")
        if found_role != role:
            raise KeyLoadError(f"{path}: expected a {role} bundle, found {found_role!r}")
        if scheme != self.params.as_dict():
            raise KeyLoadError(f"{path}: scheme parameters {scheme} do not match {self.params.as_dict()}")
        if tag != key_tag(self.params, key_id).hex():
            raise KeyLoadError(f"{path}: key tag does not match its key id")

        try:
            context = ts.context_from(context_bytes)
        except Exception as e:  # TenSEAL surfaces protobuf/SEAL failures as assorted types
            raise KeyLoadError(f"{path}: TenSEAL context could not be loaded") from e
        return context, key_id
