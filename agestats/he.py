"""
he.py

BFV homomorphic primitives for encrypted age statistics.

- Uses TenSEAL BFV with batching: one ciphertext packs a vector of integers.
- An age is encrypted as a one-hot vector over the 8-bit domain (slot i is 1
  iff the age equals i), so "age < t" becomes a dot product with a public
  0/1 mask and yields an encrypted 0/1 without any comparison circuit.
- Counts (comparison indicators and their sums) are single-slot vectors.

Key material is split into two capability-typed handles:
    EvaluationKey : public context (public/relin/galois keys), no decrypt.
    SecretKey     : private context, encrypt + decrypt.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional

import numpy as np
import tenseal as ts

from agestats.config import SchemeParams
from agestats.errors import (
    AggregateOverflow,
    EncryptionRangeError,
    KeyLoadError,
    MalformedCiphertext,
)

TAG_SIZE = 8


class CiphertextKind(IntEnum):
    AGE = 0
    COUNT = 1


@dataclass(frozen=True)
class Ciphertext:
    """An encrypted value plus what it encodes. Never carries plaintext."""
    vector: ts.BFVVector
    kind: CiphertextKind

    def size(self) -> int:
        return self.vector.size()


def key_tag(params: SchemeParams, key_id: str) -> bytes:
    """8-byte fingerprint of (parameter set, key pair) embedded in every ciphertext."""
    material = json.dumps(params.as_dict(), sort_keys=True) + ":" + key_id
    return hashlib.sha256(material.encode("utf-8")).digest()[:TAG_SIZE]


def expected_size(kind: CiphertextKind, params: SchemeParams) -> int:
    return params.domain_size if kind == CiphertextKind.AGE else 1


class _KeyHandle:
    """Shared plumbing for both key roles: context, parameters and identity."""

    def __init__(self, context: ts.Context, params: SchemeParams, key_id: str):
        self.context = context
        self.params = params
        self.key_id = key_id
        self.tag = key_tag(params, key_id)

    def load_vector(self, data: bytes) -> ts.BFVVector:
        """Deserialize a BFV vector against this key's context."""
        return ts.bfv_vector_from(self.context, data)

    @staticmethod
    def _require_kind(ct: Ciphertext, kind: CiphertextKind) -> None:
        if ct.kind != kind:
            raise ValueError(f"expected a {kind.name} ciphertext, got {ct.kind.name}")


class EvaluationKey(_KeyHandle):
    """
    Server-side handle. Supports homomorphic comparison and addition only;
    it has no decrypt method.
    """

    def __init__(self, context: ts.Context, params: SchemeParams, key_id: str):
        if context.is_private():
            raise KeyLoadError("evaluation key must not carry a secret key")
        super().__init__(context, params, key_id)
        self._masks: Dict[int, List[int]] = {}

    # ------------------------------------------------------------------
    # Masks
    # ------------------------------------------------------------------
    def threshold_mask(self, threshold: int) -> List[int]:
        """Public 0/1 mask selecting every age strictly below `threshold`."""
        threshold = int(threshold)
        if not (1 <= threshold <= self.params.domain_size):
            raise ValueError(
                f"threshold {threshold} outside 1..{self.params.domain_size}"
            )
        mask = self._masks.get(threshold)
        if mask is None:
            ages = np.arange(self.params.domain_size)
            mask = (ages < threshold).astype(np.int64).tolist()
            self._masks[threshold] = mask
        return mask

    # ------------------------------------------------------------------
    # Homomorphic operations
    # ------------------------------------------------------------------
    def less_than(self, ct: Ciphertext, threshold: int) -> Ciphertext:
        """
        Encrypted [age < threshold] as a COUNT ciphertext.

        dot(one_hot(age), mask) = mask[age], which is 1 iff age < threshold.
        """
        self._require_kind(ct, CiphertextKind.AGE)
        result = ct.vector.dot(self.threshold_mask(threshold))
        return Ciphertext(result, CiphertextKind.COUNT)

    def add(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        """
        Encrypted slot-wise sum of two ciphertexts of the same kind.

        Wrap-around past the plaintext modulus is invisible under encryption;
        callers must keep sums within params.max_aggregate.
        """
        if a.kind != b.kind:
            raise ValueError(f"cannot add {a.kind.name} to {b.kind.name}")
        return Ciphertext(a.vector + b.vector, a.kind)


class SecretKey(_KeyHandle):
    """Client-side handle: encrypts ages and decrypts aggregate counts."""

    def __init__(self, context: ts.Context, params: SchemeParams, key_id: str):
        if not context.is_private():
            raise KeyLoadError("secret key bundle does not contain a secret key")
        super().__init__(context, params, key_id)

    def encrypt(self, age: int) -> Ciphertext:
        """Encrypt an age in 0..domain_size-1 as a one-hot vector."""
        value = as_int(age)
        if value is None or not (0 <= value < self.params.domain_size):
            raise EncryptionRangeError(
                f"age {age!r} outside supported range 0..{self.params.domain_size - 1}"
            )
        one_hot = np.zeros(self.params.domain_size, dtype=np.int64)
        one_hot[value] = 1
        return Ciphertext(ts.bfv_vector(self.context, one_hot.tolist()), CiphertextKind.AGE)

    def encrypt_count(self, value: int) -> Ciphertext:
        """Encrypt a plain count into a single slot."""
        count = as_int(value)
        if count is None or not (0 <= count <= self.params.max_aggregate):
            raise EncryptionRangeError(
                f"count {value!r} outside supported range 0..{self.params.max_aggregate}"
            )
        return Ciphertext(ts.bfv_vector(self.context, [count]), CiphertextKind.COUNT)

    def decrypt(self, ct: Ciphertext) -> int:
        """
        Decrypt an AGE (index of the hot slot) or COUNT (slot 0) ciphertext.

        A ciphertext produced under another key decrypts to noise, which is
        reported as MalformedCiphertext instead of a made-up value.
        """
        values = np.asarray(ct.vector.decrypt(), dtype=np.int64)

        if ct.kind == CiphertextKind.AGE:
            hot = np.flatnonzero(values)
            if hot.size != 1 or values[hot[0]] != 1:
                raise MalformedCiphertext("ciphertext does not decrypt to a one-hot age")
            return int(hot[0])

        count = int(values[0])
        if count < 0:
            raise AggregateOverflow(
                f"decrypted count wrapped past {self.params.max_aggregate}"
            )
        return count


@dataclass(frozen=True)
class KeyPair:
    evaluation_key: EvaluationKey
    secret_key: SecretKey

    @property
    def key_id(self) -> str:
        return self.secret_key.key_id


def as_int(value) -> Optional[int]:
    """Exact integer value of `value`, or None (bools and fractional numbers included)."""
    if isinstance(value, bool):
        return None
    try:
        converted = int(value)
    except (TypeError, ValueError):
        return None
    return converted if converted == value else None


def generate_key_pair(params: Optional[SchemeParams] = None) -> KeyPair:
    """
    Create an evaluation/secret pair from one BFV context.

    The evaluation half keeps relin and galois keys (needed for dot products)
    and drops the secret key; the secret half drops the galois keys, which the
    client never needs.
    """
    if params is None:
        params = SchemeParams()

    context = ts.context(
        ts.SCHEME_TYPE.BFV,
        poly_modulus_degree=params.poly_modulus_degree,
        plain_modulus=params.plain_modulus,
    )
    context.generate_galois_keys()
    key_id = uuid.uuid4().hex

    evaluation_ctx = ts.context_from(context.serialize(save_secret_key=False))
    secret_ctx = ts.context_from(context.serialize(save_secret_key=True, save_galois_keys=False))

    return KeyPair(
        evaluation_key=EvaluationKey(evaluation_ctx, params, key_id),
        secret_key=SecretKey(secret_ctx, params, key_id),
    )
