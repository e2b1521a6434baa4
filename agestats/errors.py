"""
errors.py

Error taxonomy shared by the key manager, codec, engine, service and client.
"""

from __future__ import annotations

from typing import Optional


class AgeStatsError(Exception):
    """Base class for every error raised by agestats."""

    retryable = False


class KeyLoadError(AgeStatsError):
    """Key bundle missing, corrupt, of the wrong role, or for another parameter set."""


class MalformedCiphertext(AgeStatsError):
    """Encoded ciphertext does not match the expected layout or key."""


class EmptyAggregate(AgeStatsError):
    """No valid ciphertexts were available to sum."""


class AggregateOverflow(AgeStatsError):
    """The sum could exceed what the plaintext slot can represent."""


class StorageError(AgeStatsError):
    """Durable storage (key files or the ciphertext store) failed."""


class EncryptionRangeError(AgeStatsError, ValueError):
    """Plaintext outside the supported encoding width."""


class EvaluationTimeout(AgeStatsError):
    """Homomorphic evaluation did not finish before its deadline."""

    retryable = True


class ClientRequestError(AgeStatsError):
    """The server answered a client request with a non-success status."""

    def __init__(self, status_code: int, body: str, retryable: Optional[bool] = None):
        self.status_code = status_code
        self.body = body
        if retryable is not None:
            self.retryable = retryable
        super().__init__(f"HTTP {status_code}: {body}")


class DuplicateRecord(StorageError):
    """A record with the same user id is already stored."""
