"""
client.py

Decrypting party: encrypts an age, submits it, fetches the encrypted stats and
decrypts them locally. Only this side ever holds the secret key.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from agestats.codec import CiphertextCodec
from agestats.errors import ClientRequestError, EncryptionRangeError
from agestats.he import CiphertextKind, SecretKey, as_int
from agestats.protocol import STATUS_OK, AgeSubmission, StatsResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecryptedStats:
    """
    Plaintext view of a stats response.

    counts[t] is None when the server reported the threshold as empty or
    failed; statuses[t] says which.
    """
    total_users: int
    counts: Dict[int, Optional[int]]
    statuses: Dict[int, str]
    skipped_records: int = 0


class AgeStatsClient:
    def __init__(
        self,
        secret_key: SecretKey,
        base_url: str = "http://127.0.0.1:8080",
        session=None,
        timeout: Optional[float] = None,
        max_age: Optional[int] = None,
    ) -> None:
        """
        `session` is anything with requests-style get/post (a requests.Session,
        or FastAPI's TestClient in tests).
        """
        self.key = secret_key
        self.codec = CiphertextCodec(secret_key)
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.max_age = max_age

    # ------------------------------------------------------------------
    # Encryption helpers
    # ------------------------------------------------------------------
    def encrypt_age(self, age: int) -> str:
        """Encrypt and encode an age; range is checked before any encryption."""
        value = as_int(age)
        if self.max_age is not None and value is not None and value > self.max_age:
            raise EncryptionRangeError(f"age {age} above policy maximum {self.max_age}")
        return self.codec.encode(self.key.encrypt(age))

    def decrypt_count(self, encoded: str) -> int:
        return self.key.decrypt(self.codec.decode(encoded, CiphertextKind.COUNT))

    def decrypt_stats(self, stats: StatsResponse) -> DecryptedStats:
        counts: Dict[int, Optional[int]] = {}
        statuses: Dict[int, str] = {}
        for raw_t, status in stats.per_threshold_status.items():
            t = int(raw_t)
            statuses[t] = status
            encoded = stats.per_threshold_encrypted.get(raw_t)
            counts[t] = self.decrypt_count(encoded) if status == STATUS_OK and encoded else None
        return DecryptedStats(
            total_users=stats.total_users,
            counts=dict(sorted(counts.items())),
            statuses=dict(sorted(statuses.items())),
            skipped_records=stats.skipped_records,
        )

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    def _request(self, method: str, path: str, **kwargs):
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        response = getattr(self.session, method)(f"{self.base_url}{path}", **kwargs)
        if not 200 <= response.status_code < 300:
            retryable = None
            try:
                retryable = bool(response.json().get("retryable"))
            except (ValueError, AttributeError):
                pass
            raise ClientRequestError(response.status_code, response.text, retryable)
        return response

    def submit_age(self, age: int, user_id: Optional[str] = None) -> str:
        """Encrypt `age` and submit it. Returns the user id the server stored."""
        submission = AgeSubmission(
            encryptedAge=self.encrypt_age(age),
            userId=user_id or str(uuid.uuid4()),
        )
        response = self._request("post", "/submit-age", json=submission.model_dump(by_alias=True))
        stored_id = response.json()["userId"]
        logger.info("Submitted encrypted age as user %s", stored_id)
        return stored_id

    def fetch_stats(self) -> StatsResponse:
        return StatsResponse.model_validate(self._request("get", "/stats").json())

    def get_stats(self) -> DecryptedStats:
        return self.decrypt_stats(self.fetch_stats())

    def health(self) -> bool:
        return self._request("get", "/health").json().get("status") == "healthy"
