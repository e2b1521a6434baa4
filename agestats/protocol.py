"""
protocol.py

Request/response contract between the client and the stats server, plus the
explicit per-threshold result type used instead of a plaintext "0" sentinel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

STATUS_OK = "ok"
STATUS_EMPTY = "empty"
STATUS_FAILED = "failed"


# ----------------------------
# Core result types
# ----------------------------
@dataclass(frozen=True)
class ThresholdResult:
    """
    Outcome of one threshold aggregate.

    status == "ok"     -> `encrypted` holds the encoded encrypted count
    status == "empty"  -> no valid records to sum (distinct from an encrypted 0)
    status == "failed" -> the aggregate could not be computed (see `detail`)
    """
    status: str
    encrypted: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def ok(cls, encrypted: str) -> "ThresholdResult":
        return cls(STATUS_OK, encrypted=encrypted)

    @classmethod
    def empty(cls, detail: str = "no valid records") -> "ThresholdResult":
        return cls(STATUS_EMPTY, detail=detail)

    @classmethod
    def failed(cls, detail: str) -> "ThresholdResult":
        return cls(STATUS_FAILED, detail=detail)


@dataclass(frozen=True)
class AggregateResult:
    """Built fresh per stats request; never persisted."""
    total_users: int
    per_threshold: Dict[int, ThresholdResult] = field(default_factory=dict)
    skipped_records: int = 0

    def to_response(self) -> "StatsResponse":
        return StatsResponse(
            totalUsers=self.total_users,
            perThresholdEncrypted={
                str(t): r.encrypted for t, r in self.per_threshold.items() if r.status == STATUS_OK
            },
            perThresholdStatus={str(t): r.status for t, r in self.per_threshold.items()},
            perThresholdDetail={
                str(t): r.detail for t, r in self.per_threshold.items() if r.detail is not None
            },
            skippedRecords=self.skipped_records,
        )


@dataclass(frozen=True)
class Accepted:
    user_id: str


@dataclass(frozen=True)
class Rejected:
    reason: str
    error: str = "rejected"


SubmitOutcome = Union[Accepted, Rejected]


# ----------------------------
# Wire models
# ----------------------------
class AgeSubmission(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    encrypted_age: str = Field(..., alias="encryptedAge", min_length=1)
    user_id: Optional[str] = Field(None, alias="userId", max_length=128)


class SubmitResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = "accepted"
    user_id: str = Field(..., alias="userId")


class StatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_users: int = Field(..., alias="totalUsers", ge=0)
    per_threshold_encrypted: Dict[str, str] = Field(default_factory=dict, alias="perThresholdEncrypted")
    per_threshold_status: Dict[str, str] = Field(default_factory=dict, alias="perThresholdStatus")
    per_threshold_detail: Dict[str, str] = Field(default_factory=dict, alias="perThresholdDetail")
    skipped_records: int = Field(0, alias="skippedRecords", ge=0)


class ErrorResponse(BaseModel):
    error: str
    detail: str
    retryable: bool = False
