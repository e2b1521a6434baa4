"""
service.py

Submission / stats operations bound to a store and an evaluation key.

Two stats modes:
    "recompute"   : every get_stats() re-runs the engine over all stored rows
                    (cost ~ rows x thresholds per request).
    "incremental" : submit() also folds the new record's indicators into
                    running encrypted sums, in the same storage transaction;
                    get_stats() only reads them.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from agestats.codec import CiphertextCodec
from agestats.config import STATS_MODES, validate_thresholds
from agestats.engine import EvaluationEngine
from agestats.errors import (
    AggregateOverflow,
    DuplicateRecord,
    EmptyAggregate,
    MalformedCiphertext,
)
from agestats.he import CiphertextKind, EvaluationKey
from agestats.protocol import Accepted, AggregateResult, Rejected, SubmitOutcome, ThresholdResult
from agestats.storage import Aggregates, CiphertextStore

logger = logging.getLogger(__name__)


class AgeStatsService:
    def __init__(
        self,
        store: CiphertextStore,
        evaluation_key: EvaluationKey,
        thresholds: Iterable[int],
        mode: str = "recompute",
    ) -> None:
        if mode not in STATS_MODES:
            raise ValueError(f"unknown stats mode {mode!r}; expected one of {STATS_MODES}")
        self.store = store
        self.key = evaluation_key
        self.thresholds = validate_thresholds(thresholds, evaluation_key.params)
        self.mode = mode
        self.codec = CiphertextCodec(evaluation_key)
        self.engine = EvaluationEngine(evaluation_key, self.codec)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(self, encrypted_age: str, user_id: Optional[str] = None) -> SubmitOutcome:
        """
        Validate the ciphertext's shape under the active key and store it verbatim.
        The age itself cannot be validated: it is encrypted.
        """
        try:
            ct = self.codec.decode(encrypted_age, CiphertextKind.AGE)
        except MalformedCiphertext as e:
            logger.warning("Rejected submission: %s", e)
            return Rejected(str(e), error="malformed_ciphertext")

        user_id = user_id or uuid.uuid4().hex
        update = None
        if self.mode == "incremental":
            def update(current: Aggregates) -> Aggregates:
                return self._fold_record(ct, current)

        try:
            self.store.insert_with_aggregates(user_id, encrypted_age, update)
        except DuplicateRecord as e:
            logger.warning("Rejected submission: %s", e)
            return Rejected(str(e), error="duplicate_user")
        except AggregateOverflow as e:
            logger.error("Rejected submission: %s", e)
            return Rejected(str(e), error="population_ceiling")

        logger.info("Stored encrypted age for user %s", user_id)
        return Accepted(user_id)

    def _fold_record(self, ct, current: Aggregates) -> Aggregates:
        updated: Aggregates = {}
        for t in self.thresholds:
            indicator = self.key.less_than(ct, t)
            previous = current.get(t)
            if previous is None:
                updated[t] = (self.codec.encode(indicator), 1)
                continue
            encoded_sum, covered = previous
            if covered + 1 > self.key.params.max_aggregate:
                raise AggregateOverflow(
                    f"threshold {t} already covers {covered} records "
                    f"(ceiling {self.key.params.max_aggregate})"
                )
            running = self.codec.decode(encoded_sum, CiphertextKind.COUNT)
            updated[t] = (self.codec.encode(self.key.add(running, indicator)), covered + 1)
        return updated

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------
    def get_stats(self, deadline: Optional[float] = None) -> AggregateResult:
        """
        Encrypted per-threshold counts. Thresholds come from policy, never from
        the request.
        """
        if self.mode == "incremental":
            return self._stats_from_aggregates()

        total, rows = self.store.snapshot()
        report = self.engine.evaluate(rows, self.thresholds, deadline)
        return AggregateResult(
            total_users=total,
            per_threshold=report.per_threshold,
            skipped_records=len(report.skipped),
        )

    def _stats_from_aggregates(self) -> AggregateResult:
        total, aggregates = self.store.aggregates()
        per_threshold: Dict[int, ThresholdResult] = {}
        for t in self.thresholds:
            entry = aggregates.get(t)
            if total == 0:
                per_threshold[t] = ThresholdResult.empty("no records submitted")
            elif entry is None or entry[1] != total:
                per_threshold[t] = ThresholdResult.failed(
                    "running aggregate does not cover all records; rebuild required"
                )
            else:
                per_threshold[t] = ThresholdResult.ok(entry[0])
        return AggregateResult(total_users=total, per_threshold=per_threshold)

    def rebuild_aggregates(self) -> Aggregates:
        """
        Recompute the running sums from every stored row, e.g. after a policy
        change to the threshold set. Malformed rows are skipped but counted as
        covered, so they do not leave the aggregate permanently stale.
        """
        def compute(rows: List[Tuple[str, str]]) -> Aggregates:
            decoded, skipped = self.engine.decode_all(rows)
            fresh: Aggregates = {}
            for t in self.thresholds:
                try:
                    total = self.engine.count_below(decoded, t)
                except EmptyAggregate:
                    continue
                fresh[t] = (self.codec.encode(total), len(rows))
            return fresh

        start = time.time()
        fresh = self.store.rebuild_aggregates(compute)
        logger.info("Rebuilt %d running aggregate(s) in %.3fs", len(fresh), time.time() - start)
        return fresh
