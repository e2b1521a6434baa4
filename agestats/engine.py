"""
engine.py

Encrypted threshold counting over stored ciphertexts, entirely under the
evaluation key.

Workflow (per stats request):
    1) decode_all(records)              -> decoded AGE ciphertexts (bad ones skipped)
    2) less_than(ct, t) for every ct    -> encrypted 0/1 indicators
    3) reduce_sum(indicators)           -> one encrypted count per threshold
    4) codec.encode(count)              -> wire strings

Control flow depends only on record counts and decode failures, never on
encrypted comparison outcomes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from agestats.codec import CiphertextCodec
from agestats.errors import (
    AggregateOverflow,
    EmptyAggregate,
    EvaluationTimeout,
    MalformedCiphertext,
)
from agestats.he import Ciphertext, CiphertextKind, EvaluationKey
from agestats.protocol import ThresholdResult

logger = logging.getLogger(__name__)

Record = Union[str, Tuple[str, str]]


@dataclass
class EvaluationReport:
    """Per-threshold results plus which records were left out."""
    per_threshold: Dict[int, ThresholdResult] = field(default_factory=dict)
    evaluated: int = 0
    skipped: List[str] = field(default_factory=list)
    elapsed_s: float = 0.0


def _check_deadline(deadline: Optional[float]) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise EvaluationTimeout("homomorphic evaluation exceeded its deadline")


class EvaluationEngine:
    def __init__(self, evaluation_key: EvaluationKey, codec: Optional[CiphertextCodec] = None) -> None:
        self.key = evaluation_key
        self.codec = codec if codec is not None else CiphertextCodec(evaluation_key)

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------
    def decode_all(
        self,
        records: Iterable[Record],
        deadline: Optional[float] = None,
    ) -> Tuple[List[Ciphertext], List[str]]:
        """
        Decode stored ciphertexts. A malformed record is logged and skipped so
        one corrupted row cannot block statistics for everyone else.
        """
        decoded: List[Ciphertext] = []
        skipped: List[str] = []
        for idx, record in enumerate(records):
            _check_deadline(deadline)
            if isinstance(record, str):
                label, encoded = f"#{idx}", record
            else:
                label, encoded = record
            try:
                decoded.append(self.codec.decode(encoded, CiphertextKind.AGE))
            except MalformedCiphertext as e:
                logger.warning("Skipping record %s: %s", label, e)
                skipped.append(label)
        return decoded, skipped

    def reduce_sum(
        self,
        ciphertexts: Sequence[Ciphertext],
        deadline: Optional[float] = None,
    ) -> Ciphertext:
        """
        Left-to-right encrypted sum.

        An empty input is an error, never an encrypted zero: the evaluator could
        not tell "no data" from "zero matches" otherwise.
        """
        if not ciphertexts:
            raise EmptyAggregate("cannot sum an empty set of ciphertexts")
        if len(ciphertexts) > self.key.params.max_aggregate:
            raise AggregateOverflow(
                f"{len(ciphertexts)} summands exceed the population ceiling "
                f"of {self.key.params.max_aggregate}"
            )

        acc = ciphertexts[0]
        for ct in ciphertexts[1:]:
            _check_deadline(deadline)
            acc = self.key.add(acc, ct)
        return acc

    def indicators(
        self,
        ciphertexts: Sequence[Ciphertext],
        threshold: int,
        deadline: Optional[float] = None,
    ) -> List[Ciphertext]:
        """Encrypted [age < threshold] for every ciphertext, in input order."""
        out: List[Ciphertext] = []
        for ct in ciphertexts:
            _check_deadline(deadline)
            out.append(self.key.less_than(ct, threshold))
        return out

    def count_below(
        self,
        ciphertexts: Sequence[Ciphertext],
        threshold: int,
        deadline: Optional[float] = None,
    ) -> Ciphertext:
        """Encrypted number of ciphertexts whose hidden age is below `threshold`."""
        if not ciphertexts:
            raise EmptyAggregate(f"no valid records for threshold {threshold}")
        return self.reduce_sum(self.indicators(ciphertexts, threshold, deadline), deadline)

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------
    def evaluate(
        self,
        records: Iterable[Record],
        thresholds: Iterable[int],
        deadline: Optional[float] = None,
    ) -> EvaluationReport:
        """
        Run decode -> compare -> sum -> encode for every threshold.

        EmptyAggregate and AggregateOverflow are captured per threshold as
        "empty" / "failed" results; EvaluationTimeout aborts the whole request.
        """
        start = time.time()
        decoded, skipped = self.decode_all(records, deadline)
        report = EvaluationReport(evaluated=len(decoded), skipped=skipped)

        for threshold in thresholds:
            try:
                total = self.count_below(decoded, threshold, deadline)
            except EmptyAggregate as e:
                report.per_threshold[threshold] = ThresholdResult.empty(str(e))
            except AggregateOverflow as e:
                logger.error("Threshold %s aggregate not computed: %s", threshold, e)
                report.per_threshold[threshold] = ThresholdResult.failed(str(e))
            else:
                report.per_threshold[threshold] = ThresholdResult.ok(self.codec.encode(total))

        report.elapsed_s = time.time() - start
        logger.info(
            "Evaluated %d record(s) x %d threshold(s) in %.3fs (%d skipped)",
            report.evaluated, len(report.per_threshold), report.elapsed_s, len(skipped),
        )
        return report
