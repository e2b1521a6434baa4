# tests/test_engine.py
import time
from types import SimpleNamespace

import pytest

from agestats.config import SchemeParams
from agestats.engine import EvaluationEngine
from agestats.errors import AggregateOverflow, EmptyAggregate, EvaluationTimeout
from agestats.he import CiphertextKind
from agestats.protocol import STATUS_EMPTY, STATUS_FAILED, STATUS_OK


@pytest.fixture
def engine(evaluation_key):
    return EvaluationEngine(evaluation_key)


def _count(client_codec, secret_key, encoded):
    return secret_key.decrypt(client_codec.decode(encoded, CiphertextKind.COUNT))


def test_counts_below_each_threshold(engine, encrypt_encoded, client_codec, secret_key):
    records = [encrypt_encoded(age) for age in (20, 30, 40)]
    report = engine.evaluate(records, [25, 35])

    assert report.evaluated == 3
    assert report.skipped == []
    assert report.per_threshold[25].status == STATUS_OK
    assert _count(client_codec, secret_key, report.per_threshold[25].encrypted) == 1
    assert _count(client_codec, secret_key, report.per_threshold[35].encrypted) == 2


def test_zero_matches_is_an_encrypted_zero(engine, encrypt_encoded, client_codec, secret_key):
    report = engine.evaluate([encrypt_encoded(70), encrypt_encoded(80)], [18])
    result = report.per_threshold[18]
    assert result.status == STATUS_OK
    assert _count(client_codec, secret_key, result.encrypted) == 0


def test_boundary_ages(engine, encrypt_encoded, client_codec, secret_key):
    report = engine.evaluate([encrypt_encoded(a) for a in (0, 25, 255)], [1, 25, 26, 256])
    counts = {t: _count(client_codec, secret_key, r.encrypted) for t, r in report.per_threshold.items()}
    assert counts == {1: 1, 25: 1, 26: 2, 256: 3}


def test_malformed_record_is_skipped(engine, encrypt_encoded, client_codec, secret_key):
    records = [
        ("alice", encrypt_encoded(20)),
        ("mallory", "AGSbroken"),
        ("bob", encrypt_encoded(30)),
    ]
    report = engine.evaluate(records, [25, 35])
    assert report.skipped == ["mallory"]
    assert report.evaluated == 2
    assert _count(client_codec, secret_key, report.per_threshold[25].encrypted) == 1
    assert _count(client_codec, secret_key, report.per_threshold[35].encrypted) == 2


def test_empty_input_is_not_an_encrypted_zero(engine):
    report = engine.evaluate([], [25])
    assert report.per_threshold[25].status == STATUS_EMPTY
    assert report.per_threshold[25].encrypted is None


def test_all_records_malformed(engine):
    report = engine.evaluate(["junk", "more junk"], [25])
    assert report.skipped == ["#0", "#1"]
    assert report.per_threshold[25].status == STATUS_EMPTY


def test_reduce_sum_of_nothing(engine):
    with pytest.raises(EmptyAggregate):
        engine.reduce_sum([])


def test_reduce_sum_single_element_is_identity(engine, secret_key, to_server, reveal):
    ct = to_server(secret_key.encrypt_count(5))
    assert reveal(engine.reduce_sum([ct])) == 5


def test_reduce_sum_adds_left_to_right(engine, secret_key, to_server, reveal):
    cts = [to_server(secret_key.encrypt_count(v)) for v in (1, 2, 3, 4)]
    assert reveal(engine.reduce_sum(cts)) == 10


def test_expired_deadline_aborts(engine, encrypt_encoded):
    with pytest.raises(EvaluationTimeout):
        engine.evaluate([encrypt_encoded(20)], [25], deadline=time.monotonic() - 1)


def test_population_ceiling():
    # plain_modulus 5 -> at most 2 records can be summed without wrap-around
    key = SimpleNamespace(params=SchemeParams(plain_modulus=5), less_than=lambda ct, t: ct)
    codec = SimpleNamespace(decode=lambda text, kind: text, encode=lambda ct: ct)
    small = EvaluationEngine(key, codec)

    with pytest.raises(AggregateOverflow):
        small.reduce_sum(["a", "b", "c"])
    with pytest.raises(AggregateOverflow):
        small.count_below(["a", "b", "c"], 25)

    report = small.evaluate(["a", "b", "c"], [25])
    assert report.per_threshold[25].status == STATUS_FAILED
    assert "ceiling" in report.per_threshold[25].detail
