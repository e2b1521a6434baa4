# tests/test_keys.py
import base64
import json
import os

import pytest
import tenseal as ts

from agestats.config import SchemeParams
from agestats.errors import KeyLoadError, StorageError
from agestats.he import EvaluationKey, SecretKey
from agestats.keys import BUNDLE_FORMAT, ROLE_EVALUATION, ROLE_SECRET, KeyManager


def _record(path):
    return json.loads(path.read_text())


def test_bundles_written_with_roles(key_manager):
    eval_record = _record(key_manager.evaluation_path)
    secret_record = _record(key_manager.secret_path)
    assert eval_record["format"] == secret_record["format"] == BUNDLE_FORMAT
    assert eval_record["role"] == ROLE_EVALUATION
    assert secret_record["role"] == ROLE_SECRET
    assert eval_record["key_id"] == secret_record["key_id"]


def test_evaluation_bundle_has_no_secret_key(key_manager, evaluation_key):
    assert isinstance(evaluation_key, EvaluationKey)
    assert not evaluation_key.context.is_private()
    raw = base64.b64decode(_record(key_manager.evaluation_path)["context"])
    assert not ts.context_from(raw).is_private()


def test_secret_bundle_loads_private_context(secret_key):
    assert isinstance(secret_key, SecretKey)
    assert secret_key.context.is_private()


def test_missing_bundle(tmp_path):
    manager = KeyManager.in_directory(tmp_path)
    with pytest.raises(KeyLoadError):
        manager.load_for_evaluation()
    with pytest.raises(KeyLoadError):
        manager.load_for_decryption()


def test_decryption_needs_secret_path(key_manager):
    with pytest.raises(KeyLoadError):
        KeyManager(key_manager.evaluation_path).load_for_decryption()


def test_generation_needs_secret_path(tmp_path):
    with pytest.raises(StorageError):
        KeyManager(tmp_path / "evaluation.key").generate_and_persist()


def test_corrupt_bundle(tmp_path):
    path = tmp_path / "evaluation.key"
    path.write_bytes(b"\x00\x01 definitely not json")
    with pytest.raises(KeyLoadError):
        KeyManager(path).load_for_evaluation()


def test_bundle_with_unloadable_context(key_manager, tmp_path):
    record = _record(key_manager.evaluation_path)
    record["context"] = "AAAA"
    path = tmp_path / "evaluation.key"
    path.write_text(json.dumps(record))
    with pytest.raises(KeyLoadError):
        KeyManager(path).load_for_evaluation()


def test_role_mismatch(key_manager):
    swapped = KeyManager(key_manager.secret_path, key_manager.evaluation_path)
    with pytest.raises(KeyLoadError):
        swapped.load_for_evaluation()
    with pytest.raises(KeyLoadError):
        swapped.load_for_decryption()


def test_evaluation_bundle_carrying_secret_key_is_refused(key_manager, secret_key, tmp_path):
    record = _record(key_manager.evaluation_path)
    record["context"] = base64.b64encode(secret_key.context.serialize(save_secret_key=True)).decode("ascii")
    path = tmp_path / "evaluation.key"
    path.write_text(json.dumps(record))
    with pytest.raises(KeyLoadError):
        KeyManager(path).load_for_evaluation()


def test_scheme_mismatch(key_manager):
    other = KeyManager(key_manager.evaluation_path, key_manager.secret_path, SchemeParams(width_bits=7))
    with pytest.raises(KeyLoadError):
        other.load_for_evaluation()


def test_tampered_key_id(key_manager, tmp_path):
    record = _record(key_manager.evaluation_path)
    record["key_id"] = "0" * 32
    path = tmp_path / "evaluation.key"
    path.write_text(json.dumps(record))
    with pytest.raises(KeyLoadError):
        KeyManager(path).load_for_evaluation()


def test_regeneration_is_explicit(tmp_path):
    manager = KeyManager.in_directory(tmp_path)
    first = manager.generate_and_persist()

    with pytest.raises(StorageError):
        manager.generate_and_persist()
    assert manager.load_for_evaluation().key_id == first.key_id

    second = manager.generate_and_persist(overwrite=True)
    assert second.key_id != first.key_id
    assert manager.load_for_evaluation().key_id == second.key_id
    assert manager.load_for_decryption().key_id == second.key_id
    assert sorted(p.name for p in tmp_path.iterdir()) == ["evaluation.key", "secret.key"]


def test_bundle_context_is_tenseal_context(key_manager):
    raw = base64.b64decode(_record(key_manager.secret_path)["context"])
    assert ts.context_from(raw).is_private()


def test_persisted_secret_bundle_decrypts(key_manager, evaluation_key, to_server, reveal):
    reloaded = KeyManager(key_manager.evaluation_path, key_manager.secret_path).load_for_decryption()
    assert reloaded.context.is_private()
    assert reloaded.decrypt(reloaded.encrypt(42)) == 42
    assert reveal(evaluation_key.less_than(to_server(reloaded.encrypt(20)), 25)) == 1


def _fail_second_replace(monkeypatch):
    real_replace = os.replace
    calls = []

    def flaky_replace(src, dst):
        calls.append(dst)
        if len(calls) == 2:
            raise OSError("disk full")
        return real_replace(src, dst)

    monkeypatch.setattr(os, "replace", flaky_replace)


def test_failed_overwrite_keeps_the_old_pair(tmp_path, monkeypatch):
    manager = KeyManager.in_directory(tmp_path)
    old = manager.generate_and_persist()

    _fail_second_replace(monkeypatch)
    with pytest.raises(StorageError):
        manager.generate_and_persist(overwrite=True)
    monkeypatch.undo()

    assert manager.load_for_evaluation().key_id == old.key_id
    assert manager.load_for_decryption().key_id == old.key_id
    assert sorted(p.name for p in tmp_path.iterdir()) == ["evaluation.key", "secret.key"]


def test_failed_first_generation_leaves_nothing(tmp_path, monkeypatch):
    manager = KeyManager.in_directory(tmp_path)

    _fail_second_replace(monkeypatch)
    with pytest.raises(StorageError):
        manager.generate_and_persist()
    monkeypatch.undo()

    assert list(tmp_path.iterdir()) == []
