# tests/conftest.py
import pytest

from agestats.codec import CiphertextCodec
from agestats.keys import KeyManager


@pytest.fixture(scope="session")
def key_manager(tmp_path_factory):
    manager = KeyManager.in_directory(tmp_path_factory.mktemp("keys"))
    manager.generate_and_persist()
    return manager


@pytest.fixture(scope="session")
def evaluation_key(key_manager):
    return key_manager.load_for_evaluation()


@pytest.fixture(scope="session")
def secret_key(key_manager):
    return key_manager.load_for_decryption()


@pytest.fixture(scope="session")
def server_codec(evaluation_key):
    return CiphertextCodec(evaluation_key)


@pytest.fixture(scope="session")
def client_codec(secret_key):
    return CiphertextCodec(secret_key)


@pytest.fixture(scope="session")
def encrypt_encoded(secret_key, client_codec):
    """age -> wire string, as a client would submit it."""
    def _encrypt(age):
        return client_codec.encode(secret_key.encrypt(age))
    return _encrypt


@pytest.fixture(scope="session")
def to_server(server_codec, client_codec):
    """Move a client-side ciphertext onto the evaluation key."""
    def _move(ct):
        return server_codec.decode(client_codec.encode(ct), ct.kind)
    return _move


@pytest.fixture(scope="session")
def reveal(secret_key, server_codec, client_codec):
    """Decrypt a server-side ciphertext the way the client would."""
    def _reveal(ct):
        return secret_key.decrypt(client_codec.decode(server_codec.encode(ct), ct.kind))
    return _reveal
