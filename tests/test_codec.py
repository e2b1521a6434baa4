# tests/test_codec.py
import base64

import pytest

from agestats.codec import HEADER, MAGIC, VERSION
from agestats.errors import MalformedCiphertext
from agestats.he import Ciphertext, CiphertextKind


def _split(encoded):
    raw = base64.b64decode(encoded)
    return raw[:HEADER.size], raw[HEADER.size:]


def _rebuild(header_fields, body):
    return base64.b64encode(HEADER.pack(*header_fields) + body).decode("ascii")


def test_client_ciphertext_decodes_on_server(secret_key, server_codec, encrypt_encoded):
    ct = server_codec.decode(encrypt_encoded(42))
    assert ct.kind == CiphertextKind.AGE
    assert ct.size() == 256


def test_header_layout(secret_key, encrypt_encoded):
    header, body = _split(encrypt_encoded(42))
    magic, version, kind, width, tag = HEADER.unpack(header)
    assert magic == MAGIC
    assert version == VERSION
    assert kind == CiphertextKind.AGE
    assert width == 8
    assert tag == secret_key.tag
    assert body


@pytest.mark.parametrize("text", ["", "not base64!!", "@@@@"])
def test_rejects_invalid_base64(server_codec, text):
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(text)


def test_rejects_non_string(server_codec):
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(b"AGS")


def test_rejects_truncated_input(server_codec, encrypt_encoded):
    header, _ = _split(encrypt_encoded(42))
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(base64.b64encode(header).decode("ascii"))
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(base64.b64encode(header[:5]).decode("ascii"))


def test_rejects_wrong_magic_and_version(secret_key, server_codec, encrypt_encoded):
    _, body = _split(encrypt_encoded(42))
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(_rebuild((b"XYZ", VERSION, 0, 8, secret_key.tag), body))
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(_rebuild((MAGIC, VERSION + 1, 0, 8, secret_key.tag), body))


def test_rejects_wrong_kind(server_codec, encrypt_encoded):
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(encrypt_encoded(42), CiphertextKind.COUNT)


def test_rejects_other_width(secret_key, server_codec, encrypt_encoded):
    _, body = _split(encrypt_encoded(42))
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(_rebuild((MAGIC, VERSION, 0, 16, secret_key.tag), body))


def test_rejects_ciphertext_from_another_key_pair(server_codec, encrypt_encoded):
    _, body = _split(encrypt_encoded(42))
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(_rebuild((MAGIC, VERSION, 0, 8, b"\x00" * 8), body))


def test_rejects_corrupted_body(secret_key, server_codec):
    garbage = b"\x13\x37" * 64
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(_rebuild((MAGIC, VERSION, 0, 8, secret_key.tag), garbage))


def test_rejects_wrong_slot_count(secret_key, client_codec, server_codec):
    # a single-slot vector dressed up as an age
    fake_age = Ciphertext(secret_key.encrypt_count(1).vector, CiphertextKind.AGE)
    with pytest.raises(MalformedCiphertext):
        server_codec.decode(client_codec.encode(fake_age))


def test_count_roundtrip_through_codec(secret_key, client_codec, server_codec):
    encoded = client_codec.encode(secret_key.encrypt_count(9))
    ct = server_codec.decode(encoded, CiphertextKind.COUNT)
    assert secret_key.decrypt(client_codec.decode(server_codec.encode(ct), CiphertextKind.COUNT)) == 9
