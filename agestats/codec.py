"""
codec.py

Canonical wire form for ciphertexts: base64( header || tenseal_bytes ).

Header (network byte order, 14 bytes):
    3s  magic      b"AGS"
    B   version    1
    B   kind       CiphertextKind (0 = age, 1 = count)
    B   width_bits encoding width of the age domain
    8s  key tag    sha256(scheme params, key id)[:8]

The header pins the parameter set and key pair, so a ciphertext produced under
stale keys or other parameters is rejected at decode time instead of
silently evaluating to garbage.
"""

from __future__ import annotations

import base64
import binascii
import struct

from agestats.errors import MalformedCiphertext
from agestats.he import Ciphertext, CiphertextKind, expected_size

MAGIC = b"AGS"
VERSION = 1
HEADER = struct.Struct("!3sBBB8s")


class CiphertextCodec:
    """Encode/decode ciphertexts against one key (either role)."""

    def __init__(self, key) -> None:
        self.key = key

    def encode(self, ct: Ciphertext) -> str:
        header = HEADER.pack(MAGIC, VERSION, int(ct.kind), self.key.params.width_bits, self.key.tag)
        return base64.b64encode(header + ct.vector.serialize()).decode("ascii")

    def decode(self, text: str, kind: CiphertextKind = CiphertextKind.AGE) -> Ciphertext:
        if not isinstance(text, str) or not text:
            raise MalformedCiphertext("ciphertext must be a non-empty base64 string")
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedCiphertext("ciphertext is not valid base64") from e

        if len(raw) <= HEADER.size:
            raise MalformedCiphertext(f"ciphertext truncated ({len(raw)} bytes)")

        magic, version, found_kind, width_bits, tag = HEADER.unpack_from(raw)
        if magic != MAGIC:
            raise MalformedCiphertext("bad ciphertext magic")
        if version != VERSION:
            raise MalformedCiphertext(f"unsupported ciphertext version {version}")
        if found_kind != int(kind):
            raise MalformedCiphertext(f"expected a {kind.name} ciphertext, got kind {found_kind}")
        if width_bits != self.key.params.width_bits:
            raise MalformedCiphertext(
                f"ciphertext width {width_bits} bits does not match {self.key.params.width_bits}"
            )
        if tag != self.key.tag:
            raise MalformedCiphertext("ciphertext was produced under a different key pair or parameter set")

        try:
            vector = self.key.load_vector(raw[HEADER.size:])
        except Exception as e:  # protobuf / SEAL raise a variety of types on bad bytes
            raise MalformedCiphertext("ciphertext body could not be deserialized") from e

        size = vector.size()
        if size != expected_size(kind, self.key.params):
            raise MalformedCiphertext(
                f"ciphertext holds {size} slots, expected {expected_size(kind, self.key.params)}"
            )
        return Ciphertext(vector, kind)
