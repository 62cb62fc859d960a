"""
Content identifiers (CIDv1) for repository blocks.

Binary form:
    <varint version=1> <varint codec> <varint hash-code> <varint digest-len> <digest>

Text form:
    "b" + base32 (RFC 4648, lowercase, unpadded) of the binary form

Only CIDv1 with sha2-256 digests is produced; any multihash code is
carried through when decoding so foreign blocks round-trip unchanged.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
from dataclasses import dataclass

from atrepo.varint import VarintError, decode_varint, encode_varint

# Multicodec codes
RAW = 0x55
DAG_CBOR = 0x71

# Multihash codes
SHA2_256 = 0x12
SHA2_256_SIZE = 32

_BASE32_PREFIX = "b"
_CID_TEXT_RE = re.compile(r"^b[a-z2-7]{8,}$")
_MAX_DIGEST_SIZE = 128


class CidError(ValueError):
    """Malformed or unsupported content identifier."""


@dataclass(frozen=True)
class Cid:
    """A self-describing hash of a block's bytes.

    Usage:
        cid = Cid.for_block(b"hello", codec=RAW)
        str(cid)                 # "bafkrei..."
        Cid.parse(str(cid)) == cid
        bytes(cid)               # canonical binary form
    """

    version: int
    codec: int
    digest_code: int
    digest: bytes

    def __post_init__(self) -> None:
        if self.version != 1:
            raise CidError(f"Unsupported CID version: {self.version}")
        if len(self.digest) > _MAX_DIGEST_SIZE:
            raise CidError(f"Digest too long: {len(self.digest)} bytes")

    @classmethod
    def for_block(cls, data: bytes, codec: int = DAG_CBOR) -> Cid:
        """sha2-256 CIDv1 of ``data``."""
        return cls(1, codec, SHA2_256, hashlib.sha256(data).digest())

    @classmethod
    def read(cls, data: bytes, offset: int = 0) -> tuple[Cid, int]:
        """Decode a CID at ``offset`` of a larger buffer. Returns (cid, next_offset)."""
        try:
            version, pos = decode_varint(data, offset)
            if version != 1:
                raise CidError(f"Unsupported CID version: {version}")
            codec, pos = decode_varint(data, pos)
            digest_code, pos = decode_varint(data, pos)
            size, pos = decode_varint(data, pos)
        except VarintError as e:
            raise CidError(f"Malformed CID: {e}") from e
        if size > _MAX_DIGEST_SIZE or pos + size > len(data):
            raise CidError(f"Truncated CID digest: need {size} bytes at offset {pos}")
        return cls(version, codec, digest_code, bytes(data[pos:pos + size])), pos + size

    @classmethod
    def decode(cls, data: bytes) -> Cid:
        """Decode a CID from exactly its binary form."""
        cid, end = cls.read(data)
        if end != len(data):
            raise CidError(f"Trailing bytes after CID: {len(data) - end}")
        return cid

    @classmethod
    def parse(cls, text: str) -> Cid:
        """Parse the base32 multibase text form."""
        if not isinstance(text, str) or not _CID_TEXT_RE.match(text):
            raise CidError(f"Invalid CID string: {text!r}")
        body = text[len(_BASE32_PREFIX):].upper()
        body += "=" * (-len(body) % 8)
        try:
            raw = base64.b32decode(body)
        except ValueError as e:
            raise CidError(f"Invalid CID string: {text!r}") from e
        return cls.decode(raw)

    def to_bytes(self) -> bytes:
        return (
            encode_varint(self.version)
            + encode_varint(self.codec)
            + encode_varint(self.digest_code)
            + encode_varint(len(self.digest))
            + self.digest
        )

    def verify(self, data: bytes) -> bool:
        """Check that ``data`` hashes to this CID. Only sha2-256 is recognised."""
        if self.digest_code != SHA2_256:
            return False
        return hmac.compare_digest(hashlib.sha256(data).digest(), self.digest)

    def __bytes__(self) -> bytes:
        return self.to_bytes()

    def __str__(self) -> str:
        encoded = base64.b32encode(self.to_bytes()).decode("ascii")
        return _BASE32_PREFIX + encoded.lower().rstrip("=")
