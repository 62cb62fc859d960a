"""
CAR (Content Addressable aRchive) Format v1.

Layout:
    <varint len> <DAG-CBOR header {"roots": [CID...], "version": 1}>
    <varint len> <CID bytes><block bytes>          <- repeated per block
    ...

CIDs inside DAG-CBOR are CBOR tag 42 over a byte string of
0x00 (identity multibase prefix) + binary CID.

Header keys are emitted in DAG-CBOR canonical order (length first, then
bytewise), so "roots" precedes "version".
"""

from __future__ import annotations

from typing import Any

import cbor2

from atrepo import CAR_VERSION
from atrepo.cid import Cid, CidError

# DAG-CBOR tag for embedded CIDs
CID_CBOR_TAG = 42
_CID_MULTIBASE_IDENTITY = b"\x00"

SUPPORTED_CAR_VERSIONS = frozenset({CAR_VERSION})


class CarError(Exception):
    """Error producing or consuming a CAR archive."""


class BlockReadError(CarError):
    """The block source failed to produce bytes for a declared entry."""


class WriteError(CarError):
    """The output sink failed while writing archive bytes."""


class CarDecodeError(CarError, ValueError):
    """Archive bytes are not a well-formed CAR v1 stream."""


def encode_cid_tag(cid: Cid) -> cbor2.CBORTag:
    return cbor2.CBORTag(CID_CBOR_TAG, _CID_MULTIBASE_IDENTITY + bytes(cid))


def decode_cid_tag(value: Any) -> Cid:
    if not isinstance(value, cbor2.CBORTag) or value.tag != CID_CBOR_TAG:
        raise CarDecodeError(f"Expected CID (tag {CID_CBOR_TAG}), got {value!r}")
    raw = value.value
    if not isinstance(raw, bytes) or not raw.startswith(_CID_MULTIBASE_IDENTITY):
        raise CarDecodeError("CID tag must wrap 0x00-prefixed bytes")
    try:
        return Cid.decode(raw[1:])
    except CidError as e:
        raise CarDecodeError(f"Invalid root CID: {e}") from e


def encode_header(roots: list[Cid], version: int = CAR_VERSION) -> bytes:
    """DAG-CBOR encode the archive header (without its length prefix)."""
    header = {
        "version": version,
        "roots": [encode_cid_tag(root) for root in roots],
    }
    return cbor2.dumps(header, canonical=True)


def decode_header(data: bytes) -> tuple[int, list[Cid]]:
    """Decode a header payload. Returns (version, roots)."""
    try:
        header = cbor2.loads(data)
    except cbor2.CBORDecodeError as e:
        raise CarDecodeError(f"Invalid CAR header: {e}") from e

    if not isinstance(header, dict):
        raise CarDecodeError("CAR header must be a map")
    version = header.get("version")
    if type(version) is not int or version not in SUPPORTED_CAR_VERSIONS:
        raise CarDecodeError(f"Unsupported CAR version: {version!r}")
    roots = header.get("roots")
    if not isinstance(roots, list):
        raise CarDecodeError("CAR header roots must be a list")
    return version, [decode_cid_tag(root) for root in roots]
