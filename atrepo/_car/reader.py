"""
Reader: parser for CAR v1 archives.

Security features:
  - Header and record size limits (prevents OOM from crafted length prefixes)
  - Strict framing: truncated records and trailing garbage are rejected
  - Optional digest verification of every block against its CID
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

from atrepo import CAR_MAX_HEADER_SIZE, CAR_MAX_RECORD_SIZE
from atrepo._car.spec import CarDecodeError, decode_header
from atrepo.cid import Cid, CidError
from atrepo.varint import VarintError, decode_varint


@dataclass
class CarFile:
    """A fully decoded archive."""

    version: int
    roots: list[Cid]
    blocks: list[tuple[Cid, bytes]] = field(default_factory=list)

    def verify(self) -> list[Cid]:
        """Return the CIDs whose bytes do not hash to the CID. Empty means intact."""
        return [cid for cid, data in self.blocks if not cid.verify(data)]


class CarReader:
    """
    CAR v1 parser.

    Usage:
        car = CarReader.parse(data)
        car.roots, car.blocks

        for cid, data in CarReader.iter_blocks(data):
            ...
    """

    @staticmethod
    def _read_record(data: bytes, offset: int, limit: int) -> tuple[bytes, int]:
        try:
            length, pos = decode_varint(data, offset)
        except VarintError as e:
            raise CarDecodeError(f"Bad record length at offset {offset}: {e}") from e
        if length > limit:
            raise CarDecodeError(
                f"Record length {length} at offset {offset} exceeds max {limit}"
            )
        end = pos + length
        if end > len(data):
            raise CarDecodeError(
                f"Truncated record at offset {offset}: expected {length} bytes, "
                f"got {len(data) - pos}"
            )
        return data[pos:end], end

    @classmethod
    def read_header(cls, data: bytes) -> tuple[int, list[Cid], int]:
        """Decode the header record. Returns (version, roots, offset of first block)."""
        if not data:
            raise CarDecodeError("Empty CAR input")
        payload, offset = cls._read_record(data, 0, CAR_MAX_HEADER_SIZE)
        version, roots = decode_header(payload)
        return version, roots, offset

    @classmethod
    def iter_blocks(
        cls, data: bytes, max_record_size: int = CAR_MAX_RECORD_SIZE,
    ) -> Iterator[tuple[Cid, bytes]]:
        """Yield (cid, bytes) block records in archive order."""
        _version, _roots, offset = cls.read_header(data)
        while offset < len(data):
            record, next_offset = cls._read_record(data, offset, max_record_size)
            try:
                cid, split = Cid.read(record)
            except CidError as e:
                raise CarDecodeError(f"Bad block CID at offset {offset}: {e}") from e
            yield cid, record[split:]
            offset = next_offset

    @classmethod
    def parse(cls, data: bytes, max_record_size: int = CAR_MAX_RECORD_SIZE) -> CarFile:
        """Decode a complete archive."""
        version, roots, _offset = cls.read_header(data)
        return CarFile(
            version=version,
            roots=roots,
            blocks=list(cls.iter_blocks(data, max_record_size)),
        )
