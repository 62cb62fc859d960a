"""
In-memory block map: an insertion-ordered CID -> bytes collection.

This is the simplest block source for export: callers gather the blocks
they want to ship and hand ``entries()`` to the archive encoder.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from atrepo.cid import DAG_CBOR, Cid


@dataclass(frozen=True)
class Block:
    """A content-addressed block. Unpacks as ``cid, data``."""

    cid: Cid
    data: bytes

    def __iter__(self) -> Iterator:
        yield self.cid
        yield self.data


class BlockMap:
    """Ordered map of blocks keyed by CID.

    Usage:
        blocks = BlockMap()
        cid = blocks.add(b"...")
        car = encode(cid, blocks.entries())
    """

    def __init__(self) -> None:
        self._blocks: dict[Cid, bytes] = {}

    def add(self, data: bytes, codec: int = DAG_CBOR) -> Cid:
        """Hash and store ``data``. Returns its CID."""
        cid = Cid.for_block(data, codec)
        self._blocks[cid] = bytes(data)
        return cid

    def set(self, cid: Cid, data: bytes) -> None:
        """Store ``data`` under a caller-computed CID (not re-hashed)."""
        self._blocks[cid] = bytes(data)

    def get(self, cid: Cid) -> bytes | None:
        return self._blocks.get(cid)

    def has(self, cid: Cid) -> bool:
        return cid in self._blocks

    def delete(self, cid: Cid) -> None:
        self._blocks.pop(cid, None)

    def cids(self) -> list[Cid]:
        return list(self._blocks)

    def entries(self) -> list[Block]:
        return [Block(cid, data) for cid, data in self._blocks.items()]

    def add_map(self, other: BlockMap) -> None:
        for block in other.entries():
            self.set(block.cid, block.data)

    @property
    def byte_size(self) -> int:
        return sum(len(data) for data in self._blocks.values())

    def __len__(self) -> int:
        return len(self._blocks)

    def __contains__(self, cid: object) -> bool:
        return cid in self._blocks

    def __iter__(self) -> Iterator[Block]:
        return iter(self.entries())
