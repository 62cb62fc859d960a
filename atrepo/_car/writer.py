"""
Writer: streams a CAR v1 archive into a byte sink.

Emission order:
  1. Header record (written on the first block, or on finish() if no blocks)
  2. One record per write() call, in call order

Nothing is sorted, deduplicated, or hash-checked here; the caller vouches
for every (CID, bytes) pair it supplies.
"""

from __future__ import annotations

import io
import logging
from typing import BinaryIO

from atrepo._car.spec import WriteError, encode_header
from atrepo.cid import Cid
from atrepo.varint import encode_varint

log = logging.getLogger(__name__)


class CarWriter:
    """
    Incremental CAR writer.

    Usage:
        writer = CarWriter([root])
        writer.write(cid, data)
        car_bytes = writer.finish()

        # or into an open file
        with open("repo.car", "wb") as f:
            CarWriter([root], f).finish()
    """

    def __init__(self, roots: list[Cid], sink: BinaryIO | None = None) -> None:
        self.roots = list(roots)
        self._owns_sink = sink is None
        self._sink: BinaryIO = io.BytesIO() if sink is None else sink
        self._header_written = False
        self._finished = False
        self.block_count = 0
        self.bytes_written = 0

    def _emit(self, payload: bytes) -> None:
        record = encode_varint(len(payload)) + payload
        try:
            self._sink.write(record)
        except OSError as e:
            raise WriteError(f"Failed writing CAR record: {e}") from e
        self.bytes_written += len(record)

    def _ensure_header(self) -> None:
        if not self._header_written:
            self._emit(encode_header(self.roots))
            self._header_written = True

    def write(self, cid: Cid, data: bytes) -> None:
        """Append one block record: CID bytes immediately followed by ``data``."""
        if self._finished:
            raise WriteError("CarWriter already finished")
        self._ensure_header()
        self._emit(bytes(cid) + bytes(data))
        self.block_count += 1
        log.debug("CAR block %s (%d bytes)", cid, len(data))

    def finish(self) -> bytes:
        """Flush the sink. Returns the archive bytes when the writer owns its buffer."""
        self._ensure_header()
        self._finished = True
        try:
            self._sink.flush()
        except OSError as e:
            raise WriteError(f"Failed flushing CAR sink: {e}") from e
        if self._owns_sink:
            return self._sink.getvalue()
        return b""
