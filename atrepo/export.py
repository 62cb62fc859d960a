"""
Repository export: package a set of blocks into a CAR v1 archive.

    encode(root, blocks)            -> bytes
    await encode_async(root, blocks) -> bytes   (blocks may be an async iterable)
    read_car_bytes(root, source)    -> bytes   (source exposes entries())
    write_car_file(root, blocks, path)          (atomic: temp file + os.replace)

Blocks are emitted exactly in the order supplied. No sorting, deduplication,
reachability walk from the root, or hash verification happens here; the
block source is trusted.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import AsyncIterable, Iterable, Protocol, Tuple, Union

from atrepo._car.spec import BlockReadError, WriteError
from atrepo._car.writer import CarWriter
from atrepo.blocks import Block
from atrepo.cid import Cid

log = logging.getLogger(__name__)

BlockLike = Union[Block, Tuple[Cid, bytes]]


class BlockSource(Protocol):
    def entries(self) -> Iterable[BlockLike]: ...


def _drain(writer: CarWriter, blocks: Iterable[BlockLike]) -> None:
    iterator = iter(blocks)
    while True:
        try:
            entry = next(iterator)
        except StopIteration:
            return
        except OSError as e:
            raise BlockReadError(f"Block source failed: {e}") from e
        cid, data = entry
        writer.write(cid, data)


def encode(root: Cid, blocks: Iterable[BlockLike]) -> bytes:
    """Encode a CAR v1 archive with a single root and the given blocks, in order."""
    writer = CarWriter([root])
    _drain(writer, blocks)
    data = writer.finish()
    log.debug("Encoded CAR root=%s blocks=%d bytes=%d", root, writer.block_count, len(data))
    return data


async def encode_async(
    root: Cid, blocks: Union[Iterable[BlockLike], AsyncIterable[BlockLike]],
) -> bytes:
    """Like ``encode``, but also accepts an async iterable of blocks.

    Each block is written before the next one is awaited, so archive order
    always matches source order.
    """
    writer = CarWriter([root])
    if not hasattr(blocks, "__aiter__"):
        _drain(writer, blocks)
        return writer.finish()

    iterator = blocks.__aiter__()
    while True:
        try:
            entry = await iterator.__anext__()
        except StopAsyncIteration:
            break
        except OSError as e:
            raise BlockReadError(f"Block source failed: {e}") from e
        cid, data = entry
        writer.write(cid, data)
    return writer.finish()


def read_car_bytes(root: Cid, source: BlockSource) -> bytes:
    """Export every block of ``source`` under ``root``."""
    return encode(root, source.entries())


def write_car_file(
    root: Cid, blocks: Iterable[BlockLike], path: str | Path, mode: int = 0o644,
) -> int:
    """Stream an archive to ``path`` atomically. Returns bytes written.

    Output goes to a temp file beside ``path`` and is renamed into place only
    after the last block is flushed. On any failure (including cancellation)
    the temp file is removed and ``path`` is left untouched.
    """
    path = Path(path)
    dir_name = path.resolve().parent
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(dir_name), suffix=".car.tmp")
    except OSError as e:
        raise WriteError(f"Cannot create archive in {dir_name}: {e}") from e
    try:
        with os.fdopen(fd, "wb") as f:
            writer = CarWriter([root], f)
            _drain(writer, blocks)
            writer.finish()
            try:
                os.fsync(f.fileno())
            except OSError as e:
                raise WriteError(f"Cannot flush archive {path}: {e}") from e
        try:
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, str(path))
        except OSError as e:
            raise WriteError(f"Cannot move archive into place at {path}: {e}") from e
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    log.info(
        "Exported %d block(s) under root %s to %s (%d bytes)",
        writer.block_count, root, path, writer.bytes_written,
    )
    return writer.bytes_written
