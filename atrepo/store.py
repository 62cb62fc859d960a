"""
Block Store: local content-addressed storage for repository blocks.

Storage layout:
    ~/.atrepo/blocks/<cid>    : raw block bytes
    ~/.atrepo/index.json      : metadata index (cid -> seq, size, stored_at)

All writes are atomic (temp file + os.replace) for crash safety.
Content-addressed by CID: storing the same block twice is a no-op.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from atrepo import STORE_DEFAULT_DIR, STORE_MAX_BLOCK_SIZE
from atrepo._car.spec import BlockReadError
from atrepo.blocks import Block
from atrepo.cid import DAG_CBOR, Cid, CidError

log = logging.getLogger(__name__)

# Base32 CIDv1 text form; also keeps CIDs from escaping the blocks directory
_CID_TEXT_RE = re.compile(r"^b[a-z2-7]{8,128}$")

_DEFAULT_ROOT = Path.home() / STORE_DEFAULT_DIR


class BlockStoreError(Exception):
    """Error in block store operations."""


class BlockStore:
    """File-based, content-addressed block store.

    Blocks are listed (and exported) in the order they were first stored.

    Usage:
        store = BlockStore()
        cid = store.put(data)
        data = store.get(cid)
        car = read_car_bytes(root, store)
    """

    def __init__(
        self,
        root: str | Path | None = None,
        max_block_size: int = STORE_MAX_BLOCK_SIZE,
    ) -> None:
        self.root = Path(root) if root else _DEFAULT_ROOT
        self.blocks_dir = self.root / "blocks"
        self.index_path = self.root / "index.json"
        self.max_block_size = max_block_size

    def _ensure_dirs(self) -> None:
        self.blocks_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _key(cid: Cid) -> str:
        """Filesystem key for a CID. Validated to prevent path traversal."""
        key = str(cid)
        if not _CID_TEXT_RE.match(key):
            raise BlockStoreError(f"Unstorable CID: {key!r}")
        return key

    def _read_index(self) -> dict[str, dict[str, Any]]:
        """Read the JSON index. Returns empty dict if missing or corrupt."""
        if not self.index_path.is_file():
            return {}
        try:
            index = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Ignoring unreadable block index %s: %s", self.index_path, e)
            return {}
        if not isinstance(index, dict):
            return {}
        return index

    def _atomic_write(self, dest: Path, data: bytes, prefix: str) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(dest.parent), suffix=".tmp", prefix=prefix)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, str(dest))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _write_index(self, index: dict[str, dict[str, Any]]) -> None:
        self._ensure_dirs()
        data = json.dumps(index, indent=2, sort_keys=True).encode("utf-8")
        self._atomic_write(self.index_path, data, ".index_")

    def put(self, data: bytes, codec: int = DAG_CBOR) -> Cid:
        """Hash and store a block. Returns its CID."""
        cid = Cid.for_block(data, codec)
        self.put_block(cid, data)
        return cid

    def put_block(self, cid: Cid, data: bytes) -> None:
        """Store a block under a caller-computed CID.

        The CID is trusted, matching the archive encoder's contract; use
        ``put`` to have the store compute it.
        """
        if len(data) > self.max_block_size:
            raise BlockStoreError(
                f"Block {cid} is {len(data)} bytes (max {self.max_block_size})"
            )
        key = self._key(cid)
        self._ensure_dirs()

        dest = self.blocks_dir / key
        if not dest.is_file():
            self._atomic_write(dest, bytes(data), ".blk_")
            log.info("Stored block %s (%d bytes)", key, len(data))

        index = self._read_index()
        if key not in index:
            seq = max((meta.get("seq", 0) for meta in index.values()), default=0) + 1
            index[key] = {
                "seq": seq,
                "size": len(data),
                "stored_at": datetime.now(timezone.utc).isoformat(),
            }
            self._write_index(index)

    def get(self, cid: Cid) -> bytes:
        """Read a block. Raises BlockStoreError if not found."""
        path = self.blocks_dir / self._key(cid)
        if not path.is_file():
            raise BlockStoreError(f"Block not found: {cid}")
        return path.read_bytes()

    def has(self, cid: Cid) -> bool:
        return (self.blocks_dir / self._key(cid)).is_file()

    def list(self) -> list[dict[str, Any]]:
        """List stored blocks in storage order, with their index metadata.

        Each entry has at least a 'cid' key.
        """
        index = self._read_index()
        result = []
        for key, meta in sorted(index.items(), key=lambda item: item[1].get("seq", 0)):
            entry: dict[str, Any] = {"cid": key}
            entry.update(meta)
            result.append(entry)
        return result

    def cids(self) -> list[Cid]:
        return [Cid.parse(entry["cid"]) for entry in self.list()]

    def entries(self, cids: Iterable[Cid] | None = None) -> Iterator[Block]:
        """Lazily yield blocks, in storage order or in the order of ``cids``.

        Raises BlockReadError when a requested block cannot be read.
        """
        if cids is None:
            keys: Iterable[str | Cid] = [entry["cid"] for entry in self.list()]
        else:
            keys = cids
        for key in keys:
            try:
                cid = Cid.parse(key) if isinstance(key, str) else key
                data = self.get(cid)
            except (BlockStoreError, CidError, OSError) as e:
                raise BlockReadError(f"Cannot read block {key}: {e}") from e
            yield Block(cid, data)
