"""
Tests for CAR export: varint.py, cid.py, _car/ and export.py.

Archives are decoded with CarReader and, where the layout matters, checked
byte-for-byte against the CAR v1 framing.
"""

from __future__ import annotations

import hashlib
import io
from unittest.mock import MagicMock

import cbor2
import pytest

from atrepo import CAR_VERSION
from atrepo._car import BlockReadError, CarDecodeError, CarReader, CarWriter, WriteError
from atrepo._car.spec import CID_CBOR_TAG, decode_header, encode_header
from atrepo.blocks import Block, BlockMap
from atrepo.cid import DAG_CBOR, RAW, SHA2_256, Cid, CidError
from atrepo.export import encode, encode_async, read_car_bytes, write_car_file
from atrepo.varint import VarintError, decode_varint, encode_varint


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def root_cid():
    return Cid.for_block(b"commit", DAG_CBOR)


@pytest.fixture
def block_a():
    data = b"\xa1aa\x01"
    return Cid.for_block(data), data


@pytest.fixture
def block_b():
    data = b"raw bytes for b"
    return Cid.for_block(data, RAW), data


def _record(payload: bytes) -> bytes:
    return encode_varint(len(payload)) + payload


# ---------------------------------------------------------------------------
# TestVarint
# ---------------------------------------------------------------------------

class TestVarint:

    @pytest.mark.parametrize("value,encoded", [
        (0, b"\x00"),
        (1, b"\x01"),
        (127, b"\x7f"),
        (128, b"\x80\x01"),
        (300, b"\xac\x02"),
        (16384, b"\x80\x80\x01"),
    ])
    def test_known_values(self, value, encoded):
        assert encode_varint(value) == encoded
        assert decode_varint(encoded) == (value, len(encoded))

    def test_decode_at_offset(self):
        data = b"\xff" + encode_varint(300) + b"tail"
        assert decode_varint(data, 1) == (300, 3)

    def test_reject_negative(self):
        with pytest.raises(VarintError):
            encode_varint(-1)

    def test_reject_too_large(self):
        with pytest.raises(VarintError):
            encode_varint(1 << 63)

    def test_reject_truncated(self):
        with pytest.raises(VarintError, match="Truncated"):
            decode_varint(b"\x80")

    def test_reject_non_minimal(self):
        with pytest.raises(VarintError, match="Non-minimal"):
            decode_varint(b"\x80\x00")

    def test_reject_overlong(self):
        with pytest.raises(VarintError):
            decode_varint(b"\xff" * 10)


# ---------------------------------------------------------------------------
# TestCid
# ---------------------------------------------------------------------------

class TestCid:

    def test_for_block_layout(self):
        cid = Cid.for_block(b"hello", RAW)
        raw = bytes(cid)
        assert raw[:4] == bytes([0x01, RAW, SHA2_256, 0x20])
        assert raw[4:] == hashlib.sha256(b"hello").digest()
        assert len(raw) == 36

    def test_text_prefixes(self):
        assert str(Cid.for_block(b"hello", RAW)).startswith("bafkrei")
        assert str(Cid.for_block(b"hello", DAG_CBOR)).startswith("bafyrei")

    def test_text_roundtrip(self, root_cid):
        assert Cid.parse(str(root_cid)) == root_cid

    def test_binary_roundtrip(self, root_cid):
        assert Cid.decode(bytes(root_cid)) == root_cid

    def test_read_returns_offset(self, root_cid):
        buf = bytes(root_cid) + b"payload"
        cid, offset = Cid.read(buf)
        assert cid == root_cid
        assert buf[offset:] == b"payload"

    def test_decode_rejects_trailing_bytes(self, root_cid):
        with pytest.raises(CidError, match="Trailing"):
            Cid.decode(bytes(root_cid) + b"\x00")

    def test_decode_rejects_cidv0(self):
        with pytest.raises(CidError, match="version"):
            Cid.decode(b"\x12\x20" + b"\x00" * 32)

    def test_decode_rejects_truncated_digest(self, root_cid):
        with pytest.raises(CidError):
            Cid.decode(bytes(root_cid)[:-1])

    @pytest.mark.parametrize("text", ["", "Qmabc", "bAFY", "zb2rh", "b!!!!!!!!!!"])
    def test_parse_rejects(self, text):
        with pytest.raises(CidError):
            Cid.parse(text)

    def test_verify(self):
        cid = Cid.for_block(b"hello")
        assert cid.verify(b"hello")
        assert not cid.verify(b"hellO")

    def test_hashable(self):
        a = Cid.for_block(b"x")
        assert {a, Cid.for_block(b"x")} == {a}


# ---------------------------------------------------------------------------
# TestHeader
# ---------------------------------------------------------------------------

class TestHeader:

    def test_dag_cbor_layout(self, root_cid):
        payload = encode_header([root_cid])
        # map(2), then "roots" (shorter key sorts first)
        assert payload[0] == 0xA2
        assert payload[1:7] == b"\x65roots"
        decoded = cbor2.loads(payload)
        assert decoded == {
            "version": 1,
            "roots": [cbor2.CBORTag(CID_CBOR_TAG, b"\x00" + bytes(root_cid))],
        }

    def test_decode_roundtrip(self, root_cid):
        assert decode_header(encode_header([root_cid])) == (CAR_VERSION, [root_cid])

    def test_reject_unknown_version(self, root_cid):
        with pytest.raises(CarDecodeError, match="Unsupported CAR version"):
            decode_header(encode_header([root_cid], version=2))

    @pytest.mark.parametrize("version", [True, 1.0, "1"])
    def test_reject_non_integer_version(self, version):
        payload = cbor2.dumps({"roots": [], "version": version})
        with pytest.raises(CarDecodeError, match="Unsupported CAR version"):
            decode_header(payload)

    def test_reject_non_map(self):
        with pytest.raises(CarDecodeError, match="map"):
            decode_header(cbor2.dumps([1, 2]))

    def test_reject_untagged_root(self, root_cid):
        payload = cbor2.dumps({"version": 1, "roots": [bytes(root_cid)]})
        with pytest.raises(CarDecodeError, match="Expected CID"):
            decode_header(payload)

    def test_reject_garbage(self):
        with pytest.raises(CarDecodeError):
            decode_header(b"\xa2\x65ro")


# ---------------------------------------------------------------------------
# TestEncode
# ---------------------------------------------------------------------------

class TestEncode:

    def test_scenario_empty_blocks(self, root_cid):
        data = encode(root_cid, [])
        assert data == _record(encode_header([root_cid]))
        car = CarReader.parse(data)
        assert car.version == 1
        assert car.roots == [root_cid]
        assert car.blocks == []

    def test_scenario_two_blocks_in_order(self, root_cid, block_a, block_b):
        data = encode(root_cid, [block_a, block_b])
        car = CarReader.parse(data)
        assert car.roots == [root_cid]
        assert car.blocks == [block_a, block_b]

    def test_exact_framing(self, root_cid, block_a, block_b):
        (cid_a, bytes_a), (cid_b, bytes_b) = block_a, block_b
        expected = (
            _record(encode_header([root_cid]))
            + _record(bytes(cid_a) + bytes_a)
            + _record(bytes(cid_b) + bytes_b)
        )
        assert encode(root_cid, [block_a, block_b]) == expected

    def test_order_is_not_sorted(self, root_cid, block_a, block_b):
        car = CarReader.parse(encode(root_cid, [block_b, block_a]))
        assert car.blocks == [block_b, block_a]

    def test_duplicates_are_kept(self, root_cid, block_a):
        car = CarReader.parse(encode(root_cid, [block_a, block_a]))
        assert car.blocks == [block_a, block_a]

    def test_root_need_not_be_present(self, root_cid, block_a):
        car = CarReader.parse(encode(root_cid, [block_a]))
        assert root_cid not in [cid for cid, _ in car.blocks]
        assert car.roots == [root_cid]

    def test_accepts_block_objects_and_generators(self, root_cid, block_a, block_b):
        blocks = (Block(cid, data) for cid, data in [block_a, block_b])
        assert encode(root_cid, blocks) == encode(root_cid, [block_a, block_b])

    def test_empty_block_bytes(self, root_cid):
        cid = Cid.for_block(b"")
        car = CarReader.parse(encode(root_cid, [(cid, b"")]))
        assert car.blocks == [(cid, b"")]

    def test_bytes_are_not_verified(self, root_cid, block_a):
        cid_a, _ = block_a
        data = encode(root_cid, [(cid_a, b"not the right bytes")])
        car = CarReader.parse(data)
        assert car.verify() == [cid_a]

    def test_verify_intact(self, root_cid, block_a, block_b):
        assert CarReader.parse(encode(root_cid, [block_a, block_b])).verify() == []

    def test_block_read_error_propagates(self, root_cid, block_a):
        def source():
            yield block_a
            raise BlockReadError("store offline")

        with pytest.raises(BlockReadError, match="store offline"):
            encode(root_cid, source())

    def test_os_error_becomes_block_read_error(self, root_cid):
        def source():
            raise OSError("disk gone")
            yield  # pragma: no cover

        with pytest.raises(BlockReadError) as exc_info:
            encode(root_cid, source())
        assert isinstance(exc_info.value.__cause__, OSError)

    def test_read_car_bytes_uses_entries(self, root_cid):
        blocks = BlockMap()
        first = blocks.add(b"one")
        second = blocks.add(b"two", RAW)
        car = CarReader.parse(read_car_bytes(root_cid, blocks))
        assert car.blocks == [(first, b"one"), (second, b"two")]


# ---------------------------------------------------------------------------
# TestEncodeAsync
# ---------------------------------------------------------------------------

class TestEncodeAsync:

    @pytest.mark.asyncio
    async def test_async_iterable(self, root_cid, block_a, block_b):
        async def source():
            yield block_a
            yield block_b

        data = await encode_async(root_cid, source())
        assert data == encode(root_cid, [block_a, block_b])

    @pytest.mark.asyncio
    async def test_sync_iterable(self, root_cid, block_a):
        assert await encode_async(root_cid, [block_a]) == encode(root_cid, [block_a])

    @pytest.mark.asyncio
    async def test_empty(self, root_cid):
        async def source():
            return
            yield  # pragma: no cover

        assert await encode_async(root_cid, source()) == encode(root_cid, [])

    @pytest.mark.asyncio
    async def test_os_error_becomes_block_read_error(self, root_cid, block_a):
        async def source():
            yield block_a
            raise OSError("read failed")

        with pytest.raises(BlockReadError):
            await encode_async(root_cid, source())


# ---------------------------------------------------------------------------
# TestCarWriter
# ---------------------------------------------------------------------------

class TestCarWriter:

    def test_external_sink(self, root_cid, block_a):
        sink = io.BytesIO()
        writer = CarWriter([root_cid], sink)
        writer.write(*block_a)
        assert writer.finish() == b""
        assert sink.getvalue() == encode(root_cid, [block_a])
        assert writer.block_count == 1
        assert writer.bytes_written == len(sink.getvalue())

    def test_header_written_once(self, root_cid, block_a):
        writer = CarWriter([root_cid])
        writer.write(*block_a)
        writer.write(*block_a)
        car = CarReader.parse(writer.finish())
        assert len(car.blocks) == 2

    def test_multiple_roots(self, root_cid, block_a):
        other = block_a[0]
        car = CarReader.parse(CarWriter([root_cid, other]).finish())
        assert car.roots == [root_cid, other]

    def test_sink_failure_is_write_error(self, root_cid, block_a):
        sink = MagicMock()
        sink.write.side_effect = OSError("no space left")
        writer = CarWriter([root_cid], sink)
        with pytest.raises(WriteError, match="no space left"):
            writer.write(*block_a)

    def test_flush_failure_is_write_error(self, root_cid):
        sink = MagicMock()
        sink.flush.side_effect = OSError("flush failed")
        with pytest.raises(WriteError):
            CarWriter([root_cid], sink).finish()

    def test_write_after_finish(self, root_cid, block_a):
        writer = CarWriter([root_cid])
        writer.finish()
        with pytest.raises(WriteError, match="already finished"):
            writer.write(*block_a)


# ---------------------------------------------------------------------------
# TestCarReader
# ---------------------------------------------------------------------------

class TestCarReader:

    def test_reject_empty(self):
        with pytest.raises(CarDecodeError, match="Empty"):
            CarReader.parse(b"")

    def test_reject_truncated_block(self, root_cid, block_a):
        data = encode(root_cid, [block_a])
        with pytest.raises(CarDecodeError, match="Truncated"):
            CarReader.parse(data[:-1])

    def test_reject_truncated_length(self, root_cid):
        data = encode(root_cid, []) + b"\x80"
        with pytest.raises(CarDecodeError, match="Bad record length"):
            CarReader.parse(data)

    def test_reject_oversized_record(self, root_cid):
        data = encode(root_cid, []) + encode_varint(1 << 30)
        with pytest.raises(CarDecodeError, match="exceeds max"):
            CarReader.parse(data)

    def test_reject_bad_block_cid(self, root_cid):
        data = encode(root_cid, []) + _record(b"\x12\x20" + b"\x00" * 32)
        with pytest.raises(CarDecodeError, match="Bad block CID"):
            CarReader.parse(data)

    def test_iter_blocks_lazy(self, root_cid, block_a, block_b):
        data = encode(root_cid, [block_a, block_b])
        it = CarReader.iter_blocks(data)
        assert next(it) == block_a
        assert next(it) == block_b
        with pytest.raises(StopIteration):
            next(it)

    def test_read_header_offset(self, root_cid, block_a):
        data = encode(root_cid, [block_a])
        version, roots, offset = CarReader.read_header(data)
        assert (version, roots) == (1, [root_cid])
        assert offset == len(encode(root_cid, []))


# ---------------------------------------------------------------------------
# TestWriteCarFile
# ---------------------------------------------------------------------------

class TestWriteCarFile:

    def test_writes_atomically(self, tmp_path, root_cid, block_a, block_b):
        out = tmp_path / "repo.car"
        nbytes = write_car_file(root_cid, [block_a, block_b], out)
        assert out.read_bytes() == encode(root_cid, [block_a, block_b])
        assert nbytes == out.stat().st_size
        assert list(tmp_path.iterdir()) == [out]

    def test_failure_leaves_nothing(self, tmp_path, root_cid, block_a):
        def source():
            yield block_a
            raise BlockReadError("gone")

        out = tmp_path / "repo.car"
        with pytest.raises(BlockReadError):
            write_car_file(root_cid, source(), out)
        assert not out.exists()
        assert list(tmp_path.iterdir()) == []

    def test_failure_keeps_previous_file(self, tmp_path, root_cid, block_a):
        out = tmp_path / "repo.car"
        out.write_bytes(b"previous")

        def source():
            raise BlockReadError("gone")
            yield  # pragma: no cover

        with pytest.raises(BlockReadError):
            write_car_file(root_cid, source(), out)
        assert out.read_bytes() == b"previous"

    def test_missing_directory_is_write_error(self, tmp_path, root_cid):
        out = tmp_path / "missing_dir" / "repo.car"
        with pytest.raises(WriteError, match="Cannot create archive"):
            write_car_file(root_cid, [], out)
        assert not out.parent.exists()

    def test_replace_failure_is_write_error(self, tmp_path, root_cid, block_a):
        # A directory at the destination makes the final rename fail.
        out = tmp_path / "repo.car"
        out.mkdir()
        with pytest.raises(WriteError, match="Cannot move archive"):
            write_car_file(root_cid, [block_a], out)
        assert list(tmp_path.iterdir()) == [out]
