import io
import struct

import pytest

from erofskit.blobchunk import (
    BLOCK_MAP_ENTRY_SIZE,
    CHUNK_FORMAT_BLKBITS_MASK,
    CHUNK_FORMAT_INDEXES,
    NULL_ADDR,
    BlobStore,
    ChunkedInode,
    merge_chunks,
)
from erofskit.blocklist import BlockListWriter

BITS = 12
BLK = 1 << BITS


def _block(ch):
    return bytes([ch]) * BLK


def test_get_chunk_deduplicates():
    with BlobStore(BITS) as store:
        a = store.get_chunk(b"hello")
        b = store.get_chunk(b"hello")
        assert a is b
        assert store.saved_by_deduplication == len(b"hello")


def test_get_chunk_pads_to_block_size():
    store = BlobStore(BITS)
    a = store.get_chunk(b"abc")
    b = store.get_chunk(b"xyz")
    assert a.blkaddr == 0
    assert b.blkaddr == 1
    store.blobfile.seek(0)
    blob = store.blobfile.read()
    assert len(blob) == 2 * BLK
    assert blob[:3] == b"abc" and blob[BLK:BLK + 3] == b"xyz"
    store.close()


def test_zero_chunk_becomes_hole():
    store = BlobStore(BITS, zero_chunksize=BLK)
    chunk = store.get_chunk(bytes(BLK))
    assert chunk is store.hole
    assert chunk.blkaddr == NULL_ADDR
    assert store.saved_by_deduplication == BLK


def test_extra_devices_mark_device_one():
    store = BlobStore(BITS, extra_devices=1)
    assert store.get_chunk(b"data").device_id == 1


def test_blobfile_path(tmp_path):
    path = tmp_path / "blob.img"
    store = BlobStore(BITS, blobfile=path)
    store.get_chunk(b"x" * 10)
    store.close()
    assert path.read_bytes() == b"x" * 10 + bytes(BLK - 10)


def test_chunked_file_without_merge():
    store = BlobStore(BITS)
    data = _block(1) + _block(2) + _block(3)
    inode = store.write_chunked_file(io.BytesIO(data), len(data), BITS)
    assert len(inode.chunks) == 3
    assert inode.extent_isize == 3 * BLOCK_MAP_ENTRY_SIZE
    assert inode.chunkbits == 0
    assert [c.blkaddr for c in inode.chunks] == [0, 1, 2]


def test_chunked_file_merges_contiguous_chunks():
    store = BlobStore(BITS)
    data = b"".join(_block(i) for i in range(1, 5))
    inode = store.write_chunked_file(io.BytesIO(data), len(data), BITS)
    assert len(inode.chunks) == 1
    assert inode.chunks[0].blkaddr == 0
    assert inode.chunkbits == 2
    assert inode.extent_isize == BLOCK_MAP_ENTRY_SIZE
    encoded = store.encode_chunk_indexes(inode)
    assert encoded == struct.pack("<I", 0)


def test_chunked_file_with_holes_and_blocklist():
    store = BlobStore(BITS, zero_chunksize=BLK)
    data = _block(7) + bytes(2 * BLK) + _block(9)
    inode = store.write_chunked_file(io.BytesIO(data), len(data), BITS)
    assert len(inode.chunks) == 4
    assert inode.chunks[1] is store.hole and inode.chunks[2] is store.hole
    out = io.StringIO()
    writer = BlockListWriter(out, mount_point="system")
    encoded = store.encode_chunk_indexes(inode, 0, writer, "/bin/x")
    assert encoded == struct.pack("<4I", 0, NULL_ADDR, NULL_ADDR, 1)
    assert out.getvalue() == "/system/bin/x 0 1\n"


def test_chunked_file_short_read():
    store = BlobStore(BITS)
    with pytest.raises(OSError):
        store.write_chunked_file(io.BytesIO(b"short"), BLK, BITS)


def test_chunked_file_indexes_with_devices():
    store = BlobStore(BITS, extra_devices=1)
    data = _block(5)
    inode = store.write_chunked_file(io.BytesIO(data), len(data), BITS)
    assert inode.chunkformat & CHUNK_FORMAT_INDEXES
    encoded = store.encode_chunk_indexes(inode, remapped_base=100)
    assert encoded == struct.pack("<HHI", 0, 1, 0)


def test_write_zero_inode():
    store = BlobStore(BITS)
    inode = store.write_zero_inode(3 * BLK)
    assert inode.extent_isize == len(inode.chunks) * BLOCK_MAP_ENTRY_SIZE
    assert all(c.blkaddr == NULL_ADDR for c in inode.chunks)
    encoded = store.encode_chunk_indexes(inode)
    assert encoded == b"\xff\xff\xff\xff" * len(inode.chunks)


def test_tar_chunks_single_device_and_srcmap():
    store = BlobStore(BITS)
    inode = store.write_tar_chunks(2 * BLK, 512)
    assert len(inode.chunks) == 1
    assert inode.chunks[0].sourceoffset == 512
    assert store.datablob_size == 2 * BLK
    out = io.StringIO()
    writer = BlockListWriter(out, srcmap=True)
    encoded = store.encode_chunk_indexes(inode, 10, writer)
    assert encoded == struct.pack("<I", 10)
    assert out.getvalue() == f"{10:08x} {2:8x} {512:08x}\n"
    second = store.write_tar_chunks(BLK, 0)
    assert second.chunks[0].blkaddr == 2


def test_tar_chunks_extra_device():
    store = BlobStore(BITS, extra_devices=1)
    inode = store.write_tar_chunks(BLK, 8 * BLK)
    assert inode.chunkformat & CHUNK_FORMAT_INDEXES
    assert store.datablob_size == 0
    encoded = store.encode_chunk_indexes(inode, remapped_base=50)
    assert encoded == struct.pack("<HHI", 0, 1, 8)


def test_merge_chunks_halves_table():
    store = BlobStore(BITS)
    chunks = [store.unhashed_chunk(0, i, 0) for i in range(4)]
    inode = ChunkedInode(4 * BLK, 0, list(chunks), 4 * BLOCK_MAP_ENTRY_SIZE)
    merge_chunks(inode, BITS, BITS + 1, BITS)
    assert inode.chunks == [chunks[0], chunks[2]]
    assert inode.extent_isize == 2 * BLOCK_MAP_ENTRY_SIZE
    assert inode.chunkbits == 1