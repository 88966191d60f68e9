"""Content-addressed chunk store for chunk-based file layouts."""

from __future__ import annotations

import errno
import hashlib
import os
import struct
import tempfile
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

NULL_ADDR = 0xFFFFFFFF
CHUNK_FORMAT_BLKBITS_MASK = 0x001F
CHUNK_FORMAT_INDEXES = 0x0020
BLOCK_MAP_ENTRY_SIZE = 4
CHUNK_INDEX_SIZE = 8
INODE_CHUNK_BASED = 4

_U32 = 0xFFFFFFFF


@dataclass(eq=False)
class BlobChunk:
    """One chunk of file data stored in the blob (or a hole)."""

    blkaddr: int = NULL_ADDR
    device_id: int = 0
    chunksize: int = 0
    sourceoffset: Optional[int] = 0
    sha256: Optional[bytes] = None

    @property
    def is_hole(self) -> bool:
        return self.blkaddr == NULL_ADDR


@dataclass(eq=False)
class ChunkedInode:
    """Chunk table of one file laid out in chunk-based form."""

    size: int
    chunkformat: int = 0
    chunks: list[BlobChunk] = field(default_factory=list)
    extent_isize: int = 0
    datalayout: int = INODE_CHUNK_BASED

    @property
    def unit(self) -> int:
        """On-disk size of one chunk table entry."""
        if self.chunkformat & CHUNK_FORMAT_INDEXES:
            return CHUNK_INDEX_SIZE
        return BLOCK_MAP_ENTRY_SIZE

    @property
    def chunkbits(self) -> int:
        return self.chunkformat & CHUNK_FORMAT_BLKBITS_MASK


def _clamp_chunkbits(chunkbits: int, blkszbits: int) -> int:
    if chunkbits - blkszbits > CHUNK_FORMAT_BLKBITS_MASK:
        return CHUNK_FORMAT_BLKBITS_MASK + blkszbits
    return chunkbits


def _div_round_up(value: int, align: int) -> int:
    return -(-value // align)


def merge_chunks(inode, chunkbits, new_chunkbits, blkszbits) -> None:
    """Coarsen the chunk table of `inode` to `new_chunkbits` if larger."""
    new_chunkbits = _clamp_chunkbits(new_chunkbits, blkszbits)
    if chunkbits < new_chunkbits:
        count = _div_round_up(inode.size, 1 << new_chunkbits)
        step = 1 << (new_chunkbits - chunkbits)
        inode.chunks = inode.chunks[::step][:count]
        inode.extent_isize = count * inode.unit
        chunkbits = new_chunkbits
    inode.chunkformat = (chunkbits - blkszbits) | (
        inode.chunkformat & ~CHUNK_FORMAT_BLKBITS_MASK)


class BlobStore:
    """Deduplicating writer of file chunks into a blob file."""

    def __init__(self, blkszbits, blobfile=None, zero_chunksize=None,
                 extra_devices=0):
        self.blkszbits = blkszbits
        self.blksiz = 1 << blkszbits
        self.extra_devices = extra_devices
        self.saved_by_deduplication = 0
        self.datablob_size = 0
        self.hole = BlobChunk()
        self._hashed: dict[bytes, BlobChunk] = {}
        self._unhashed: list[BlobChunk] = []
        if blobfile is None:
            self.blobfile: BinaryIO = tempfile.TemporaryFile()
            self.multidev = False
            self._owned = True
        elif isinstance(blobfile, (str, os.PathLike)):
            self.blobfile = open(blobfile, "wb")
            self.multidev = True
            self._owned = True
        else:
            self.blobfile = blobfile
            self.multidev = True
            self._owned = False
        if zero_chunksize:
            digest = hashlib.sha256(bytes(zero_chunksize)).digest()
            # a chunk filled with zeros is treated as a hole
            self._hashed[digest] = BlobChunk(NULL_ADDR, 0, zero_chunksize,
                                             0, digest)

    def __enter__(self) -> "BlobStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def get_chunk(self, data) -> BlobChunk:
        """Store `data` unless an identical chunk exists; return its chunk."""
        data = bytes(data)
        digest = hashlib.sha256(data).digest()
        chunk = self._hashed.get(digest)
        if chunk is not None:
            self.saved_by_deduplication += len(data)
            return self.hole if chunk.is_hole else chunk

        blkpos = self.blobfile.tell()
        chunk = BlobChunk(
            blkaddr=blkpos >> self.blkszbits,
            device_id=1 if self.extra_devices else 0,
            chunksize=len(data),
            sourceoffset=len(data),
            sha256=digest,
        )
        try:
            self.blobfile.write(data)
            padding = len(data) & (self.blksiz - 1)
            if padding:
                self.blobfile.write(bytes(self.blksiz - padding))
        except OSError as exc:
            raise OSError(errno.ENOSPC, "failed to write blob chunk") from exc
        self._hashed[digest] = chunk
        return chunk

    def unhashed_chunk(self, device_id, blkaddr, sourceoffset) -> BlobChunk:
        """Create a chunk that refers to data stored elsewhere."""
        chunk = BlobChunk(blkaddr=blkaddr, device_id=device_id,
                          sourceoffset=sourceoffset)
        self._unhashed.append(chunk)
        return chunk

    def _can_merge(self, lastch, chunk) -> bool:
        if lastch is None:
            return True
        if lastch is self.hole and chunk is self.hole:
            return True
        return (lastch.device_id == chunk.device_id and
                (lastch.blkaddr << self.blkszbits) + lastch.chunksize ==
                chunk.blkaddr << self.blkszbits)

    def _min_extent_blocks(self, start, end, current) -> int:
        nblks = (end - start) >> self.blkszbits
        lb = nblks & -nblks
        return lb if lb and lb < current else current

    def write_chunked_file(self, stream, size, chunkbits,
                           chunkformat=0) -> ChunkedInode:
        """Read `size` bytes from `stream` into chunks and build the table."""
        chunkbits = _clamp_chunkbits(chunkbits, self.blkszbits)
        chunksize = 1 << chunkbits
        count = _div_round_up(size, chunksize)
        if self.extra_devices:
            chunkformat |= CHUNK_FORMAT_INDEXES
        inode = ChunkedInode(size, chunkformat)
        inode.extent_isize = count * inode.unit

        lastch = None
        minextblks = _div_round_up(size, self.blksiz)
        interval_start = 0
        pos = 0
        while pos < size:
            length = min(size - pos, chunksize)
            data = stream.read(length)
            if data is None or len(data) < length:
                raise OSError(errno.EIO, "short read from chunked file")
            chunk = self.get_chunk(data)
            if not self._can_merge(lastch, chunk):
                minextblks = self._min_extent_blocks(interval_start, pos,
                                                     minextblks)
                interval_start = pos
            inode.chunks.append(chunk)
            lastch = chunk
            pos += length
        minextblks = self._min_extent_blocks(interval_start, pos, minextblks)
        inode.datalayout = INODE_CHUNK_BASED
        if minextblks:
            new_chunkbits = minextblks.bit_length() - 1 + self.blkszbits
        else:
            new_chunkbits = chunkbits
        merge_chunks(inode, chunkbits, new_chunkbits, self.blkszbits)
        return inode

    def _initial_chunkbits(self, size) -> int:
        chunkbits = max((size - 1).bit_length(), self.blkszbits)
        return _clamp_chunkbits(chunkbits, self.blkszbits)

    def write_zero_inode(self, size) -> ChunkedInode:
        """Describe a file of `size` bytes made only of holes."""
        chunkbits = self._initial_chunkbits(size)
        inode = ChunkedInode(size, chunkbits - self.blkszbits)
        chunksize = 1 << chunkbits
        count = _div_round_up(size, chunksize)
        inode.extent_isize = count * BLOCK_MAP_ENTRY_SIZE
        inode.chunks = [self.unhashed_chunk(0, NULL_ADDR, None)
                        for _ in range(count)]
        return inode

    def write_tar_chunks(self, size, data_offset) -> ChunkedInode:
        """Describe a file whose data lies at `data_offset` of the source."""
        chunkbits = self._initial_chunkbits(size)
        chunkformat = chunkbits - self.blkszbits
        if self.extra_devices:
            device_id = 1
            chunkformat |= CHUNK_FORMAT_INDEXES
            blkaddr = data_offset >> self.blkszbits
        else:
            device_id = 0
            blkaddr = self.datablob_size >> self.blkszbits
            self.datablob_size += _div_round_up(size, self.blksiz) * self.blksiz
        inode = ChunkedInode(size, chunkformat)
        chunksize = 1 << chunkbits
        count = _div_round_up(size, chunksize)
        inode.extent_isize = count * inode.unit

        pos = 0
        while pos < size:
            length = min(size - pos, chunksize)
            inode.chunks.append(
                self.unhashed_chunk(device_id, blkaddr, data_offset))
            blkaddr += length >> self.blkszbits
            data_offset += length
            pos += length
        return inode

    def encode_chunk_indexes(self, inode, remapped_base=0, blocklist=None,
                             srcpath="") -> bytes:
        """Return the on-disk chunk table; report extents to `blocklist`."""
        unit = inode.unit
        chunkblks = 1 << inode.chunkbits
        out = bytearray()
        extent_start = NULL_ADDR
        extent_end = 0
        source_offset = 0
        first_extent = True

        for chunk in inode.chunks:
            if chunk.blkaddr == NULL_ADDR:
                blkaddr = NULL_ADDR
            elif chunk.device_id:
                blkaddr = chunk.blkaddr
                extent_start = NULL_ADDR
            else:
                blkaddr = (remapped_base + chunk.blkaddr) & _U32

            if extent_start == NULL_ADDR or blkaddr != extent_end:
                if extent_start != NULL_ADDR and blocklist is not None:
                    blocklist.write_tar_extent(
                        extent_start, extent_end - extent_start, source_offset)
                    blocklist.write_extent(
                        srcpath, extent_start, extent_end - extent_start,
                        first_extent, False)
                if extent_start != NULL_ADDR:
                    first_extent = False
                extent_start = blkaddr
                source_offset = chunk.sourceoffset
            extent_end = (blkaddr + chunkblks) & _U32

            if unit == BLOCK_MAP_ENTRY_SIZE:
                out += struct.pack("<I", blkaddr)
            else:
                out += struct.pack("<HHI", 0, chunk.device_id & 0xFFFF,
                                   blkaddr)

        if blocklist is not None:
            if extent_start != NULL_ADDR:
                blocklist.write_tar_extent(
                    extent_start, extent_end - extent_start, source_offset)
            blocklist.write_extent(
                srcpath, extent_start,
                0 if extent_start == NULL_ADDR else extent_end - extent_start,
                first_extent, True)
        return bytes(out)

    def close(self) -> None:
        """Close the blob file if owned and forget every chunk."""
        if self._owned and not self.blobfile.closed:
            self.blobfile.close()
        self._hashed.clear()
        self._unhashed.clear()