"""Full (non-compacted) lcluster indexes of compressed files."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterable

LCLUSTER_TYPE_PLAIN = 0
LCLUSTER_TYPE_HEAD1 = 1
LCLUSTER_TYPE_NONHEAD = 2
LCLUSTER_TYPE_HEAD2 = 3

LI_LCLUSTER_TYPE_BIT = 0
LI_LCLUSTER_TYPE_BITS = 2
LI_PARTIAL_REF = 1 << 15
LI_D0_CBLKCNT = 1 << 11

LCLUSTER_INDEX_SIZE = 8
LEGACY_MAP_HEADER_SIZE = 8
NULL_ADDR = 0xFFFFFFFF

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF
_INDEX = struct.Struct("<HHI")
_DELTA = struct.Struct("<HH")


class ZIndexError(ValueError):
    """Extents or index data cannot be encoded or decoded."""


@dataclass
class InmemExtent:
    """A compressed (or raw) extent as produced by the compressor."""

    length: int
    blkaddr: int = 0
    compressedblks: int = 0
    raw: bool = False
    partial: bool = False
    inlined: bool = False


@dataclass
class LclusterIndex:
    """One 8-byte full lcluster index entry."""

    clustertype: int
    clusterofs: int = 0
    blkaddr: int = 0
    delta: tuple[int, int] = (0, 0)
    partial: bool = False

    @property
    def advise(self) -> int:
        value = (self.clustertype & ((1 << LI_LCLUSTER_TYPE_BITS) - 1)) \
            << LI_LCLUSTER_TYPE_BIT
        if self.partial:
            value |= LI_PARTIAL_REF
        return value

    def to_bytes(self) -> bytes:
        """Encode this entry in its on-disk little-endian form."""
        if self.clustertype == LCLUSTER_TYPE_NONHEAD:
            union = (self.delta[0] & _U16) | ((self.delta[1] & _U16) << 16)
        else:
            union = self.blkaddr & _U32
        return _INDEX.pack(self.advise, self.clusterofs & _U16, union)

    @classmethod
    def from_bytes(cls, data) -> "LclusterIndex":
        """Decode one on-disk entry."""
        if len(data) < LCLUSTER_INDEX_SIZE:
            raise ZIndexError("truncated lcluster index")
        advise, clusterofs, union = _INDEX.unpack_from(data)
        ctype = (advise >> LI_LCLUSTER_TYPE_BIT) & ((1 << LI_LCLUSTER_TYPE_BITS) - 1)
        partial = bool(advise & LI_PARTIAL_REF)
        if ctype == LCLUSTER_TYPE_NONHEAD:
            d0, d1 = _DELTA.unpack_from(data, 4)
            return cls(ctype, clusterofs, 0, (d0, d1), partial)
        return cls(ctype, clusterofs, union, (0, 0), partial)


def _head_blkaddr(e: InmemExtent, full_layout: bool, fragmentoff: int) -> int:
    if full_layout and not e.compressedblks:
        return (fragmentoff >> 32) & _U32
    return e.blkaddr & _U32


def _extent_indexes(e: InmemExtent, clusterofs: int, blksiz: int,
                    big_pcluster: bool, full_layout: bool,
                    fragmentoff: int) -> tuple[list[LclusterIndex], int]:
    """Return the entries for one extent and the next clusterofs."""
    count = e.length
    if count <= 0:
        raise ZIndexError("extent of zero length")
    di_clusterofs = clusterofs
    d0 = 0
    d1 = (clusterofs + count) // blksiz
    head_type = LCLUSTER_TYPE_PLAIN if e.raw else LCLUSTER_TYPE_HEAD1

    if not d1:
        if e.partial:
            raise ZIndexError("a tail-end extent cannot be partial")
        entry = LclusterIndex(head_type, di_clusterofs,
                              _head_blkaddr(e, full_layout, fragmentoff))
        # no final index is added after a tail-end block
        return [entry], 0

    out: list[LclusterIndex] = []
    while True:
        if d0 == 1 and big_pcluster:
            entry = LclusterIndex(
                LCLUSTER_TYPE_NONHEAD, di_clusterofs,
                delta=((e.compressedblks | LI_D0_CBLKCNT) & _U16, d1 & _U16))
        elif d0:
            # keep d0 below CBLKCNT so it is never read as a block count
            delta0 = LI_D0_CBLKCNT - 1 if d0 >= LI_D0_CBLKCNT else d0
            entry = LclusterIndex(LCLUSTER_TYPE_NONHEAD, di_clusterofs,
                                  delta=(delta0, d1 & _U16))
        else:
            if e.partial and e.raw:
                raise ZIndexError("a raw extent cannot be partial")
            entry = LclusterIndex(head_type, di_clusterofs,
                                  _head_blkaddr(e, full_layout, fragmentoff),
                                  partial=e.partial)
        out.append(entry)
        count -= blksiz - clusterofs
        clusterofs = 0
        d0 += 1
        d1 -= 1
        if clusterofs + count < blksiz:
            break
    return out, clusterofs + count


def encode_legacy_indexes(extents: Iterable[InmemExtent], blkszbits: int,
                          big_pcluster: bool = False, full_layout: bool = False,
                          fragmentoff: int = 0) -> bytes:
    """Encode extents as full lcluster indexes (map header not included)."""
    blksiz = 1 << blkszbits
    out = bytearray()
    clusterofs = 0
    for e in extents:
        entries, clusterofs = _extent_indexes(e, clusterofs, blksiz,
                                              big_pcluster, full_layout,
                                              fragmentoff)
        for entry in entries:
            out += entry.to_bytes()
    if clusterofs:
        out += LclusterIndex(LCLUSTER_TYPE_PLAIN, clusterofs, 0).to_bytes()
    return bytes(out)


def parse_legacy_indexes(data, count: int) -> list[LclusterIndex]:
    """Decode the first `count` full lcluster indexes in `data`."""
    if count < 0:
        raise ZIndexError("negative index count")
    data = memoryview(bytes(data))
    if len(data) < count * LCLUSTER_INDEX_SIZE:
        raise ZIndexError(f"need {count} indexes, data holds only "
                          f"{len(data) // LCLUSTER_INDEX_SIZE}")
    return [LclusterIndex.from_bytes(data[i:i + LCLUSTER_INDEX_SIZE])
            for i in range(0, count * LCLUSTER_INDEX_SIZE, LCLUSTER_INDEX_SIZE)]