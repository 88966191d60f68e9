"""Compacted lcluster indexes and the compressed-file map header."""

from __future__ import annotations

import struct
from typing import Iterable, Optional

from .zindex import (
    LCLUSTER_INDEX_SIZE,
    LCLUSTER_TYPE_NONHEAD,
    LCLUSTER_TYPE_PLAIN,
    LEGACY_MAP_HEADER_SIZE,
    LI_D0_CBLKCNT,
    LI_LCLUSTER_TYPE_BIT,
    LclusterIndex,
    ZIndexError,
    parse_legacy_indexes,
)

ADVISE_COMPACTED_2B = 0x0001
ADVISE_BIG_PCLUSTER_1 = 0x0002
ADVISE_BIG_PCLUSTER_2 = 0x0004
ADVISE_INLINE_PCLUSTER = 0x0008
ADVISE_INTERLACED_PCLUSTER = 0x0010
ADVISE_FRAGMENT_PCLUSTER = 0x0020

MAP_HEADER_SIZE = 8

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF
_HEADER = struct.Struct("<IHBB")
_LE16 = struct.Struct("<H")
_LE32 = struct.Struct("<I")


def _roundup(value: int, align: int) -> int:
    return -(-value // align) * align


def build_map_header(advise, algorithmtypes=(0, 0), clusterbits=0,
                     fragmentoff=0, idata_size=0) -> bytes:
    """Encode the 8-byte map header of a compressed file."""
    algs = tuple(algorithmtypes) + (0, 0)
    algtype = ((algs[1] << 4) | algs[0]) & 0xFF
    if advise & ADVISE_FRAGMENT_PCLUSTER:
        first = fragmentoff & _U32
    else:
        first = (idata_size & _U16) << 16
    return _HEADER.pack(first, advise & _U16, algtype, clusterbits & 0xFF)


def write_compacted_pack(indexes: Iterable[LclusterIndex], blkaddr: int,
                         destsize: int, lclusterbits: int, final: bool = False,
                         dummy_head: bool = False,
                         update_blkaddr: bool = False
                         ) -> tuple[bytes, int, bool]:
    """Encode one compacted pack.

    Returns the pack bytes, the block address after the pack and the new
    dummy-head state.
    """
    if destsize == 4:
        vcnt = 2
    elif destsize == 2 and lclusterbits <= 12:
        vcnt = 16
    else:
        raise ZIndexError(
            f"unsupported compacted unit {destsize} for lclusterbits {lclusterbits}")
    indexes = list(indexes)
    if len(indexes) != vcnt:
        raise ZIndexError(f"a {destsize}B pack needs {vcnt} indexes, "
                          f"got {len(indexes)}")

    lobits = max(lclusterbits, LI_D0_CBLKCNT.bit_length())
    encodebits = (vcnt * destsize * 8 - 32) // vcnt
    size = destsize * vcnt
    blkaddr_ret = blkaddr
    out = bytearray(size + 2)
    pos = 0

    for i, cv in enumerate(indexes):
        if cv.clustertype == LCLUSTER_TYPE_NONHEAD:
            d0, d1 = cv.delta[0] & _U16, cv.delta[1] & _U16
            if d0 & LI_D0_CBLKCNT:
                blkaddr += d0 & ~LI_D0_CBLKCNT
                offset = d0
                dummy_head = False
            elif i + 1 == vcnt:
                offset = min(d1, (1 << lobits) - 1)
            else:
                offset = d0
        else:
            offset = cv.clusterofs
            if dummy_head:
                blkaddr += 1
                if update_blkaddr:
                    blkaddr_ret = blkaddr
            dummy_head = True
            update_blkaddr = False

        v = (cv.clustertype << lobits) | offset
        rem = pos & 7
        idx = pos >> 3
        ch = out[idx] & ((1 << rem) - 1)
        out[idx] = ((v << rem) | ch) & 0xFF
        out[idx + 1] = (v >> (8 - rem)) & 0xFF
        out[idx + 2] = (v >> (16 - rem)) & 0xFF
        pos += encodebits

    out[size - 4:size] = _LE32.pack(blkaddr_ret & _U32)
    return bytes(out[:size]), blkaddr & _U32, dummy_head


def convert_to_compacted(legacy, inode_isize, xattr_isize, logical_clusterbits,
                         blkszbits, blkaddr, compacted_2b=False,
                         big_pcluster=False) -> bytes:
    """Turn header plus full indexes into header plus compacted packs."""
    if logical_clusterbits < blkszbits:
        raise ZIndexError("lcluster size is smaller than the block size")
    if logical_clusterbits > 14:
        raise ZIndexError("compact format is unsupported for lcluster size "
                          f"{1 << logical_clusterbits}")
    legacy = bytes(legacy)
    if len(legacy) < LEGACY_MAP_HEADER_SIZE:
        raise ZIndexError("compressed metadata lacks a map header")

    mpos = _roundup(inode_isize + xattr_isize, 8) + MAP_HEADER_SIZE
    totalidx = (len(legacy) - LEGACY_MAP_HEADER_SIZE) // LCLUSTER_INDEX_SIZE

    if compacted_2b:
        if logical_clusterbits > 12:
            raise ZIndexError("compact 2B is unsupported for lcluster size "
                              f"{1 << logical_clusterbits}")
        initial = (32 - mpos % 32) // 4
        if initial == 32 // 4:
            initial = 0
        if initial > totalidx:
            initial = c2b = 0
            end = totalidx
        else:
            c2b = (totalidx - initial) // 16 * 16
            end = totalidx - initial - c2b
    else:
        initial = c2b = 0
        end = totalidx

    indexes = parse_legacy_indexes(legacy[LEGACY_MAP_HEADER_SIZE:], totalidx)
    out = bytearray(legacy[:MAP_HEADER_SIZE])

    dummy_head = False
    # prior to big pcluster, blkaddr was bumped up once coming into HEAD
    if not big_pcluster:
        blkaddr = (blkaddr - 1) & _U32
        dummy_head = True

    groups = [(4, 2)] * (initial // 2) + [(2, 16)] * (c2b // 16) \
        + [(4, 2)] * (end // 2)
    k = 0
    for destsize, n in groups:
        pack, blkaddr, dummy_head = write_compacted_pack(
            indexes[k:k + n], blkaddr, destsize, logical_clusterbits, False,
            dummy_head, big_pcluster)
        out += pack
        k += n

    if end % 2:
        tail = [indexes[k], LclusterIndex(LCLUSTER_TYPE_PLAIN)]
        pack, blkaddr, dummy_head = write_compacted_pack(
            tail, blkaddr, 4, logical_clusterbits, True, dummy_head,
            big_pcluster)
        out += pack
    return bytes(out)


def drop_inline_pcluster(meta, full_layout, blkszbits,
                         size: Optional[int] = None) -> bytes:
    """Clear the inline pcluster from compressed metadata.

    The header loses its inline flag and idata size.  When `size` (the
    file size) is given, the EOF lcluster is also turned into a plain one,
    for use when the raw tail replaces the compressed inline data.
    """
    meta = bytearray(meta)
    if len(meta) < MAP_HEADER_SIZE:
        raise ZIndexError("compressed metadata lacks a map header")
    (advise,) = _LE16.unpack_from(meta, 4)
    meta[4:6] = _LE16.pack(advise & ~ADVISE_INLINE_PCLUSTER & _U16)
    meta[2:4] = b"\0\0"
    if size is None:
        return bytes(meta)

    plain = LCLUSTER_TYPE_PLAIN
    if full_layout:
        if len(meta) < MAP_HEADER_SIZE + LCLUSTER_INDEX_SIZE:
            raise ZIndexError("no lcluster index to patch")
        start = len(meta) - LCLUSTER_INDEX_SIZE
        meta[start:start + 2] = _LE16.pack(plain << LI_LCLUSTER_TYPE_BIT)
        return bytes(meta)

    blksiz = 1 << blkszbits
    blocks = -(-size // blksiz)
    eofs = len(meta) - (4 << (blocks & 1))
    if eofs < MAP_HEADER_SIZE:
        raise ZIndexError("no compacted pack to patch")
    base = eofs // 8 * 8
    pos = 16 * ((eofs - base) // 4)
    i = base + pos // 8
    if i + 4 > len(meta):
        raise ZIndexError("truncated compacted pack")
    (word,) = _LE32.unpack_from(meta, i)
    v = (plain << blkszbits) | (word & (blksiz - 1))
    meta[i] = v & 0xFF
    meta[i + 1] = (v >> 8) & 0xFF
    return bytes(meta)