"""Buffer block allocator used to lay out metadata and data in an image."""

from __future__ import annotations

import errno
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

_INODE_ALIGN = 32
_XATTR_ALIGN = 4
_DEVT_ALIGN = 128


class BufferType(Enum):
    """Kinds of buffers; all but DATA are stored in metadata blocks."""

    DATA = 0
    META = 1
    INODE = 2
    DIRA = 3
    XATTR = 4
    DEVT = 5

    def _placement(self, blksiz: int) -> tuple[int, "BufferType"]:
        """Return the alignment and the block type this buffer lives in."""
        if self is BufferType.DATA:
            return blksiz, BufferType.DATA
        if self is BufferType.META:
            return 1, BufferType.META
        if self is BufferType.INODE:
            return _INODE_ALIGN, BufferType.META
        if self is BufferType.DIRA:
            return blksiz, BufferType.META
        if self is BufferType.XATTR:
            return _XATTR_ALIGN, BufferType.META
        return _DEVT_ALIGN, BufferType.META


@dataclass(eq=False)
class BufferHead:
    """A reserved range inside a buffer block."""

    block: Optional["BufferBlock"] = None
    off: int = 0
    flush: Optional[Callable[["BufferHead"], None]] = None
    skip_write: bool = False


@dataclass(eq=False)
class BufferBlock:
    """A run of filesystem blocks holding buffers of one type."""

    type: BufferType
    blkaddr: Optional[int] = None
    off: int = 0
    buffers: list[BufferHead] = field(default_factory=list)
    _bucket: Optional[tuple[BufferType, int]] = field(default=None, repr=False)


def _roundup(value: int, align: int) -> int:
    return -(-value // align) * align


class BufferManager:
    """Allocates buffers, maps them to block addresses and flushes them."""

    def __init__(
        self,
        blksiz: int,
        start_blk: int = 0,
        fill_zero: Optional[Callable[[int, int], None]] = None,
    ):
        if blksiz <= 0 or blksiz & (blksiz - 1):
            raise ValueError(f"block size {blksiz} is not a power of two")
        self.blksiz = blksiz
        self._mask = blksiz - 1
        self._fill_zero = fill_zero
        self._blocks: list[BufferBlock] = []
        self._last_mapped: Optional[BufferBlock] = None
        self._buckets: dict[tuple[BufferType, int], list[BufferBlock]] = {}
        self.tail_blkaddr = start_blk
        self._metablkcnt = 0

    # -- list helpers -------------------------------------------------
    def _blk_round_up(self, off: int) -> int:
        return -(-off // self.blksiz)

    def _next(self, bb: Optional[BufferBlock]) -> Optional[BufferBlock]:
        if bb is None:
            return self._blocks[0] if self._blocks else None
        i = self._blocks.index(bb) + 1
        return self._blocks[i] if i < len(self._blocks) else None

    def _prev(self, bb: BufferBlock) -> Optional[BufferBlock]:
        i = self._blocks.index(bb)
        return self._blocks[i - 1] if i > 0 else None

    def _next_unmapped(self, bb: BufferBlock) -> bool:
        nxt = self._next(bb)
        return nxt is None or nxt.blkaddr is None

    def _unbucket(self, bb: BufferBlock) -> None:
        if bb._bucket is not None:
            self._buckets[bb._bucket].remove(bb)
            bb._bucket = None

    def _update_mapped(self, bb: BufferBlock) -> None:
        if bb.blkaddr is None:
            return
        self._unbucket(bb)
        key = (bb.type, bb.off & self._mask)
        self._buckets.setdefault(key, []).append(bb)
        bb._bucket = key

    @staticmethod
    def _check_tail(bh: BufferHead) -> BufferBlock:
        bb = bh.block
        if bb is None or not bb.buffers or bb.buffers[-1] is not bh:
            raise ValueError("buffer head is not the tail of its block")
        return bb

    # -- core ---------------------------------------------------------
    def _attach(self, bb, bh, incr, alignsize, extrasize, dryrun) -> int:
        blksiz, mask = self.blksiz, self._mask
        boff = bb.off
        aligned = _roundup(boff, alignsize)
        total = _roundup(((boff - 1) & mask) + 1, alignsize) + incr + extrasize
        oob = (total > blksiz) - (total < blksiz)
        tailupdate = False
        blkaddr = bb.blkaddr

        if oob >= 0:
            if oob and not self._next_unmapped(bb):
                raise ValueError("buffer block cannot grow past a mapped block")
            if blkaddr is not None:
                tailupdate = self.tail_blkaddr == blkaddr + self._blk_round_up(boff)
                if oob and not tailupdate:
                    raise ValueError("buffer block is not at the tail")

        if not dryrun:
            if bh is not None:
                bh.off = aligned
                bh.block = bb
                bb.buffers.append(bh)
            bb.off = aligned + incr
            if tailupdate:
                self.tail_blkaddr = blkaddr + self._blk_round_up(bb.off)
            self._update_mapped(bb)
        return ((aligned + incr - 1) & mask) + 1

    def _find_for_attach(self, btype, size, required_ext, inline_ext, alignsize):
        blksiz, mask = self.blksiz, self._mask
        used0 = ((size + required_ext) & mask) + inline_ext
        if used0 > blksiz:
            raise OSError(errno.ENOSPC, "inline data does not fit in one block")
        if not used0 or alignsize == blksiz:
            return None

        usedmax = 0
        found = None
        extra = required_ext + inline_ext

        if size + extra < blksiz:
            used_before = (blksiz - (size + extra)) // alignsize * alignsize
            for used_before in range(used_before, 0, -1):
                bucket = self._buckets.get((btype, used_before))
                if not bucket:
                    continue
                cur = bucket[0]
                # the last mapped block can grow; it is handled below
                if self._next_unmapped(cur):
                    continue
                try:
                    ret = self._attach(cur, None, size, alignsize, extra, True)
                except ValueError:
                    continue
                found = cur
                usedmax = ret + extra
                break

        cur = self._last_mapped
        if cur is None:
            cur = self._next(None)
        while cur is not None:
            used_before = cur.off & mask
            if used_before and cur.type is btype:
                try:
                    ret = self._attach(cur, None, size, alignsize, extra, True)
                except ValueError:
                    ret = None
                if ret is not None:
                    used = ((ret + required_ext) & mask) + inline_ext
                    if used <= blksiz and not (used < used_before and used < used0):
                        if usedmax < used:
                            found = cur
                            usedmax = used
            cur = self._next(cur)
        return found

    def balloc(self, type, size, required_ext=0, inline_ext=0) -> BufferHead:
        """Reserve `size` bytes of the given buffer type."""
        alignsize, btype = BufferType(type)._placement(self.blksiz)
        bb = self._find_for_attach(btype, size, required_ext, inline_ext, alignsize)
        if bb is None:
            bb = BufferBlock(btype)
            if btype is BufferType.DATA:
                pos = 0 if self._last_mapped is None else (
                    self._blocks.index(self._last_mapped) + 1)
                self._blocks.insert(pos, bb)
            else:
                self._blocks.append(bb)
        bh = BufferHead()
        self._attach(bb, bh, size, alignsize, required_ext + inline_ext, False)
        return bh

    def battach(self, bh, type, size) -> BufferHead:
        """Append a new buffer right after the tail buffer `bh`."""
        alignsize, _ = BufferType(type)._placement(self.blksiz)
        bb = self._check_tail(bh)
        nbh = BufferHead()
        self._attach(bb, nbh, size, alignsize, 0, False)
        return nbh

    def balloon(self, bh, incr) -> int:
        """Grow the tail buffer `bh` by `incr` bytes."""
        bb = self._check_tail(bh)
        return self._attach(bb, None, incr, 1, 0, False)

    def _map_block(self, bb: BufferBlock) -> int:
        if bb.blkaddr is None:
            bb.blkaddr = self.tail_blkaddr
            self._last_mapped = bb
            self._update_mapped(bb)
        blkaddr = bb.blkaddr + self._blk_round_up(bb.off)
        if blkaddr > self.tail_blkaddr:
            self.tail_blkaddr = blkaddr
        return blkaddr

    def mapbh(self, bb=None) -> int:
        """Map blocks up to `bb` (all if None); return the block address."""
        if bb is not None and bb.blkaddr is not None:
            return bb.blkaddr
        t = self._last_mapped
        while True:
            t = self._next(t)
            if t is None:
                break
            self._map_block(t)
            if t is bb:
                break
        return self.tail_blkaddr

    def _bfree(self, bb: BufferBlock) -> None:
        if bb is self._last_mapped:
            self._last_mapped = self._prev(bb)
        self._unbucket(bb)
        self._blocks.remove(bb)

    def bflush(self, bb=None) -> None:
        """Flush every block before `bb` (all if None)."""
        for p in list(self._blocks):
            if p is bb:
                break
            blkaddr = self._map_block(p)
            skip = False
            for bh in list(p.buffers):
                if bh.skip_write:
                    skip = True
                    continue
                if bh.flush is not None:
                    bh.flush(bh)
                p.buffers.remove(bh)
            if skip:
                continue
            padding = self.blksiz - (p.off & self._mask)
            if padding != self.blksiz and self._fill_zero is not None:
                self._fill_zero(blkaddr * self.blksiz - padding, padding)
            if p.type is not BufferType.DATA:
                self._metablkcnt += self._blk_round_up(p.off)
            self._bfree(p)

    def bdrop(self, bh, tryrevoke=False) -> None:
        """Drop a buffer; the tail may roll back if nothing follows it."""
        bb = bh.block
        blkaddr = bb.blkaddr
        rollback = (
            tryrevoke
            and blkaddr is not None
            and self.tail_blkaddr == blkaddr + self._blk_round_up(bb.off)
        )
        bh.flush = None
        bh.skip_write = False
        bb.buffers.remove(bh)
        if bb.buffers:
            return
        if not rollback and bb.type is not BufferType.DATA:
            self._metablkcnt += self._blk_round_up(bb.off)
        self._bfree(bb)
        if rollback:
            self.tail_blkaddr = blkaddr

    def btell(self, bh, end=False) -> Optional[int]:
        """Byte position of `bh` (or of its end); None if unmapped."""
        bb = bh.block
        if bb is None or bb.blkaddr is None:
            return None
        off = bh.off
        if end:
            i = bb.buffers.index(bh) + 1
            off = bb.buffers[i].off if i < len(bb.buffers) else bb.off
        return bb.blkaddr * self.blksiz + off

    def total_metablocks(self) -> int:
        """Number of metadata blocks flushed or dropped so far."""
        return self._metablkcnt