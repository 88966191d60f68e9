"""Writers for block list maps describing where file data landed."""

from __future__ import annotations

import stat
from typing import Optional, TextIO


class BlockListWriter:
    """Writes extent lines for tar source maps and per-file block lists."""

    def __init__(self, stream: TextIO, srcmap: bool = False,
                 mount_point: Optional[str] = None):
        self.stream = stream
        self.srcmap = srcmap
        self.mount_point = mount_point

    def __enter__(self) -> "BlockListWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.stream.close()

    def write_tar_extent(self, blkaddr, nblocks, srcoff) -> None:
        """Record a mapping from image blocks to a source file offset."""
        if not nblocks or not self.srcmap:
            return
        self.stream.write(f"{blkaddr:08x} {nblocks:8x} {srcoff:08x}\n")

    def _write_range(self, fspath, blk_start, nblocks, first_extent, last_extent):
        out = self.stream
        if first_extent:
            out.write(f"/{self.mount_point}")
            if not fspath.startswith("/"):
                out.write("/")
            out.write(fspath)
        if nblocks == 1:
            out.write(f" {blk_start}")
        else:
            out.write(f" {blk_start}-{blk_start + nblocks - 1}")
        if last_extent:
            out.write("\n")

    def write_extent(self, srcpath, blk_start, nblocks, first_extent,
                     last_extent) -> None:
        """Write one extent of a file's block list."""
        if not self.mount_point:
            return
        if not nblocks:
            if last_extent:
                self.stream.write("\n")
            return
        self._write_range(srcpath, blk_start, nblocks, first_extent, last_extent)

    def write(self, srcpath, blk_start, nblocks, has_inline_data=False) -> None:
        """Write a file's contiguous data blocks."""
        if not self.mount_point or not nblocks:
            return
        self._write_range(srcpath, blk_start, nblocks, True, not has_inline_data)

    def write_tail_end(self, srcpath, mode, size, blkaddr, blkszbits) -> None:
        """Finish a file's line with its tail block (None if none)."""
        if not self.mount_point:
            return
        if stat.S_ISDIR(mode) or stat.S_ISLNK(mode):
            return
        if size >> blkszbits:
            if blkaddr is None:
                self.stream.write("\n")
            else:
                self.stream.write(f" {blkaddr}\n")
            return
        if blkaddr is not None:
            self._write_range(srcpath, blkaddr, 1, True, True)


def open_blocklist(path, srcmap=False, mount_point=None) -> BlockListWriter:
    """Open `path` for writing and return a block list writer for it."""
    return BlockListWriter(open(path, "w", encoding="utf-8"), srcmap, mount_point)