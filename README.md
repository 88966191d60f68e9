# erofskit

Pure-Python building blocks for laying out and inspecting EROFS (Enhanced
Read-Only File System) images. It needs nothing beyond the standard library.

## Modules

- `erofskit.cache`: block-level buffer allocation. `BufferManager` hands out
  `BufferHead` objects inside `BufferBlock`s. It packs buffers of each
  `BufferType` (`DATA`, `META`, `INODE`, `DIRA`, `XATTR`, `DEVT`) into
  partly used blocks where they fit. `balloc`, `battach` and `balloon`
  reserve and grow space. `mapbh` assigns block addresses and `btell` gives
  byte positions. `bflush` flushes blocks through each head's `flush`
  callback and an optional `fill_zero` callback for padding. `bdrop`
  releases a buffer, and `total_metablocks` counts the metadata blocks
  flushed or dropped.
- `erofskit.blocklist`: `BlockListWriter` writes block maps to a text
  stream, and `open_blocklist` opens one on a file. It writes either
  source-offset lines for tar-based images (`write_tar_extent`, when
  `srcmap` is set) or per-file extent lists under a mount point
  (`write_extent`, `write`, `write_tail_end`).
- `erofskit.compress_hints`: `load_compress_hints` reads a hints file made
  of `pclustersize [cfg] pattern` lines, with `#` comments, into a
  `CompressHints` list of `CompressHint` entries. `CompressHints.match`
  returns `(pclusterblks, algorithmtype)` for a path, and the first pattern
  that matches wins. Bad patterns or lines raise `CompressHintsError`.
- `erofskit.blobchunk`: `BlobStore` splits file data into chunks and
  deduplicates them by SHA-256 in a blob file. If given a zero chunk size,
  it treats all-zero chunks of that size as holes. `write_chunked_file`,
  `write_zero_inode` and `write_tar_chunks` build `ChunkedInode` tables.
  `encode_chunk_indexes` turns a table into its on-disk bytes and can
  report extents to a `BlockListWriter`. `merge_chunks` widens the chunk
  size.
- `erofskit.zindex`: `encode_legacy_indexes` turns a list of `InmemExtent`
  into full 8-byte lcluster indexes. `parse_legacy_indexes` decodes them
  into `LclusterIndex` records. Invalid input raises `ZIndexError`.
- `erofskit.zcompacted`: `build_map_header` encodes the 8-byte map header
  of a compressed file. `write_compacted_pack` encodes one 2-byte or
  4-byte compacted pack. `convert_to_compacted` turns a header plus full
  indexes into the compacted form. `drop_inline_pcluster` clears the inline
  pcluster and can turn the EOF lcluster into a plain one.
- `erofskit.dumpstats`: `parse_args` parses dump-style options (`-S`,
  `-e`, `-s`, `-V`, `-h`, `--nid`, `--path`, `--ls`, `--device`,
  `--offset`) into `DumpOptions` and raises `DumpUsageError` on a bad
  command line. `Statistics` gathers per-inode counts through `add_file`
  and renders file-type counts, size distributions and an extension
  histogram with `render`. `occupied_size`, `format_features`,
  `format_access` and `format_extent` give single values and output lines.

## Example

```python
from erofskit.dumpstats import FT_REG_FILE, Statistics, format_access

stats = Statistics()
stats.add_file("lib.so", FT_REG_FILE, 10000, 4096, True)
print(stats.render())
print(format_access(0o755))  # 0755/rwxr-xr-x
```

```python
from erofskit.zindex import InmemExtent, encode_legacy_indexes, parse_legacy_indexes

raw = encode_legacy_indexes([InmemExtent(length=8192, blkaddr=10, compressedblks=1)], 12)
for index in parse_legacy_indexes(raw, len(raw) // 8):
    print(index)
```

## What it does not do

The package has no command-line program. It does not open, read or write
image files or parse superblocks and inodes. It does not compress or
decompress data, since it has no compression algorithms. It does not
provide per-inode compression settings or compression configuration
records. These pieces take values that a caller has read from, or will
write to, an image.

## Running the tests

Install the package with its `test` extra and run `pytest` from the project
root.