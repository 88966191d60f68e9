"""Command-line options, file statistics and report formatting for image dumps."""

from __future__ import annotations

import getopt
import math
import re
from dataclasses import dataclass, field
from typing import Optional

FT_UNKNOWN = 0
FT_REG_FILE = 1
FT_DIR = 2
FT_CHRDEV = 3
FT_BLKDEV = 4
FT_FIFO = 5
FT_SOCK = 6
FT_SYMLINK = 7
FT_MAX = 8

FILE_CATEGORY_TYPES = (
    "unknown type",
    "regular file",
    "directory",
    "char dev",
    "block dev",
    "FIFO file",
    "SOCK file",
    "symlink file",
)

FILE_TYPES = (
    ".txt", ".so", ".xml", ".apk",
    ".odex", ".vdex", ".oat", ".rc",
    ".otf", "others",
)

# sizes are bucketed by powers of two up to (1 << FILE_MAX_SIZE_BITS) KB
FILE_MAX_SIZE_BITS = 16

INODE_FLAT_PLAIN = 0
INODE_COMPRESSED_FULL = 1
INODE_FLAT_INLINE = 2
INODE_COMPRESSED_COMPACT = 3
INODE_CHUNK_BASED = 4

FEATURE_COMPAT_SB_CHKSUM = 0x00000001
FEATURE_COMPAT_MTIME = 0x00000002
FEATURE_COMPAT_XATTR_FILTER = 0x00000004
FEATURE_INCOMPAT_ZERO_PADDING = 0x00000001
FEATURE_INCOMPAT_COMPR_CFGS = 0x00000002
FEATURE_INCOMPAT_BIG_PCLUSTER = 0x00000002
FEATURE_INCOMPAT_CHUNKED_FILE = 0x00000004
FEATURE_INCOMPAT_DEVICE_TABLE = 0x00000008
FEATURE_INCOMPAT_ZTAILPACKING = 0x00000010
FEATURE_INCOMPAT_FRAGMENTS = 0x00000020
FEATURE_INCOMPAT_DEDUPE = 0x00000020
FEATURE_INCOMPAT_XATTR_PREFIXES = 0x00000040

FEATURE_LIST = (
    (True, FEATURE_COMPAT_SB_CHKSUM, "sb_csum"),
    (True, FEATURE_COMPAT_MTIME, "mtime"),
    (True, FEATURE_COMPAT_XATTR_FILTER, "xattr_filter"),
    (False, FEATURE_INCOMPAT_ZERO_PADDING, "0padding"),
    (False, FEATURE_INCOMPAT_COMPR_CFGS, "compr_cfgs"),
    (False, FEATURE_INCOMPAT_BIG_PCLUSTER, "big_pcluster"),
    (False, FEATURE_INCOMPAT_CHUNKED_FILE, "chunked_file"),
    (False, FEATURE_INCOMPAT_DEVICE_TABLE, "device_table"),
    (False, FEATURE_INCOMPAT_ZTAILPACKING, "ztailpacking"),
    (False, FEATURE_INCOMPAT_FRAGMENTS, "fragments"),
    (False, FEATURE_INCOMPAT_DEDUPE, "dedupe"),
    (False, FEATURE_INCOMPAT_XATTR_PREFIXES, "xattr_prefixes"),
)

USAGE = (
    "Usage: {prog} [OPTIONS] IMAGE\n"
    "Dump erofs layout from IMAGE.\n"
    "\n"
    "General options:\n"
    " -V, --version   print the version number of dump.erofs and exit\n"
    " -h, --help      display this help and exit\n"
    "\n"
    " -S              show statistic information of the image\n"
    " -e              show extent info (INODE required)\n"
    " -s              show information about superblock\n"
    " --device=X      specify an extra device to be used together\n"
    " --ls            show directory contents (INODE required)\n"
    " --nid=#         show the target inode info of nid #\n"
    " --offset=#      skip # bytes at the beginning of IMAGE\n"
    " --path=X        show the target inode info of path X\n"
)

_U64 = (1 << 64) - 1
_HEADER_FORMAT = "{:<16} {:>11} {:>16} |{:<50}|\n"
_LONG_OPTIONS = ["version", "help", "nid=", "device=", "path=", "ls", "offset="]


class DumpUsageError(ValueError):
    """The command line is invalid."""


@dataclass
class DumpOptions:
    """What to show and where to read the image from."""

    image: Optional[str] = None
    totalshow: int = 0
    show_inode: bool = False
    show_extent: bool = False
    show_superblock: bool = False
    show_statistics: bool = False
    show_subdirectories: bool = False
    nid: int = 0
    inode_path: Optional[str] = None
    devices: list[str] = field(default_factory=list)
    offset: int = 0
    show_version: bool = False
    show_help: bool = False


def _atoll(text: str) -> int:
    m = re.match(r"[ \t\n\r\f\v]*([+-]?\d+)", text)
    return int(m.group(1)) & _U64 if m else 0


def _parse_offset(text: str) -> int:
    m = re.fullmatch(
        r"[ \t\n\r\f\v]*([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)", text)
    if m is None:
        if text == "":
            return 0
        raise DumpUsageError(f"invalid disk offset {text}")
    digits = m.group(2)
    if digits[:2].lower() == "0x":
        value = int(digits[2:], 16)
    elif digits.startswith("0"):
        value = int(digits, 8)
    else:
        value = int(digits)
    if m.group(1) == "-":
        value = -value
    return value & _U64


def parse_args(argv=None) -> DumpOptions:
    """Parse dump options; raises DumpUsageError on a bad command line."""
    argv = list(argv or [])
    try:
        opts, args = getopt.gnu_getopt(argv, "SVesh", _LONG_OPTIONS)
    except getopt.GetoptError as exc:
        raise DumpUsageError(str(exc)) from exc

    cfg = DumpOptions()
    for opt, value in opts:
        if opt == "-e":
            cfg.show_extent = True
            cfg.totalshow += 1
        elif opt == "-s":
            cfg.show_superblock = True
            cfg.totalshow += 1
        elif opt == "-S":
            cfg.show_statistics = True
            cfg.totalshow += 1
        elif opt in ("-V", "--version"):
            cfg.show_version = True
            return cfg
        elif opt in ("-h", "--help"):
            cfg.show_help = True
            return cfg
        elif opt == "--nid":
            cfg.show_inode = True
            cfg.nid = _atoll(value)
            cfg.totalshow += 1
        elif opt == "--device":
            cfg.devices.append(value)
        elif opt == "--path":
            cfg.inode_path = value
            cfg.show_inode = True
            cfg.totalshow += 1
        elif opt == "--ls":
            cfg.show_subdirectories = True
        elif opt == "--offset":
            cfg.offset = _parse_offset(value)

    if not args:
        raise DumpUsageError("missing argument: IMAGE")
    cfg.image = args[0]
    if len(args) > 1:
        raise DumpUsageError(f"unexpected argument: {args[1]}")

    if not cfg.totalshow:
        cfg.show_superblock = True
        cfg.totalshow = 1
    return cfg


def occupied_size(datalayout, size, blocks, blksiz) -> tuple[int, bool]:
    """Return (bytes occupied on disk, whether the data is compressed)."""
    if datalayout in (INODE_FLAT_INLINE, INODE_FLAT_PLAIN, INODE_CHUNK_BASED):
        return size, False
    if datalayout in (INODE_COMPRESSED_FULL, INODE_COMPRESSED_COMPACT):
        return blocks * blksiz, True
    raise ValueError(f"unknown datalayout {datalayout}")


def _ratio(part: int, whole: int) -> float:
    if whole:
        return 100 * part / whole
    if part:
        return math.inf
    return math.nan


class Statistics:
    """Counters gathered while walking every inode of an image."""

    def __init__(self) -> None:
        self.files = 0
        self.compressed_files = 0
        self.uncompressed_files = 0
        self.files_total_size = 0
        self.files_total_origin_size = 0
        self.file_category_stat = [0] * FT_MAX
        self.file_type_stat = [0] * len(FILE_TYPES)
        self.file_original_size = [0] * (FILE_MAX_SIZE_BITS + 1)
        self.file_comp_size = [0] * (FILE_MAX_SIZE_BITS + 1)

    @property
    def compress_rate(self) -> float:
        return _ratio(self.files_total_size, self.files_total_origin_size)

    def count_extension(self, name) -> int:
        """Count `name` under its extension; return the file type index."""
        dot = name.rfind(".")
        index = len(FILE_TYPES) - 1
        if dot >= 0:
            postfix = name[dot:]
            # an extension matches any type name it is a prefix of
            for i, ftype in enumerate(FILE_TYPES[:-1]):
                if ftype.startswith(postfix):
                    index = i
                    break
        self.file_type_stat[index] += 1
        return index

    def record_size(self, size, original) -> int:
        """Count a file size in its power-of-two KB bucket; return the bucket."""
        mark = min((size >> 10).bit_length(), FILE_MAX_SIZE_BITS)
        buckets = self.file_original_size if original else self.file_comp_size
        buckets[mark] += 1
        return mark

    def add_file(self, name, ftype, size, occupied, compressed) -> None:
        """Account for one inode.

        A `name` of None stands for the packed inode, which only adds its
        on-disk size.
        """
        if compressed:
            self.compressed_files += 1
        else:
            self.uncompressed_files += 1
        if name is None:
            self.files_total_size += occupied
            self.record_size(occupied, False)
            return
        self.files += 1
        self.file_category_stat[ftype] += 1
        if ftype == FT_REG_FILE:
            self.files_total_origin_size += size
            self.count_extension(name)
            self.files_total_size += occupied
            self.record_size(size, True)
            self.record_size(occupied, False)

    def _chart_line(self, col1: str, count: int) -> str:
        col3 = _ratio(count, self.file_category_stat[FT_REG_FILE]) \
            if self.file_category_stat[FT_REG_FILE] else 0.0
        bar = "#" * int(col3 / 2)
        return f"{col1:<16}\t{count:<11d} {col3:8.2f}% |{bar:<50}|\n"

    def _size_distribution(self, title: str, counts: list[int]) -> str:
        lines = [f"\n{title} file size distribution:\n",
                 _HEADER_FORMAT.format(">=(KB) .. <(KB) ", "count", "ratio",
                                       "distribution")]
        lower, upper = 0, 1
        for i, count in enumerate(counts):
            if i == len(counts) - 1:
                col1 = f"{lower:6d} .."
            else:
                col1 = f"{lower:6d} .. {upper:<6d}"
            lines.append(self._chart_line(col1, count))
            lower, upper = upper, upper << 1
        return "".join(lines)

    def _type_distribution(self) -> str:
        lines = ["\nFile type distribution:\n",
                 _HEADER_FORMAT.format("type", "count", "ratio", "distribution")]
        for ftype, count in zip(FILE_TYPES, self.file_type_stat):
            lines.append(self._chart_line(f"{ftype:<17}", count))
        return "".join(lines)

    def render(self) -> str:
        """Return the full statistics report."""
        lines = [f"Filesystem total file count:\t\t{self.files}\n"]
        for category, count in zip(FILE_CATEGORY_TYPES, self.file_category_stat):
            lines.append(f"Filesystem {category} count:\t\t{count}\n")
        lines.append("Filesystem compressed files:            "
                     f"{self.compressed_files}\n")
        lines.append("Filesystem uncompressed files:          "
                     f"{self.uncompressed_files}\n")
        lines.append("Filesystem total original file size:    "
                     f"{self.files_total_origin_size} Bytes\n")
        lines.append("Filesystem total file size:             "
                     f"{self.files_total_size} Bytes\n")
        lines.append("Filesystem compress rate:               "
                     f"{self.compress_rate:.2f}%\n")
        lines.append(self._size_distribution("Original", self.file_original_size))
        lines.append(self._size_distribution("On-disk", self.file_comp_size))
        lines.append(self._type_distribution())
        return "".join(lines)


def format_features(compat, incompat) -> str:
    """List the names of the feature bits set, each followed by a space."""
    return "".join(f"{name} " for is_compat, flag, name in FEATURE_LIST
                   if (compat if is_compat else incompat) & flag)


def format_access(mode) -> str:
    """Render permission bits as octal and rwx form."""
    access = mode & 0o777
    chars = "".join(c if access & (1 << (8 - i)) else "-"
                    for i, c in enumerate("rwxrwxrwx"))
    return f"{access:04o}/{chars}"


def format_extent(index, la, llen, pa, plen, deviceid=0) -> str:
    """Render one extent line of the extent table."""
    line = (f"{index:4d}: {la:8d}..{la + llen:8d} | {llen:7d} : "
            f"{pa:10d}..{pa + plen:10d} | {plen:7d}")
    if deviceid:
        line += f"  # device {deviceid}"
    return line