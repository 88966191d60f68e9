import struct

import pytest

from erofskit.zcompacted import (
    ADVISE_COMPACTED_2B,
    ADVISE_FRAGMENT_PCLUSTER,
    ADVISE_INLINE_PCLUSTER,
    MAP_HEADER_SIZE,
    build_map_header,
    convert_to_compacted,
    drop_inline_pcluster,
    write_compacted_pack,
)
from erofskit.zindex import (
    LCLUSTER_TYPE_HEAD1,
    LCLUSTER_TYPE_NONHEAD,
    LCLUSTER_TYPE_PLAIN,
    LEGACY_MAP_HEADER_SIZE,
    LI_D0_CBLKCNT,
    InmemExtent,
    LclusterIndex,
    ZIndexError,
    encode_legacy_indexes,
    parse_legacy_indexes,
)

BITS = 12
BLK = 1 << BITS


def lanes_4b(pack):
    lane0, lane1, blkaddr = struct.unpack("<HHI", pack)
    return lane0, lane1, blkaddr


def legacy_meta(extents, big=False, advise=0, idata=0):
    header = build_map_header(advise, (0, 0), 0, 0, idata)
    return header + encode_legacy_indexes(extents, BITS, big_pcluster=big)


def test_map_header_idata_layout():
    h = build_map_header(ADVISE_COMPACTED_2B | ADVISE_INLINE_PCLUSTER,
                         (1, 2), 3, 0, 100)
    assert len(h) == LEGACY_MAP_HEADER_SIZE
    reserved, idata, advise, alg, cbits = struct.unpack("<HHHBB", h)
    assert reserved == 0
    assert idata == 100
    assert advise == ADVISE_COMPACTED_2B | ADVISE_INLINE_PCLUSTER
    assert alg >> 4 == 2 and alg & 0xF == 1
    assert cbits == 3


def test_map_header_fragment_offset():
    h = build_map_header(ADVISE_FRAGMENT_PCLUSTER, (0, 0), 0, 0x12345678, 55)
    (fragoff,) = struct.unpack_from("<I", h, 0)
    assert fragoff == 0x12345678


def test_pack_two_heads_bytes():
    entries = [LclusterIndex(LCLUSTER_TYPE_HEAD1, 0),
               LclusterIndex(LCLUSTER_TYPE_HEAD1, 100)]
    pack, blkaddr, dummy = write_compacted_pack(entries, 10, 4, 12, False,
                                                False, True)
    assert pack == bytes([0x00, 0x10, 0x64, 0x10, 0x0A, 0x00, 0x00, 0x00])
    assert blkaddr == 11
    assert dummy is True


def test_pack_update_blkaddr_records_bumped_head():
    entries = [LclusterIndex(LCLUSTER_TYPE_HEAD1, 0),
               LclusterIndex(LCLUSTER_TYPE_PLAIN, 0)]
    with_update, _, _ = write_compacted_pack(entries, 7, 4, 12, False, True, True)
    without, _, _ = write_compacted_pack(entries, 7, 4, 12, False, True, False)
    assert lanes_4b(without)[2] == 7
    assert lanes_4b(with_update)[2] == 7 + 1


def test_pack_cblkcnt_advances_blkaddr():
    entries = [LclusterIndex(LCLUSTER_TYPE_HEAD1, 0),
               LclusterIndex(LCLUSTER_TYPE_NONHEAD, delta=(LI_D0_CBLKCNT | 3, 0))]
    pack, blkaddr, dummy = write_compacted_pack(entries, 20, 4, 12)
    lane0, lane1, stored = lanes_4b(pack)
    assert blkaddr == 20 + 3
    assert dummy is False
    assert stored == 20
    assert lane0 >> 12 == LCLUSTER_TYPE_HEAD1
    assert lane1 >> 12 == LCLUSTER_TYPE_NONHEAD
    assert lane1 & 0xFFF == LI_D0_CBLKCNT | 3


def test_pack_last_nonhead_uses_delta1():
    entries = [LclusterIndex(LCLUSTER_TYPE_HEAD1, 0),
               LclusterIndex(LCLUSTER_TYPE_NONHEAD, delta=(1, 5))]
    pack, _, _ = write_compacted_pack(entries, 0, 4, 12)
    assert lanes_4b(pack)[1] & 0xFFF == 5


def test_pack_2b_lanes_round_trip():
    entries = [LclusterIndex(LCLUSTER_TYPE_PLAIN, i * 100) for i in range(16)]
    pack, blkaddr, _ = write_compacted_pack(entries, 0, 2, 12)
    assert len(pack) == 32
    bits = int.from_bytes(pack[:28], "little")
    for i in range(16):
        lane = (bits >> (14 * i)) & 0x3FFF
        assert lane >> 12 == LCLUSTER_TYPE_PLAIN
        assert lane & 0xFFF == i * 100
    assert blkaddr == len(entries) - 1
    assert struct.unpack_from("<I", pack, 28)[0] == 0


@pytest.mark.parametrize("destsize,bits", [(3, 12), (2, 13), (8, 12)])
def test_pack_bad_unit(destsize, bits):
    entries = [LclusterIndex(LCLUSTER_TYPE_PLAIN)] * 2
    with pytest.raises(ZIndexError):
        write_compacted_pack(entries, 0, destsize, bits)


def test_pack_wrong_count():
    with pytest.raises(ZIndexError):
        write_compacted_pack([LclusterIndex(LCLUSTER_TYPE_PLAIN)], 0, 4, 12)


def test_convert_4b_layout():
    legacy = legacy_meta([InmemExtent(3 * BLK, blkaddr=5, compressedblks=1)])
    total = (len(legacy) - LEGACY_MAP_HEADER_SIZE) // 8
    out = convert_to_compacted(legacy, 32, 0, BITS, BITS, 5)
    assert out[:MAP_HEADER_SIZE] == legacy[:MAP_HEADER_SIZE]
    assert len(out) == MAP_HEADER_SIZE + 8 * ((total + 1) // 2)
    lane0, lane1, stored = lanes_4b(out[8:16])
    assert lane0 >> 12 == LCLUSTER_TYPE_HEAD1
    assert lane1 >> 12 == LCLUSTER_TYPE_NONHEAD
    assert stored == 5 - 1


def test_convert_big_pcluster_keeps_blkaddr():
    legacy = legacy_meta([InmemExtent(3 * BLK, blkaddr=5, compressedblks=1)],
                         big=True)
    out = convert_to_compacted(legacy, 32, 0, BITS, BITS, 5, big_pcluster=True)
    assert lanes_4b(out[8:16])[2] == 5


def test_convert_2b_is_smaller():
    legacy = legacy_meta([InmemExtent(24 * BLK, blkaddr=1, compressedblks=1)])
    four = convert_to_compacted(legacy, 32, 0, BITS, BITS, 1)
    two = convert_to_compacted(legacy, 32, 0, BITS, BITS, 1, compacted_2b=True)
    assert len(two) < len(four)
    assert two[:MAP_HEADER_SIZE] == legacy[:MAP_HEADER_SIZE]


def test_convert_2b_falls_back_when_few_indexes():
    legacy = legacy_meta([InmemExtent(3 * BLK, blkaddr=2, compressedblks=1)])
    assert convert_to_compacted(legacy, 32, 0, BITS, BITS, 2,
                                compacted_2b=True) == \
        convert_to_compacted(legacy, 32, 0, BITS, BITS, 2)


def test_convert_errors():
    legacy = legacy_meta([InmemExtent(3 * BLK, blkaddr=2, compressedblks=1)])
    with pytest.raises(ZIndexError):
        convert_to_compacted(legacy, 32, 0, 11, BITS, 2)
    with pytest.raises(ZIndexError):
        convert_to_compacted(legacy, 32, 0, 15, BITS, 2)
    with pytest.raises(ZIndexError):
        convert_to_compacted(legacy, 32, 0, 13, BITS, 2, compacted_2b=True)
    with pytest.raises(ZIndexError):
        convert_to_compacted(b"\0" * 4, 32, 0, BITS, BITS, 2)


def test_drop_header_only():
    meta = legacy_meta([InmemExtent(100, blkaddr=7)],
                       advise=ADVISE_INLINE_PCLUSTER, idata=50)
    out = drop_inline_pcluster(meta, True, BITS)
    reserved, idata, advise, _, _ = struct.unpack_from("<HHHBB", out)
    assert idata == 0
    assert not advise & ADVISE_INLINE_PCLUSTER
    assert out[8:] == meta[8:]


def test_drop_full_layout_patches_eof():
    meta = legacy_meta([InmemExtent(100, blkaddr=7)],
                       advise=ADVISE_INLINE_PCLUSTER, idata=50)
    assert parse_legacy_indexes(meta[8:], 1)[0].clustertype == LCLUSTER_TYPE_HEAD1
    out = drop_inline_pcluster(meta, True, BITS, 100)
    last = parse_legacy_indexes(out[8:], 1)[0]
    assert last.clustertype == LCLUSTER_TYPE_PLAIN
    assert last.blkaddr == 7
    assert struct.unpack_from("<H", out, 2)[0] == 0


def test_drop_compact_patches_eof_lane():
    legacy = legacy_meta([InmemExtent(3 * BLK, blkaddr=5, compressedblks=1)],
                         advise=ADVISE_INLINE_PCLUSTER, idata=20)
    meta = convert_to_compacted(legacy, 32, 0, BITS, BITS, 5)
    out = drop_inline_pcluster(meta, False, BITS, 3 * BLK)
    assert len(out) == len(meta)
    base = len(meta) - 8
    (before,) = struct.unpack_from("<H", meta, base)
    (after,) = struct.unpack_from("<H", out, base)
    assert after == before & (BLK - 1)
    assert out[base + 2:] == meta[base + 2:]
    assert out[8:base] == meta[8:base]
    assert not struct.unpack_from("<H", out, 4)[0] & ADVISE_INLINE_PCLUSTER


def test_drop_too_short():
    with pytest.raises(ZIndexError):
        drop_inline_pcluster(b"\0" * 4, True, BITS)
    with pytest.raises(ZIndexError):
        drop_inline_pcluster(bytes(MAP_HEADER_SIZE), True, BITS, 10)