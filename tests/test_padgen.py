import logging
from hashlib import sha256
from io import BytesIO
from os import urandom
from struct import pack

import pytest
from fs.memoryfs import MemoryFS

from pyd9.crypto import BadMovableSedError, CryptoEngine, Keyslot, MissingSeedError, SeedDB
from pyd9.padgen import (InvalidJobListError, MissingSeedPolicy, NCCHPadJob, PadInfo, SDPadJob, create_pad,
                         load_ncchinfo, load_sdinfo, nand_padgen, ncch_keyslot, ncch_padgen, sd_padgen)
from pyd9.type.nand import Platform

from conftest import CID, NORMAL_KEYS, TEST_KEY_X, TEST_LAYOUT, ctr_crypt

MIB = 1024 * 1024

KEY_Y = bytes.fromhex('5a4b3c2d1e0f11223344556677889900')
SEED = bytes.fromhex('c0ffee00112233445566778899aabbcc')
TITLE_ID = 0x0004000000164800
COUNTER = 0x00040000001648000100000000000000


def ncchinfo(entries, count=None, version=0xF0000004):
    if count is None:
        count = len(entries)
    data = pack('<IIII', 0xFFFFFFFF, version, count, 0)
    for counter, key_y, size_mb, uses_seed, method, title_id, filename in entries:
        data += pack('<16s16sIIIIQ112s', counter.to_bytes(16, 'big'), key_y, size_mb, 0, uses_seed, method,
                     title_id, filename.encode('utf-8'))
    return data


def sdinfo(entries, count=None):
    if count is None:
        count = len(entries)
    data = pack('<I', count)
    for counter, size_mb, filename in entries:
        data += pack('<16sI180s', counter.to_bytes(16, 'big'), size_mb, filename.encode('utf-8'))
    return data


def test_create_pad_is_keystream(crypto):
    info = PadInfo(Keyslot.NCCH, COUNTER, 1, '/test.xorpad', KEY_Y)
    with MemoryFS() as mfs:
        assert create_pad(crypto, info, mfs) == MIB
        pad = mfs.readbytes('/test.xorpad')

    normal_key = CryptoEngine.keygen_manual(TEST_KEY_X[Keyslot.NCCH], int.from_bytes(KEY_Y, 'big'))
    assert pad == ctr_crypt(normal_key, COUNTER, bytes(MIB))


def test_create_pad_is_deterministic(crypto):
    info = PadInfo(Keyslot.NCCH, COUNTER, 1, '/test.xorpad', KEY_Y)
    with MemoryFS() as mfs:
        create_pad(crypto, info, mfs)
        first = mfs.readbytes('/test.xorpad')
        create_pad(crypto, info, mfs)
        assert mfs.readbytes('/test.xorpad') == first


def test_pad_xor_matches_direct_decrypt(crypto):
    info = PadInfo(Keyslot.CTRNANDOld, COUNTER, 1, '/test.xorpad')
    with MemoryFS() as mfs:
        create_pad(crypto, info, mfs)
        pad = mfs.readbytes('/test.xorpad')

    data = urandom(0x1000)
    direct = bytearray(data)
    crypto.decrypt_stream(direct, Keyslot.CTRNANDOld, COUNTER)
    assert bytes(a ^ b for a, b in zip(data, pad)) == bytes(direct)


def test_create_pad_chunks(crypto, monkeypatch):
    info = PadInfo(Keyslot.CTRNANDOld, (1 << 128) - 0x100, 1, '/sub/dir/test.xorpad')
    with MemoryFS() as mfs:
        create_pad(crypto, info, mfs)
        whole = mfs.readbytes('/sub/dir/test.xorpad')

        monkeypatch.setattr('pyd9.padgen.BUFFER_MAX_SIZE', 0x1000)
        create_pad(crypto, info, mfs)
        assert mfs.readbytes('/sub/dir/test.xorpad') == whole


@pytest.mark.parametrize('platform', list(Platform))
def test_nand_padgen(make_nand, platform):
    nand = make_nand(encrypt_as=platform)
    with MemoryFS() as mfs:
        assert nand_padgen(nand, mfs) == '/nand.fat16.xorpad'
        pad = mfs.readbytes('/nand.fat16.xorpad')

    ctrnand = TEST_LAYOUT.get_partition('CTRNAND', platform)
    counter = int.from_bytes(sha256(CID).digest()[0:16], 'big') + TEST_LAYOUT.fat16_pad_offset // 0x10
    assert len(pad) == TEST_LAYOUT.fat16_pad_size_mb[platform] * MIB
    assert pad[0:0x1000] == ctr_crypt(NORMAL_KEYS[ctrnand.keyslot], counter, bytes(0x1000))


@pytest.mark.parametrize('method,keyslot', [(0, Keyslot.NCCH), (1, Keyslot.NCCH70), (0x0A, Keyslot.NCCH93),
                                            (0x0B, Keyslot.NCCH70)])
def test_ncch_keyslot(method, keyslot):
    assert ncch_keyslot(method) == keyslot


def test_load_ncchinfo():
    data = ncchinfo([(COUNTER, KEY_Y, 2, 1, 1, TITLE_ID, '/title.Main.exheader.xorpad'),
                     (1, bytes(16), 1, 0, 0, 0, 'other.xorpad')])
    jobs = load_ncchinfo(BytesIO(data))
    assert jobs == [
        NCCHPadJob(COUNTER, KEY_Y, 2, True, 1, TITLE_ID, '/title.Main.exheader.xorpad'),
        NCCHPadJob(1, bytes(16), 1, False, 0, 0, '/other.xorpad'),
    ]


@pytest.mark.parametrize('kwargs', [{'count': 0}, {'count': 1025}, {'version': 0xF0000003}, {'count': 2}])
def test_load_ncchinfo_invalid(kwargs):
    data = ncchinfo([(COUNTER, KEY_Y, 1, 0, 0, TITLE_ID, 'a.xorpad')], **kwargs)
    with pytest.raises(InvalidJobListError):
        load_ncchinfo(BytesIO(data))


def test_load_sdinfo(tmp_path):
    path = tmp_path / 'SDinfo.bin'
    path.write_bytes(sdinfo([(COUNTER, 3, '/title/00000000.app.xorpad')]))
    assert load_sdinfo(path) == [SDPadJob(COUNTER, 3, '/title/00000000.app.xorpad')]


@pytest.mark.parametrize('count', [0, 1025, 2])
def test_load_sdinfo_invalid(count):
    with pytest.raises(InvalidJobListError):
        load_sdinfo(BytesIO(sdinfo([(COUNTER, 1, 'a.xorpad')], count=count)))


def test_ncch_padgen_seed_crypto(crypto):
    seeddb = SeedDB({TITLE_ID: SEED})
    jobs = [NCCHPadJob(COUNTER, KEY_Y, 1, True, 1, TITLE_ID, '/seeded.xorpad')]
    with MemoryFS() as mfs:
        assert ncch_padgen(crypto, jobs, mfs, seeddb=seeddb) == ['/seeded.xorpad']
        pad = mfs.readbytes('/seeded.xorpad')

    seeded_key_y = sha256(KEY_Y + SEED).digest()[0:16]
    normal_key = CryptoEngine.keygen_manual(crypto.key_x[Keyslot.NCCH70], int.from_bytes(seeded_key_y, 'big'))
    assert pad[0:0x100] == ctr_crypt(normal_key, COUNTER, bytes(0x100))


def test_ncch_padgen_original_crypto(crypto):
    # seed crypto needs 7.x crypto, so the seed is not used here
    jobs = [NCCHPadJob(COUNTER, KEY_Y, 1, True, 0, TITLE_ID, '/original.xorpad')]
    with MemoryFS() as mfs:
        ncch_padgen(crypto, jobs, mfs)
        pad = mfs.readbytes('/original.xorpad')

    normal_key = CryptoEngine.keygen_manual(TEST_KEY_X[Keyslot.NCCH], int.from_bytes(KEY_Y, 'big'))
    assert pad[0:0x100] == ctr_crypt(normal_key, COUNTER, bytes(0x100))


def test_ncch_padgen_missing_seed_skips(crypto, caplog):
    jobs = [NCCHPadJob(COUNTER, KEY_Y, 1, True, 1, TITLE_ID, '/seeded.xorpad'),
            NCCHPadJob(COUNTER, KEY_Y, 1, False, 1, TITLE_ID, '/unseeded.xorpad')]
    with MemoryFS() as mfs:
        with caplog.at_level(logging.WARNING, logger='pyd9.padgen'):
            assert ncch_padgen(crypto, jobs, mfs, seeddb=SeedDB()) == ['/unseeded.xorpad']
        assert not mfs.exists('/seeded.xorpad')
    assert 'Failed to find seed' in caplog.text


def test_ncch_padgen_missing_seed_aborts(crypto):
    jobs = [NCCHPadJob(COUNTER, KEY_Y, 1, True, 1, TITLE_ID, '/seeded.xorpad'),
            NCCHPadJob(COUNTER, KEY_Y, 1, False, 1, TITLE_ID, '/unseeded.xorpad')]
    with MemoryFS() as mfs:
        with pytest.raises(MissingSeedError):
            ncch_padgen(crypto, jobs, mfs, missing_seed=MissingSeedPolicy.Abort)
        assert not mfs.exists('/unseeded.xorpad')


def test_ncch_padgen_93_on_old_3ds(crypto, caplog):
    jobs = [NCCHPadJob(COUNTER, KEY_Y, 1, False, 0x0A, TITLE_ID, '/n3ds.xorpad')]
    with MemoryFS() as mfs:
        with caplog.at_level(logging.WARNING, logger='pyd9.padgen'):
            ncch_padgen(crypto, jobs, mfs, platform=Platform.Old3DS)
        assert mfs.exists('/n3ds.xorpad')
    assert 'not supported on Old 3DS' in caplog.text


def test_sd_padgen(crypto):
    key_y = bytes(range(0x20, 0x30))
    movable = b'SEED' + bytes(0x10C) + key_y
    jobs = [SDPadJob(COUNTER, 1, '/title/content.xorpad')]
    with MemoryFS() as mfs:
        assert sd_padgen(crypto, jobs, mfs, movable=movable) == ['/title/content.xorpad']
        pad = mfs.readbytes('/title/content.xorpad')

    normal_key = CryptoEngine.keygen_manual(TEST_KEY_X[Keyslot.SD], int.from_bytes(key_y, 'big'))
    assert pad[0:0x100] == ctr_crypt(normal_key, COUNTER, bytes(0x100))


def test_sd_padgen_movable_file(crypto, tmp_path):
    path = tmp_path / 'movable.sed'
    path.write_bytes(b'SEED' + bytes(0x13C))
    with MemoryFS() as mfs:
        sd_padgen(crypto, [SDPadJob(COUNTER, 1, '/a.xorpad')], mfs, movable=path)
        assert mfs.exists('/a.xorpad')
    assert crypto.key_y[Keyslot.SD] == 0


def test_sd_padgen_bad_movable(crypto):
    with MemoryFS() as mfs:
        with pytest.raises(BadMovableSedError):
            sd_padgen(crypto, [SDPadJob(COUNTER, 1, '/a.xorpad')], mfs, movable=bytes(0x120))
        assert not mfs.exists('/a.xorpad')
