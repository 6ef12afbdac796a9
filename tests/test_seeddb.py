from hashlib import sha256
from io import BytesIO
from struct import pack

import pytest

from pyd9.crypto import (InvalidSeedDBError, InvalidSeedError, MissingSeedError, SeedDB, derive_seeded_key_y)

SEED_1 = bytes.fromhex('00112233445566778899aabbccddeeff')
SEED_2 = bytes.fromhex('ffeeddccbbaa99887766554433221100')


def make_seeddb(entries, count=None):
    if count is None:
        count = len(entries)
    data = pack('<I12x', count)
    for title_id, seed in entries:
        data += pack('<Q16s8x', title_id, seed)
    return data


def test_derive_seeded_key_y():
    key_y = bytes(range(16))
    assert derive_seeded_key_y(key_y, SEED_1) == sha256(key_y + SEED_1).digest()[0:16]
    assert derive_seeded_key_y(key_y, SEED_1) != derive_seeded_key_y(key_y, SEED_2)
    assert derive_seeded_key_y(key_y, SEED_1) != derive_seeded_key_y(bytes(16), SEED_1)


def test_derive_seeded_key_y_bad_lengths():
    with pytest.raises(InvalidSeedError):
        derive_seeded_key_y(bytes(15), SEED_1)
    with pytest.raises(InvalidSeedError):
        derive_seeded_key_y(bytes(16), SEED_1[0:8])


def test_load():
    seeddb = SeedDB.load(BytesIO(make_seeddb([(0x0004000000055D00, SEED_1), (0x0004000000164800, SEED_2)])))
    assert len(seeddb) == 2
    assert seeddb.get_seed(0x0004000000055D00) == SEED_1
    assert seeddb.get_seed('0004000000164800') == SEED_2
    assert seeddb.get_seed((0x0004000000164800).to_bytes(8, 'little')) == SEED_2
    assert 0x0004000000055D00 in seeddb


def test_save(tmp_path):
    seeddb = SeedDB({0x0004000000055D00: SEED_1})
    seeddb.add_seed('0004000000164800', SEED_2.hex())
    path = tmp_path / 'seeddb.bin'
    seeddb.save(path)
    assert path.read_bytes() == make_seeddb([(0x0004000000055D00, SEED_1), (0x0004000000164800, SEED_2)])
    assert dict(SeedDB.load(path).get_all_seeds()) == dict(seeddb.get_all_seeds())


def test_missing_seed():
    seeddb = SeedDB({0x0004000000055D00: SEED_1})
    with pytest.raises(MissingSeedError):
        seeddb.get_seed(0x0004000000164800)


@pytest.mark.parametrize('count', [0, 1025])
def test_bad_count(count):
    with pytest.raises(InvalidSeedDBError):
        SeedDB.from_bytes(make_seeddb([(1, SEED_1)], count=count))


def test_truncated():
    with pytest.raises(InvalidSeedDBError):
        SeedDB.from_bytes(make_seeddb([(1, SEED_1)], count=2))
    with pytest.raises(InvalidSeedDBError):
        SeedDB.from_bytes(b'\x01\0\0')


def test_bad_seed():
    seeddb = SeedDB()
    with pytest.raises(InvalidSeedError):
        seeddb.add_seed(1, 'not hex')
    with pytest.raises(InvalidSeedError):
        seeddb.add_seed(1, bytes(15))
