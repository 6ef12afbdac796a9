from os import urandom

import pytest
from Cryptodome.Cipher import AES

from pyd9.crypto import (BadMovableSedError, CipherMode, COMMON_KEY_Y, CryptoEngine, CryptoError, CryptoJob,
                         KeyFileError, Keyslot, KeyslotMissingError, add_ctr)

from conftest import NORMAL_KEYS, TEST_KEY_X, reverse_blocks

CTR_MAX = (1 << 128) - 1


def per_block(crypto: CryptoEngine, keyslot, counter, data, mode):
    out = b''
    for i in range(0, len(data), 0x10):
        out += crypto.transform_block(keyslot, add_ctr(counter, i // 0x10), data[i:i + 0x10], mode)
    return out


def test_add_ctr_wraps():
    assert add_ctr(CTR_MAX, 1) == 0
    assert add_ctr(CTR_MAX - 1, 5) == 3
    assert add_ctr(b'\xff' * 16, 2) == (1).to_bytes(16, 'big')
    assert add_ctr(bytes(16), 0x10) == (0x10).to_bytes(16, 'big')


@pytest.mark.parametrize('mode,keyslot', [(CipherMode.CTR, Keyslot.CTRNANDOld), (CipherMode.TWLCTR, Keyslot.TWLNAND)])
def test_stream_matches_single_blocks(crypto, mode, keyslot):
    data = urandom(0x200)
    counter = 0x1234567890ABCDEF1122334455667788
    buf = bytearray(data)
    next_counter = crypto.decrypt_stream(buf, keyslot, counter, mode)
    assert bytes(buf) == per_block(crypto, keyslot, counter, data, mode)
    assert next_counter == counter + 0x20


def test_ctr_matches_aes(crypto):
    data = urandom(0x100)
    counter = 0xAABBCCDD
    buf = bytearray(data)
    crypto.decrypt_stream(buf, Keyslot.CTRNANDOld, counter)
    key = NORMAL_KEYS[Keyslot.CTRNANDOld]
    cipher = AES.new(key, AES.MODE_ECB)
    expected = b''
    for i in range(0, 0x100, 0x10):
        ks = cipher.encrypt((counter + i // 0x10).to_bytes(16, 'big'))
        expected += bytes(a ^ b for a, b in zip(data[i:i + 0x10], ks))
    assert bytes(buf) == expected


def test_twlctr_is_reversed_ctr(crypto):
    data = urandom(0x40)
    counter = 0x55
    twl = bytearray(data)
    crypto.decrypt_stream(twl, Keyslot.TWLNAND, counter, CipherMode.TWLCTR)
    plain = bytearray(reverse_blocks(data))
    crypto.decrypt_stream(plain, Keyslot.TWLNAND, counter, CipherMode.CTR)
    assert bytes(twl) == reverse_blocks(bytes(plain))


def test_counter_wraps_within_stream(crypto):
    data = urandom(0x40)
    counter = CTR_MAX - 1
    buf = bytearray(data)
    next_counter = crypto.decrypt_stream(buf, Keyslot.CTRNANDOld, counter)
    assert next_counter == 2

    cipher = AES.new(NORMAL_KEYS[Keyslot.CTRNANDOld], AES.MODE_ECB)
    expected = b''
    for i, ctr in enumerate((CTR_MAX - 1, CTR_MAX, 0, 1)):
        ks = cipher.encrypt(ctr.to_bytes(16, 'big'))
        expected += bytes(a ^ b for a, b in zip(data[i * 0x10:(i + 1) * 0x10], ks))
    assert bytes(buf) == expected


def test_chunks_continue_from_returned_counter(crypto):
    data = urandom(0x300)
    whole = bytearray(data)
    crypto.decrypt_stream(whole, Keyslot.CTRNANDOld, 0x99)

    first = bytearray(data[0:0x110])
    second = bytearray(data[0x110:])
    next_counter = crypto.decrypt_stream(first, Keyslot.CTRNANDOld, 0x99)
    crypto.decrypt_stream(second, Keyslot.CTRNANDOld, next_counter)
    assert bytes(first + second) == bytes(whole)


def test_size_must_be_block_aligned(crypto):
    with pytest.raises(ValueError):
        crypto.decrypt_stream(bytearray(0x11), Keyslot.CTRNANDOld, 0)


def test_run_job_installs_key_y(crypto):
    key_y = 0x00112233445566778899AABBCCDDEEFF
    job = CryptoJob(keyslot=Keyslot.NCCH, counter=1, size=0x20, mode=CipherMode.CTR, buffer=bytearray(0x20),
                    key_y=key_y)
    crypto.run_job(job)
    expected_key = CryptoEngine.keygen_manual(TEST_KEY_X[Keyslot.NCCH], key_y)
    assert crypto.key_normal[Keyslot.NCCH] == expected_key

    cipher = AES.new(expected_key, AES.MODE_ECB)
    assert bytes(job.buffer[0:0x10]) == cipher.encrypt((1).to_bytes(16, 'big'))


def test_install_key_y_only_when_changed(crypto):
    key_y = bytes(range(16))
    assert crypto.install_key_y(Keyslot.NCCH, key_y)
    assert not crypto.install_key_y(Keyslot.NCCH, key_y)
    assert crypto.install_key_y(Keyslot.NCCH, bytes(range(1, 17)))
    assert not crypto.install_key_y(Keyslot.NCCH, int.from_bytes(bytes(range(1, 17)), 'big'))


def test_missing_normal_key():
    crypto = CryptoEngine(load_key_files=False)
    with pytest.raises(KeyslotMissingError):
        crypto.decrypt_stream(bytearray(0x10), Keyslot.CTRNANDOld, 0)


def test_new_key_y_without_key_x_drops_normal_key():
    crypto = CryptoEngine(load_key_files=False)
    crypto.set_normal_key(Keyslot.SD, bytes(16))
    crypto.install_key_y(Keyslot.SD, bytes(range(16)))
    with pytest.raises(KeyslotMissingError):
        crypto.decrypt_stream(bytearray(0x10), Keyslot.SD, 0)


@pytest.mark.parametrize('index', range(6))
def test_decrypt_titlekey(crypto, index):
    title_id = bytes.fromhex('0004013000002C02')
    enc = bytes.fromhex('8c2a1b3d4e5f60718293a4b5c6d7e8f9')
    dec = crypto.decrypt_titlekey(enc, index, title_id)

    normal_key = CryptoEngine.keygen_manual(TEST_KEY_X[Keyslot.CommonKey], COMMON_KEY_Y[index])
    expected = AES.new(normal_key, AES.MODE_CBC, iv=title_id + bytes(8)).decrypt(enc)
    assert dec == expected


def test_decrypt_titlekey_bad_input(crypto):
    with pytest.raises(CryptoError):
        crypto.decrypt_titlekey(bytes(16), 6, bytes(8))
    with pytest.raises(CryptoError):
        crypto.decrypt_titlekey(bytes(16), 0, bytes(7))


def test_setup_sd_key(crypto):
    key_y = bytes(range(0x10, 0x20))
    movable = bytearray(0x140)
    movable[0:4] = b'SEED'
    movable[0x110:0x120] = key_y
    crypto.setup_sd_key(bytes(movable))
    assert crypto.key_y[Keyslot.SD] == int.from_bytes(key_y, 'big')
    assert crypto.key_normal[Keyslot.SD] == CryptoEngine.keygen_manual(TEST_KEY_X[Keyslot.SD],
                                                                        int.from_bytes(key_y, 'big'))


def test_setup_sd_key_bad_movable(crypto):
    with pytest.raises(BadMovableSedError):
        crypto.setup_sd_key(bytes(0x120))
    with pytest.raises(BadMovableSedError):
        crypto.setup_sd_key(b'SEED' + bytes(0x20))


def test_load_key_files(tmp_path):
    key_x = bytes(range(0xA0, 0xB0))
    (tmp_path / 'slot0x25KeyX.bin').write_bytes(key_x)
    (tmp_path / 'slot0x04KeyN.bin').write_bytes(bytes(16))
    (tmp_path / 'unrelated.bin').write_bytes(bytes(16))

    crypto = CryptoEngine(keys_dir=tmp_path)
    assert crypto.key_x[0x25] == int.from_bytes(key_x, 'big')
    assert crypto.key_normal[Keyslot.CTRNANDOld] == bytes(16)
    assert len(crypto.key_files) == 2


def test_load_key_file_errors(tmp_path):
    crypto = CryptoEngine(load_key_files=False)
    bad_name = tmp_path / 'keyx.bin'
    bad_name.write_bytes(bytes(16))
    with pytest.raises(KeyFileError):
        crypto.load_key_file(bad_name)

    short = tmp_path / 'slot0x11KeyX.bin'
    short.write_bytes(bytes(15))
    with pytest.raises(KeyFileError):
        crypto.load_key_file(short)


def test_format_state(crypto):
    state = crypto.format_state()
    assert state.startswith('| Keyslot |')
    assert 'CTRNANDOld' in state
