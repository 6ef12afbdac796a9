from hashlib import sha1, sha256
from io import BytesIO

import pytest
from Cryptodome.Cipher import AES
from Cryptodome.Util import Counter

from pyd9.crypto import CipherMode, CryptoEngine, Keyslot
from pyd9.type.nand import NAND, NANDLayout, PartitionDescriptor, Platform

CID = bytes.fromhex('0123456789abcdeffedcba9876543210')

NORMAL_KEYS = {
    Keyslot.TWLNAND: bytes.fromhex('00112233445566778899aabbccddeeff'),
    Keyslot.CTRNANDOld: bytes.fromhex('0f1e2d3c4b5a69788796a5b4c3d2e1f0'),
    Keyslot.CTRNANDNew: bytes.fromhex('a0a1a2a3a4a5a6a7a8a9aaabacadaeaf'),
}

# KeyX for keyslots that normally come from key files
TEST_KEY_X = {
    Keyslot.NCCH: 0x1F2E3D4C5B6A79889706A5B4C3D2E1F0,
    Keyslot.SD: 0x6C8B2A4F1D3E5C7B9A0F1E2D3C4B5A69,
    Keyslot.CommonKey: 0x3B5D7F91A3C5E70921436587A9CBED0F,
}

TEST_LAYOUT = NANDLayout(
    partitions=(
        PartitionDescriptor('TWLN', 0x200, 0x1E00, Keyslot.TWLNAND, CipherMode.TWLCTR),
        PartitionDescriptor('CTRNAND', 0x2000, 0x10000, Keyslot.CTRNANDOld, CipherMode.CTR, Platform.Old3DS),
        PartitionDescriptor('CTRNAND', 0x2000, 0x12000, Keyslot.CTRNANDNew, CipherMode.CTR, Platform.New3DS),
    ),
    ctr_region_start=0x2000,
    image_size={Platform.Old3DS: 0x12000, Platform.New3DS: 0x14000},
    fat16_pad_offset=0x2000,
    fat16_pad_size_mb={Platform.Old3DS: 1, Platform.New3DS: 1},
)


def reverse_blocks(data: bytes) -> bytes:
    return b''.join(data[i:i + 0x10][::-1] for i in range(0, len(data), 0x10))


def ctr_crypt(key: bytes, counter: int, data: bytes) -> bytes:
    return AES.new(key, AES.MODE_CTR, counter=Counter.new(128, initial_value=counter)).encrypt(data)


def encrypt_image(plain: bytes, platform: Platform) -> bytes:
    ctr_base = int.from_bytes(sha256(CID).digest()[0:0x10], 'big')
    twl_base = int.from_bytes(sha1(CID).digest()[0:0x10], 'little')
    image = bytearray(plain)
    for part in TEST_LAYOUT.partitions_for(platform):
        key = NORMAL_KEYS[part.keyslot]
        base = ctr_base if part.offset >= TEST_LAYOUT.ctr_region_start else twl_base
        counter = base + part.offset // 0x10
        data = bytes(image[part.offset:part.end])
        if part.mode == CipherMode.TWLCTR:
            image[part.offset:part.end] = reverse_blocks(ctr_crypt(key, counter, reverse_blocks(data)))
        else:
            image[part.offset:part.end] = ctr_crypt(key, counter, data)
    return bytes(image)


def make_crypto() -> CryptoEngine:
    crypto = CryptoEngine(load_key_files=False)
    for keyslot, key in NORMAL_KEYS.items():
        crypto.set_normal_key(keyslot, key)
    for keyslot, key in TEST_KEY_X.items():
        crypto.set_keyslot('x', keyslot, key)
    return crypto


@pytest.fixture
def crypto():
    return make_crypto()


@pytest.fixture
def make_nand():
    """Encrypt a plaintext image and open it as a NAND. The image is padded to the full size."""
    opened = []

    def _make_nand(plain: bytes = b'', encrypt_as: Platform = Platform.Old3DS, **kwargs):
        plain = plain.ljust(TEST_LAYOUT.image_size[encrypt_as], b'\0')
        kwargs.setdefault('platform', encrypt_as)
        kwargs.setdefault('cid', CID)
        nand = NAND(BytesIO(encrypt_image(plain, encrypt_as)), crypto=make_crypto(), layout=TEST_LAYOUT, **kwargs)
        opened.append(nand)
        return nand

    yield _make_nand

    for n in opened:
        n.close()
