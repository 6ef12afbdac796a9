# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

"""Emulates the keyslots of the Nintendo 3DS AES engine and the counter-mode routines used with NAND data."""
import logging
import re
from enum import IntEnum
from io import StringIO
from os import environ, fsdecode, listdir
from os.path import basename, isdir, join as pjoin
from typing import TYPE_CHECKING, NamedTuple

from Cryptodome.Cipher import AES
from Cryptodome.Util import Counter
from Cryptodome.Util.strxor import strxor

from ..common import PyD9Error
from ..util import config_dirs, readbe

if TYPE_CHECKING:
    from typing import Dict, List, Optional, Union
    from ..common import FilePath

__all__ = ['BLOCK_SIZE', 'COMMON_KEY_Y', 'CryptoError', 'KeyslotMissingError', 'BadMovableSedError', 'KeyFileError',
           'Keyslot', 'CipherMode', 'CryptoJob', 'CryptoEngine', 'add_ctr', 'key_paths']

logger = logging.getLogger(__name__)

BLOCK_SIZE = 0x10

# counters are 128-bit big-endian values and wrap around
CTR_MASK = (1 << 128) - 1

SD_KEY_MAGIC = b'SEED'


class CryptoError(PyD9Error):
    """Generic exception for cryptography operations."""


class KeyslotMissingError(CryptoError):
    """Normal key is not set up for the keyslot."""


class BadMovableSedError(CryptoError):
    """movable.sed provided is invalid."""


class KeyFileError(CryptoError):
    """A key file has an unrecognized name or the wrong size."""


class Keyslot(IntEnum):
    """AES engine keyslots used by the tools in this package."""

    TWLNAND = 0x03
    """Entire TWL region, including twln, twlp, and the header."""

    CTRNANDOld = 0x04
    """CTRNAND for Old Nintendo 3DS."""
    CTRNANDNew = 0x05
    """CTRNAND for New Nintendo 3DS."""
    FIRM = 0x06
    """FIRM partitions."""
    AGB = 0x07
    """AGBSAVE partition."""

    NCCH93 = 0x18
    """NCCH extra keyslot for titles exclusive to New Nintendo 3DS released after System Menu 9.3.0-21."""
    NCCH96 = 0x1B
    """NCCH extra keyslot for titles exclusive to New Nintendo 3DS released after System Menu 9.6.0-24."""
    NCCH70 = 0x25
    """NCCH extra keyslot for titles released after System Menu 7.0.0-13."""
    NCCH = 0x2C
    """NCCH original keyslot."""

    SD = 0x34
    """SD card contents under "Nintendo 3DS"."""

    CommonKey = 0x3D
    """Titlekeys in tickets."""


class CipherMode(IntEnum):
    """How a keyslot transforms data."""

    CTR = 0
    """AES-CTR with big-endian blocks."""

    TWLCTR = 1
    """AES-CTR where every block is byte-reversed before and after the transform (DSi mode)."""

    CBCDecrypt = 2
    """Each block is decrypted and XORed with the current counter, which acts as the IV. Used for titlekeys."""


COMMON_KEY_Y = (
    # eShop
    0xD07B337F9CA4385932A2E25723232EB9,
    # System
    0x0C767230F0998F1C46828202FAACBE4C,
    # Unknown
    0xC475CB3AB8C788BB575E12A10907B8A4,
    # Unknown
    0xE486EEE3D0C09C902F6686D4C06F649F,
    # Unknown
    0xED31BA9C04B067506C4497A35B7804FC,
    # Unknown
    0x5E66998AB4E8931606850FD7A16DD755
)

_base_key_x = {
    # New3DS 9.3 NCCH
    0x18: 0x82E9C9BEBFB8BDB875ECC0A07D474374,
    # New3DS 9.6 NCCH
    0x1B: 0x45AD04953992C7C893724A9A7BCE6182,
    # 7x NCCH
    0x25: 0xCEE7D8AB30C00DAE850EF5E382AC5AF3,
}

# slot0x25KeyX.bin, slot0x3DKeyY.bin, slot0x04KeyN.bin, ...
_key_file_re = re.compile(r'^slot0x([0-9a-f]{2})key([xyn])\.bin$', re.IGNORECASE)

key_paths: 'List[str]' = list(config_dirs)
try:
    key_paths.insert(0, environ['PYD9_KEYS_PATH'])
except KeyError:
    pass


def add_ctr(counter: 'Union[int, bytes]', n: int) -> 'Union[int, bytes]':
    """
    Add to a 128-bit big-endian counter, wrapping around at 2^128.

    :param counter: The counter as an int or 16 bytes.
    :param n: Number of blocks to add.
    :return: The new counter, in the same type that was given.
    """
    if isinstance(counter, (bytes, bytearray)):
        return ((readbe(counter) + n) & CTR_MASK).to_bytes(0x10, 'big')
    return (counter + n) & CTR_MASK


# used from http://www.falatic.com/index.php/108/python-and-bitwise-rotation
def rol(val: int, r_bits: int, max_bits: int) -> int:
    return (val << r_bits % max_bits) & (2 ** max_bits - 1) |\
           ((val & (2 ** max_bits - 1)) >> (max_bits - (r_bits % max_bits)))


def _reverse_blocks(data: bytes) -> bytes:
    data_len = len(data)
    data_rev = bytearray(data_len)
    for i in range(0, data_len, BLOCK_SIZE):
        data_rev[i:i + BLOCK_SIZE] = data[i:i + BLOCK_SIZE][::-1]
    return bytes(data_rev)


class CryptoJob(NamedTuple):
    """A single in-place transform over a buffer."""

    keyslot: int
    counter: int
    """Counter for the first block, as a 128-bit big-endian value."""
    size: int
    mode: CipherMode
    buffer: 'Union[bytearray, memoryview]'
    key_y: 'Optional[Union[int, bytes]]' = None
    """KeyY to install into the keyslot before the first block, or None to use what is already there."""


class CryptoEngine:
    """
    Emulates the keyslots of the Nintendo 3DS AES engine, including the key scrambler.

    Console-unique keys are not built in. They are loaded from key files named like ``slot0x04KeyX.bin`` (KeyX),
    ``slot0x3DKeyY.bin`` (KeyY) or ``slot0x06KeyN.bin`` (normal key), found in :data:`key_paths`.

    :param load_key_files: Whether to automatically load key files from :data:`key_paths`.
    :param keys_dir: A directory to load key files from instead of :data:`key_paths`.
    """

    __slots__ = ('key_x', 'key_y', 'key_normal', 'key_files')

    key_files: 'List[str]'
    """Key files that were loaded."""

    def __init__(self, *, load_key_files: bool = True, keys_dir: 'Optional[FilePath]' = None):
        self.key_x: Dict[int, int] = {}
        self.key_y: Dict[int, int] = {}
        self.key_normal: Dict[int, bytes] = {}
        self.key_files = []

        for keyslot, key in _base_key_x.items():
            self.key_x[keyslot] = key

        self._set_fixed_keys()

        if keys_dir is not None:
            self.setup_keys_from_dir(keys_dir)
        elif load_key_files:
            # later directories override earlier ones, so the first path has the highest priority
            for path in reversed(key_paths):
                if isdir(path):
                    self.setup_keys_from_dir(path)

    def _get_normal_key(self, keyslot: int) -> bytes:
        try:
            return self.key_normal[keyslot]
        except KeyError:
            raise KeyslotMissingError(f'normal key for keyslot 0x{keyslot:02x} is not set up')

    @staticmethod
    def _key_to_int(keyslot: int, key: 'Union[int, bytes]') -> int:
        if isinstance(key, (bytes, bytearray)):
            # DSi keyslots store keys little-endian
            return int.from_bytes(key, 'little' if keyslot < 0x04 else 'big')
        return key

    def set_keyslot(self, xy: str, keyslot: int, key: 'Union[int, bytes]', *, update_normal_key: bool = True):
        """
        Store a KeyX or KeyY. When both halves are known, the normal key is scrambled from them.

        :param xy: ``'x'`` or ``'y'``.
        :param keyslot: Keyslot to write to.
        :param key: The key as an int, or 16 bytes.
        :param update_normal_key: Regenerate the normal key afterwards.
        """
        if xy == 'x':
            table = self.key_x
        elif xy == 'y':
            table = self.key_y
        else:
            raise ValueError(f'xy must be x or y, not {xy!r}')

        key = self._key_to_int(keyslot, key)
        if __debug__:
            logger.debug('Key%s for keyslot %#04x: %032x', xy.upper(), keyslot, key)
        table[keyslot] = key

        if not update_normal_key:
            return
        try:
            self.key_normal[keyslot] = self.keygen(keyslot)
        except KeyError:
            if xy == 'y':
                # a normal key made from the old KeyY is not valid anymore
                self.key_normal.pop(keyslot, None)

    def set_normal_key(self, keyslot: int, key: bytes):
        """Store a normal key directly, skipping the key scrambler."""
        if __debug__:
            logger.debug('Normal key for keyslot %#04x: %s', keyslot, key.hex())
        self.key_normal[keyslot] = key

    def install_key_y(self, keyslot: int, key_y: 'Union[int, bytes]') -> bool:
        """
        Install a KeyY into a keyslot. Nothing is done if the keyslot already holds the same KeyY.

        :param keyslot: Keyslot to install the KeyY into.
        :param key_y: The KeyY.
        :return: True if the keyslot changed.
        """
        key_y = self._key_to_int(keyslot, key_y)
        if self.key_y.get(keyslot) == key_y and keyslot in self.key_normal:
            return False
        self.set_keyslot('y', keyslot, key_y)
        return True

    def keygen(self, keyslot: int) -> bytes:
        """
        Scramble the stored KeyX and KeyY of a keyslot into a normal key.

        :raises KeyError: If either half is missing.
        """
        scrambler = self.keygen_twl_manual if keyslot < 0x04 else self.keygen_manual
        return scrambler(self.key_x[keyslot], self.key_y[keyslot])

    @staticmethod
    def keygen_manual(key_x: int, key_y: int) -> bytes:
        """Generate a normal key using the 3DS AES key scrambler."""
        return rol((rol(key_x, 2, 128) ^ key_y) + 0x1FF9E9AAC5FE0408024591DC5D52768A, 87, 128).to_bytes(0x10, 'big')

    @staticmethod
    def keygen_twl_manual(key_x: int, key_y: int) -> bytes:
        """Generate a normal key using the DSi AES key scrambler."""
        # usually would convert to LE bytes in the end then flip with [::-1], but those just cancel out
        return rol((key_x ^ key_y) + 0xFFFEFB4E295902582A680F5F1A4F3E79, 42, 128).to_bytes(0x10, 'big')

    def _set_fixed_keys(self):
        self.set_keyslot('y', Keyslot.TWLNAND, 0xE1A00005202DDD1DBD4DC4D30AB9DC76)
        self.set_keyslot('y', Keyslot.CTRNANDNew, 0x4D804F4E9990194613A204AC584460BE)

    def load_key_file(self, path: 'FilePath'):
        """
        Load a single key file. The keyslot and key type are taken from the file name, e.g. ``slot0x25KeyX.bin``.

        :param path: Path to the key file.
        """
        path = fsdecode(path)
        match = _key_file_re.match(basename(path))
        if not match:
            raise KeyFileError(f'unrecognized key file name: {basename(path)}')

        keyslot = int(match.group(1), 16)
        xy = match.group(2).lower()

        with open(path, 'rb') as f:
            key = f.read(0x11)
        if len(key) != 0x10:
            raise KeyFileError(f'{path}: expected 0x10 bytes, got {len(key):#x}')

        logger.info('Loading key file %s', path)
        if xy == 'n':
            self.set_normal_key(keyslot, key)
        else:
            self.set_keyslot(xy, keyslot, key)
        self.key_files.append(path)

    def setup_keys_from_dir(self, path: 'FilePath'):
        """Load every key file found in a directory. Files with other names are ignored."""
        path = fsdecode(path)
        for name in sorted(listdir(path)):
            if _key_file_re.match(name):
                self.load_key_file(pjoin(path, name))

    def setup_sd_key(self, data: bytes):
        """Set up the SD KeyY from movable.sed. Must be 0x10 (only key), 0x120 (no cmac), or 0x140 (with cmac)."""
        if len(data) == 0x10:
            key = data
        elif len(data) in {0x120, 0x140}:
            if data[0:4] != SD_KEY_MAGIC:
                raise BadMovableSedError('SEED magic not found, movable.sed is corrupt')
            key = data[0x110:0x120]
        else:
            raise BadMovableSedError(f'invalid length ({len(data):#x})')

        self.install_key_y(Keyslot.SD, key)

    def setup_sd_key_from_file(self, path: 'FilePath'):
        """Set up the SD KeyY from a movable.sed file."""
        with open(path, 'rb') as f:
            self.setup_sd_key(f.read(0x140))

    def transform_block(self, keyslot: int, counter: int, block: bytes, mode: CipherMode = CipherMode.CTR) -> bytes:
        """
        Transform a single 16-byte block with the given keyslot and counter register value.

        Encryption and decryption are the same operation in the counter modes.

        :param keyslot: Keyslot to use.
        :param counter: Counter register value.
        :param block: 16 bytes of data.
        :param mode: Cipher mode.
        :return: The transformed block.
        """
        if len(block) != BLOCK_SIZE:
            raise ValueError(f'expected a block of 0x10 bytes, got {len(block):#x}')
        cipher = AES.new(self._get_normal_key(keyslot), AES.MODE_ECB)
        counter_block = (counter & CTR_MASK).to_bytes(BLOCK_SIZE, 'big')
        if mode == CipherMode.CBCDecrypt:
            return strxor(cipher.decrypt(bytes(block)), counter_block)
        keystream = cipher.encrypt(counter_block)
        if mode == CipherMode.TWLCTR:
            return strxor(bytes(block)[::-1], keystream)[::-1]
        return strxor(bytes(block), keystream)

    def run_job(self, job: CryptoJob) -> int:
        """
        Transform the buffer of a :class:`CryptoJob` in place.

        The counter is advanced by one for every 16-byte block.

        :param job: The job to run.
        :return: The counter that follows the last block, to continue the stream with.
        """
        if job.size % BLOCK_SIZE:
            raise ValueError(f'size must be a multiple of 0x10, got {job.size:#x}')

        if job.key_y is not None:
            self.install_key_y(job.keyslot, job.key_y)

        counter = job.counter & CTR_MASK
        view = memoryview(job.buffer)[0:job.size]

        if job.mode == CipherMode.CBCDecrypt:
            for offset in range(0, job.size, BLOCK_SIZE):
                view[offset:offset + BLOCK_SIZE] = self.transform_block(job.keyslot, counter,
                                                                        view[offset:offset + BLOCK_SIZE], job.mode)
                counter = add_ctr(counter, 1)
            return counter

        key = self._get_normal_key(job.keyslot)
        offset = 0
        while offset < job.size:
            # one cipher object can only be used until the counter wraps around to zero
            run = min(job.size - offset, (CTR_MASK + 1 - counter) * BLOCK_SIZE)
            cipher = AES.new(key, AES.MODE_CTR, counter=Counter.new(128, initial_value=counter))
            data = bytes(view[offset:offset + run])
            if job.mode == CipherMode.TWLCTR:
                view[offset:offset + run] = _reverse_blocks(cipher.decrypt(_reverse_blocks(data)))
            else:
                view[offset:offset + run] = cipher.decrypt(data)
            offset += run
            counter = add_ctr(counter, run // BLOCK_SIZE)

        return counter

    def decrypt_stream(self, buffer: 'Union[bytearray, memoryview]', keyslot: int, counter: int,
                       mode: CipherMode = CipherMode.CTR, *, key_y: 'Optional[Union[int, bytes]]' = None) -> int:
        """
        Decrypt (or encrypt) a buffer in place.

        :param buffer: Writable buffer whose size is a multiple of 16.
        :param keyslot: Keyslot to use.
        :param counter: Counter for the first block.
        :param mode: Cipher mode.
        :param key_y: KeyY to install before use.
        :return: The counter that follows the last block.
        """
        return self.run_job(CryptoJob(keyslot=keyslot, counter=counter, size=len(buffer), mode=mode, buffer=buffer,
                                      key_y=key_y))

    def decrypt_titlekey(self, titlekey: bytes, common_key_index: int, title_id: 'Union[str, bytes]') -> bytes:
        """
        Decrypt an encrypted titlekey.

        :param titlekey: Encrypted titlekey.
        :param common_key_index: Common key Y to use. 0 for eShop, 1 for System.
        :param title_id: Title ID, as 8 big-endian bytes or a hex string.
        :return: The decrypted titlekey.
        """
        if isinstance(title_id, str):
            title_id = bytes.fromhex(title_id)
        if len(title_id) != 8:
            raise CryptoError(f'expected an 8-byte title ID, got {len(title_id):#x} bytes')
        if not 0 <= common_key_index < len(COMMON_KEY_Y):
            raise CryptoError(f'invalid common key index {common_key_index}')

        data = bytearray(titlekey)
        self.decrypt_stream(data, Keyslot.CommonKey, readbe(title_id + (b'\0' * 8)), CipherMode.CBCDecrypt,
                            key_y=COMMON_KEY_Y[common_key_index])
        return bytes(data)

    def format_state(self) -> str:
        """Render every known keyslot as a Markdown table. Only meant for debugging."""
        def name_of(ks):
            return Keyslot(ks).name if ks in Keyslot._value2member_map_ else ''

        def cell(key):
            return '(none)'.ljust(34) if key is None else f'`{key.hex()}`'

        def half(table, ks):
            key = table.get(ks)
            return None if key is None else key.to_bytes(0x10, 'little' if ks < 0x04 else 'big')

        keyslots = sorted(set(self.key_x) | set(self.key_y) | set(self.key_normal))
        width = max([4] + [len(name_of(ks)) for ks in keyslots])

        rows = [('Keyslot', 'Name'.ljust(width), 'X'.ljust(34), 'Y'.ljust(34), 'Normal'.ljust(34)),
                ('-------', '-' * width, '-' * 34, '-' * 34, '-' * 34)]
        for ks in keyslots:
            rows.append((f'0x{ks:02X}   ', name_of(ks).ljust(width), cell(half(self.key_x, ks)),
                         cell(half(self.key_y, ks)), cell(self.key_normal.get(ks))))

        out = StringIO()
        for row in rows:
            out.write('| ' + ' | '.join(row) + ' |\n')
        return out.getvalue()
