# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

"""
Module for generating xorpads. An xorpad is the keystream for a range of encrypted data, which can be XORed with
the data to decrypt it without needing the keys.
"""

from enum import Enum
from logging import getLogger
from struct import Struct
from typing import NamedTuple, TYPE_CHECKING

from fs.path import dirname

from .common import BUFFER_MAX_SIZE, MAX_ENTRIES, PyD9Error, fs_file, open_output_fs
from .crypto import CipherMode, Keyslot, MissingSeedError, SeedDB, derive_seeded_key_y
from .type.nand import Platform
from .util import readbe

if TYPE_CHECKING:
    from typing import List, Optional, Union
    from fs.base import FS
    from .common import DirPathOrFS, FilePathOrObject
    from .crypto import CryptoEngine
    from .type.nand import NAND

__all__ = ['NCCHINFO_VERSION', 'NAND_PAD_FILENAME', 'PadgenError', 'InvalidJobListError', 'MissingSeedPolicy',
           'PadInfo', 'NCCHPadJob', 'SDPadJob', 'load_ncchinfo', 'load_sdinfo', 'ncch_keyslot', 'create_pad',
           'nand_padgen', 'ncch_padgen', 'sd_padgen']

logger = getLogger(__name__)

NCCHINFO_VERSION = 0xF0000004
NAND_PAD_FILENAME = '/nand.fat16.xorpad'

# padding (0xFFFFFFFF), version, entry count, reserved
NCCHInfoHeaderStruct = Struct('<IIII')
# counter, keyY, size in MiB, reserved, uses seed crypto, crypto method, title ID, filename
NCCHInfoEntryStruct = Struct('<16s16sIIIIQ112s')
SDInfoHeaderStruct = Struct('<I')
# counter, size in MiB, filename
SDInfoEntryStruct = Struct('<16sI180s')

# crypto method value for 9.3 titles, other non-zero values are 7.x
CRYPTO_METHOD_93 = 0x0A

MIB = 1024 * 1024


class PadgenError(PyD9Error):
    """Generic error for xorpad generation."""


class InvalidJobListError(PadgenError):
    """The job list has too few or too many entries, the wrong version, or is truncated."""


class MissingSeedPolicy(Enum):
    """What to do when a title needs a seed that is not in the seeddb."""

    Skip = 'skip'
    """Log a warning and go on to the next job."""
    Abort = 'abort'
    """Raise :class:`~.MissingSeedError`."""


class PadInfo(NamedTuple):
    keyslot: int
    counter: int
    size_mb: int
    filename: str
    key_y: 'Optional[bytes]' = None
    """KeyY to install before generating, or None to use what is already in the keyslot."""

    @property
    def size(self) -> int:
        return self.size_mb * MIB


class NCCHPadJob(NamedTuple):
    counter: int
    key_y: bytes
    size_mb: int
    uses_seed_crypto: bool
    crypto_method: int
    """0 for original crypto, 0x0A for 9.3 crypto, anything else for 7.x crypto."""
    title_id: int
    filename: str

    @property
    def uses_7x_crypto(self) -> bool:
        return bool(self.crypto_method)


class SDPadJob(NamedTuple):
    counter: int
    size_mb: int
    filename: str


def _decode_filename(raw: bytes) -> str:
    name = raw.split(b'\0', 1)[0].decode('utf-8')
    if not name:
        raise InvalidJobListError('job has an empty filename')
    # absolute filenames in job lists are relative to the root of the output
    return '/' + name.lstrip('/')


def _read_job_list(fp: 'FilePathOrObject', fs: 'Optional[FS]') -> bytes:
    with fs_file(fp, fs) as fh:
        return fh.read()


def _check_entries(data: bytes, header_size: int, n_entries: int, entry_size: int) -> bytes:
    if not n_entries or n_entries > MAX_ENTRIES:
        raise InvalidJobListError(f'too many/few entries: {n_entries}')
    end = header_size + (n_entries * entry_size)
    if len(data) < end:
        raise InvalidJobListError(f'job list is truncated (expected {end:#x} bytes, got {len(data):#x})')
    logger.info('Number of entries: %i', n_entries)
    return data[header_size:end]


def load_ncchinfo(fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None) -> 'List[NCCHPadJob]':
    """
    Load an ``ncchinfo.bin`` job list.

    :param fp: Path or file-like object.
    :param fs: Filesystem to open `fp` from, if it is a path.
    :raises InvalidJobListError: If the entry count is zero or too large, the version is wrong, or the file is
        truncated.
    """
    data = _read_job_list(fp, fs)
    if len(data) < NCCHInfoHeaderStruct.size:
        raise InvalidJobListError('ncchinfo header is truncated')
    _, version, n_entries, _ = NCCHInfoHeaderStruct.unpack_from(data)
    if version != NCCHINFO_VERSION:
        raise InvalidJobListError(f'wrong ncchinfo version {version:#010x} (expected {NCCHINFO_VERSION:#010x})')

    entries = _check_entries(data, NCCHInfoHeaderStruct.size, n_entries, NCCHInfoEntryStruct.size)
    jobs = []
    for counter, key_y, size_mb, _, uses_seed, method, title_id, filename in NCCHInfoEntryStruct.iter_unpack(entries):
        jobs.append(NCCHPadJob(counter=readbe(counter), key_y=key_y, size_mb=size_mb, uses_seed_crypto=bool(uses_seed),
                               crypto_method=method, title_id=title_id, filename=_decode_filename(filename)))
    return jobs


def load_sdinfo(fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None) -> 'List[SDPadJob]':
    """
    Load an ``SDinfo.bin`` job list.

    :param fp: Path or file-like object.
    :param fs: Filesystem to open `fp` from, if it is a path.
    :raises InvalidJobListError: If the entry count is zero or too large, or the file is truncated.
    """
    data = _read_job_list(fp, fs)
    if len(data) < SDInfoHeaderStruct.size:
        raise InvalidJobListError('SDinfo header is truncated')
    n_entries, = SDInfoHeaderStruct.unpack_from(data)

    entries = _check_entries(data, SDInfoHeaderStruct.size, n_entries, SDInfoEntryStruct.size)
    return [SDPadJob(counter=readbe(counter), size_mb=size_mb, filename=_decode_filename(filename))
            for counter, size_mb, filename in SDInfoEntryStruct.iter_unpack(entries)]


def ncch_keyslot(crypto_method: int) -> Keyslot:
    """Get the keyslot that an NCCH crypto method uses."""
    if crypto_method == CRYPTO_METHOD_93:
        return Keyslot.NCCH93
    elif crypto_method:
        return Keyslot.NCCH70
    else:
        return Keyslot.NCCH


def create_pad(crypto: 'CryptoEngine', info: PadInfo, out: 'DirPathOrFS') -> int:
    """
    Write an xorpad, which is the keystream for `info.size_mb` MiB starting at `info.counter`.

    :param crypto: Engine to generate the keystream with.
    :param info: The pad to generate.
    :param out: Output directory or filesystem.
    :return: Number of bytes written.
    """
    out_fs = open_output_fs(out)
    parent = dirname(info.filename)
    if parent not in {'', '/'}:
        out_fs.makedirs(parent, recreate=True)

    if info.key_y is not None:
        crypto.install_key_y(info.keyslot, info.key_y)

    counter = info.counter
    size = info.size
    with out_fs.openbin(info.filename, 'w') as f:
        for pos in range(0, size, BUFFER_MAX_SIZE):
            buf = bytearray(min(BUFFER_MAX_SIZE, size - pos))
            # the counter returned is where the next chunk starts
            counter = crypto.decrypt_stream(buf, info.keyslot, counter, CipherMode.CTR)
            logger.debug('%s: %#x/%#x', info.filename, pos, size)
            f.write(buf)

    return size


def nand_padgen(nand: 'NAND', out: 'DirPathOrFS') -> str:
    """
    Write the xorpad for the FAT16 filesystem in CTRNAND.

    :param nand: The NAND to generate the xorpad for.
    :param out: Output directory or filesystem.
    :return: The filename written.
    """
    layout = nand.layout
    ctrnand = nand.get_partition('CTRNAND')
    info = PadInfo(keyslot=ctrnand.keyslot, counter=nand.derive_counter(layout.fat16_pad_offset),
                   size_mb=layout.fat16_pad_size_mb[nand.platform], filename=NAND_PAD_FILENAME)

    logger.info('Creating NAND FAT16 xorpad. Size (MB): %i', info.size_mb)
    logger.info('Filename: %s', info.filename[1:])
    create_pad(nand.crypto, info, out)
    return info.filename


def ncch_padgen(crypto: 'CryptoEngine', jobs: 'List[NCCHPadJob]', out: 'DirPathOrFS', *,
                seeddb: 'Optional[SeedDB]' = None, missing_seed: MissingSeedPolicy = MissingSeedPolicy.Skip,
                platform: 'Optional[Platform]' = None) -> 'List[str]':
    """
    Write xorpads for NCCH contents.

    :param crypto: Engine to generate the keystream with.
    :param jobs: Jobs, usually from :func:`load_ncchinfo`.
    :param out: Output directory or filesystem.
    :param seeddb: Seeds for titles that use seed crypto.
    :param missing_seed: What to do if a seed is needed but not in `seeddb`.
    :param platform: If this is Old 3DS, a warning is given for 9.3 crypto, which only New 3DS supports.
    :return: The filenames written.
    """
    out_fs = open_output_fs(out)
    if seeddb is None:
        seeddb = SeedDB()

    written = []
    for i, job in enumerate(jobs, 1):
        logger.info('Creating pad number: %i. Size (MB): %i', i, job.size_mb)

        key_y = job.key_y
        if job.uses_7x_crypto and job.uses_seed_crypto:
            try:
                seed = seeddb.get_seed(job.title_id)
            except MissingSeedError:
                if missing_seed is MissingSeedPolicy.Abort:
                    raise
                logger.warning('Failed to find seed for %016x, skipping %s', job.title_id, job.filename)
                continue
            key_y = derive_seeded_key_y(key_y, seed)

        keyslot = ncch_keyslot(job.crypto_method)
        if keyslot == Keyslot.NCCH93 and platform == Platform.Old3DS:
            logger.warning('%s uses 9.3 crypto, which is not supported on Old 3DS', job.filename)

        create_pad(crypto, PadInfo(keyslot, job.counter, job.size_mb, job.filename, key_y), out_fs)
        written.append(job.filename)
        logger.info('Done!')

    return written


def sd_padgen(crypto: 'CryptoEngine', jobs: 'List[SDPadJob]', out: 'DirPathOrFS', *,
              movable: 'Optional[Union[bytes, FilePathOrObject]]' = None) -> 'List[str]':
    """
    Write xorpads for SD card contents.

    :param crypto: Engine to generate the keystream with.
    :param jobs: Jobs, usually from :func:`load_sdinfo`.
    :param out: Output directory or filesystem.
    :param movable: movable.sed contents, or a path or file-like object to read it from. Defaults to None, which
        uses the SD key already set up in `crypto`.
    :return: The filenames written.
    """
    out_fs = open_output_fs(out)

    if movable is not None:
        if isinstance(movable, (bytes, bytearray)):
            crypto.setup_sd_key(bytes(movable))
        else:
            with fs_file(movable) as fh:
                crypto.setup_sd_key(fh.read(0x140))
        logger.info('Loaded SD KeyY from movable.sed')

    written = []
    for i, job in enumerate(jobs, 1):
        logger.info('Creating pad number: %i. Size (MB): %i', i, job.size_mb)
        create_pad(crypto, PadInfo(Keyslot.SD, job.counter, job.size_mb, job.filename), out_fs)
        written.append(job.filename)
        logger.info('Done!')

    return written
