# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from hashlib import sha256
from logging import getLogger
from os import environ
from os.path import isfile, join
from struct import Struct
from types import MappingProxyType
from typing import TYPE_CHECKING

from ..common import MAX_ENTRIES, PyD9Error, fs_file
from ..util import config_dirs

if TYPE_CHECKING:
    from typing import Dict, List, Optional, Union
    from fs.base import FS
    from ..common import FilePathOrObject

__all__ = ['SeedDBError', 'InvalidSeedDBError', 'InvalidProgramIDError', 'InvalidSeedError', 'MissingSeedError',
           'SeedDB', 'derive_seeded_key_y', 'seeddb_paths', 'find_seeddb']

logger = getLogger(__name__)

SeedDBHeaderStruct = Struct('<I12x')
SeedEntryStruct = Struct('<Q16s8x')

seeddb_paths: 'List[str]' = [join(x, 'seeddb.bin') for x in config_dirs]
try:
    # try to insert the path in the SEEDDB_PATH environment variable
    seeddb_paths.insert(0, environ['SEEDDB_PATH'])
except KeyError:
    pass


class SeedDBError(PyD9Error):
    """Generic exception for seed operations."""


class InvalidSeedDBError(SeedDBError):
    """The seed database has too few or too many entries, or is truncated."""


class InvalidProgramIDError(SeedDBError):
    """Program ID is not in a valid format."""


class InvalidSeedError(SeedDBError):
    """The provided seed is not in a valid format."""


class MissingSeedError(SeedDBError):
    """Seed not found in the database."""


def _normalize_program_id(program_id: 'Union[int, str, bytes]') -> int:
    if not isinstance(program_id, (int, str, bytes)):
        raise InvalidProgramIDError('not an int, str, or bytes')

    if isinstance(program_id, str):
        program_id = int(program_id, 16)
    elif isinstance(program_id, bytes):
        program_id = int.from_bytes(program_id, 'little')

    return program_id


def derive_seeded_key_y(key_y: bytes, seed: bytes) -> bytes:
    """
    Generate the KeyY for a title that uses seed crypto.

    :param key_y: The original KeyY, usually taken from the NCCH header.
    :param seed: The 16-byte seed for the title.
    :return: The first 16 bytes of SHA-256 over the KeyY followed by the seed.
    """
    if len(key_y) != 0x10:
        raise InvalidSeedError(f'expected a 16-byte KeyY, got {len(key_y)}')
    if len(seed) != 0x10:
        raise InvalidSeedError(f'expected a 16-byte seed, got {len(seed)}')
    return sha256(key_y + seed).digest()[0:0x10]


def find_seeddb() -> 'Optional[str]':
    """Return the first seeddb.bin that exists in :data:`seeddb_paths`, or None."""
    for path in seeddb_paths:
        if isfile(path):
            return path
    return None


class SeedDB:
    """
    A table of seeds, looked up by Program ID (Title ID).

    :param seeds: Initial seeds.
    """

    __slots__ = ('_seeds',)

    def __init__(self, seeds: 'Optional[Dict[int, bytes]]' = None):
        self._seeds: Dict[int, bytes] = {}
        if seeds:
            for program_id, seed in seeds.items():
                self.add_seed(program_id, seed)

    def __len__(self):
        return len(self._seeds)

    def __contains__(self, program_id: 'Union[int, str, bytes]'):
        return _normalize_program_id(program_id) in self._seeds

    def __repr__(self):
        return f'<{type(self).__name__} seeds={len(self._seeds)}>'

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SeedDB':
        """
        Load a seeddb from bytes.

        :param data: Raw seeddb.bin contents.
        :raises InvalidSeedDBError: If the entry count is zero or too large, or the data is truncated.
        """
        if len(data) < SeedDBHeaderStruct.size:
            raise InvalidSeedDBError('seeddb header is truncated')
        seed_count, = SeedDBHeaderStruct.unpack_from(data)
        if not seed_count or seed_count > MAX_ENTRIES:
            raise InvalidSeedDBError(f'too many/few seeddb entries: {seed_count}')

        end = SeedDBHeaderStruct.size + (seed_count * SeedEntryStruct.size)
        if len(data) < end:
            raise InvalidSeedDBError(f'seeddb is truncated (expected {end:#x} bytes, got {len(data):#x})')

        seeddb = cls()
        for title_id, seed in SeedEntryStruct.iter_unpack(data[SeedDBHeaderStruct.size:end]):
            seeddb._seeds[title_id] = seed
        logger.info('Loaded %i seeds', seed_count)
        return seeddb

    @classmethod
    def load(cls, fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None) -> 'SeedDB':
        """
        Load a seeddb file.

        :param fp: A file path or file-like object with the seeddb data.
        :param fs: Filesystem to open the file from, if `fp` is a path.
        """
        with fs_file(fp, fs) as f:
            return cls.from_bytes(f.read())

    @classmethod
    def load_default(cls) -> 'Optional[SeedDB]':
        """Load the first seeddb.bin found in :data:`seeddb_paths`, or return None if there isn't one."""
        path = find_seeddb()
        if path is None:
            return None
        logger.info('Loading seeddb from %s', path)
        return cls.load(path)

    def get_seed(self, program_id: 'Union[int, str, bytes]') -> bytes:
        """
        Get a seed for a Program ID.

        :param program_id: The Program ID to search for. If `bytes` is provided, the value must be little-endian.
        :raises MissingSeedError: If the Program ID is not in the database.
        """
        program_id = _normalize_program_id(program_id)
        try:
            return self._seeds[program_id]
        except KeyError:
            raise MissingSeedError(f'{program_id:016x}')

    def add_seed(self, program_id: 'Union[int, str, bytes]', seed: 'Union[bytes, str]'):
        """
        Adds a seed to the database.

        :param program_id: The Program ID associated with the seed. If `bytes` is provided, the value must be
            little-endian.
        :param seed: The seed to add.
        """
        program_id = _normalize_program_id(program_id)

        if isinstance(seed, str):
            try:
                seed = bytes.fromhex(seed)
            except ValueError:
                raise InvalidSeedError('seed is not in hex')

        if len(seed) != 16:
            raise InvalidSeedError(f'expected 16 bytes, got {len(seed)}')

        self._seeds[program_id] = seed

    def get_all_seeds(self):
        """
        Gets all the loaded seeds.

        :return: A read-only view of the seed database.
        """
        return MappingProxyType(self._seeds)

    def to_bytes(self) -> bytes:
        parts = [SeedDBHeaderStruct.pack(len(self._seeds))]
        for program_id, seed in self._seeds.items():
            parts.append(SeedEntryStruct.pack(program_id, seed))
        return b''.join(parts)

    def save(self, fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None):
        """
        Save the seed database to a seeddb file.

        :param fp: A file path or file-like object to write the seeddb data to.
        :param fs: Filesystem to create the file on, if `fp` is a path.
        """
        with fs_file(fp, fs, mode='wb') as f:
            f.write(self.to_bytes())
