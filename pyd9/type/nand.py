# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

"""Module for decrypting a Nintendo 3DS NAND image."""

from enum import IntEnum
from hashlib import sha1, sha256
from io import RawIOBase, SEEK_CUR, SEEK_END, SEEK_SET
from logging import getLogger
from typing import NamedTuple, TYPE_CHECKING

from ..common import BUFFER_MAX_SIZE, PyD9Error, fs_file, open_output_fs
from ..crypto import BLOCK_SIZE, CipherMode, CryptoEngine, Keyslot, add_ctr
from ..util import readbe, readle, roundup
from .base.typereader import TypeReaderCryptoBase, raise_if_closed

if TYPE_CHECKING:
    from typing import BinaryIO, Dict, List, Optional, Tuple, Union
    from fs.base import FS
    from ..common import DirPathOrFS, FilePath, FilePathOrObject

__all__ = ['NAND_SECTOR_SIZE', 'NANDError', 'InvalidNANDError', 'MissingCIDError', 'NANDReadError',
           'PartitionNotFoundError', 'Platform', 'PartitionDescriptor', 'NANDLayout', 'DEFAULT_LAYOUT',
           'platform_from_ncsd_header', 'detect_platform', 'PartitionFileIO', 'NAND']

logger = getLogger(__name__)

NAND_SECTOR_SIZE = 0x200

NCSD_MAGIC = b'NCSD'


class NANDError(PyD9Error):
    """Generic error for NAND operations."""


class InvalidNANDError(NANDError):
    """Invalid NAND header or image."""


class MissingCIDError(NANDError):
    """NAND CID wasn't provided, or is the wrong size."""


class NANDReadError(NANDError):
    """The image ended before the requested sectors."""


class PartitionNotFoundError(NANDError):
    """The partition does not exist for this platform."""


class Platform(IntEnum):
    """Hardware generation. Some partitions and keyslots are only valid on one of them."""

    Old3DS = 0
    New3DS = 1


class PartitionDescriptor(NamedTuple):
    name: str
    offset: int
    """Absolute offset in the NAND, in bytes."""
    size: int
    keyslot: int
    mode: CipherMode
    platform: 'Optional[Platform]' = None
    """Platform this partition exists on, or None for all of them."""

    @property
    def end(self) -> int:
        return self.offset + self.size


class NANDLayout(NamedTuple):
    """
    Static description of where things are in a NAND. A new hardware revision or layout gets its own instance
    instead of changing this one.
    """

    partitions: 'Tuple[PartitionDescriptor, ...]'

    ctr_region_start: int
    """
    Offsets below this use the TWL counter (derived from SHA-1 of the CID). Offsets starting here use the CTR counter
    (derived from SHA-256 of the CID).
    """

    image_size: 'Dict[Platform, int]'
    """Minimum size of a full NAND image."""

    fat16_pad_offset: int
    """Start of the region covered by the CTRNAND FAT16 xorpad."""

    fat16_pad_size_mb: 'Dict[Platform, int]'

    def partitions_for(self, platform: Platform) -> 'List[PartitionDescriptor]':
        """All partitions that are valid on a platform."""
        return [p for p in self.partitions if p.platform is None or p.platform == platform]

    def get_partition(self, name: str, platform: Platform) -> PartitionDescriptor:
        for p in self.partitions_for(platform):
            if p.name == name:
                return p
        raise PartitionNotFoundError(f'{name} does not exist on {platform.name}')


# see: http://3dbrew.org/wiki/Flash_Filesystem
DEFAULT_LAYOUT = NANDLayout(
    partitions=(
        PartitionDescriptor('TWLN', 0x00012E00, 0x08FB5200, Keyslot.TWLNAND, CipherMode.TWLCTR),
        PartitionDescriptor('TWLP', 0x09011A00, 0x020B6600, Keyslot.TWLNAND, CipherMode.TWLCTR),
        PartitionDescriptor('AGBSAVE', 0x0B100000, 0x00030000, Keyslot.AGB, CipherMode.CTR),
        PartitionDescriptor('FIRM0', 0x0B130000, 0x00400000, Keyslot.FIRM, CipherMode.CTR),
        PartitionDescriptor('FIRM1', 0x0B530000, 0x00400000, Keyslot.FIRM, CipherMode.CTR),
        PartitionDescriptor('CTRNAND', 0x0B95CA00, 0x2F3E3600, Keyslot.CTRNANDOld, CipherMode.CTR, Platform.Old3DS),
        PartitionDescriptor('CTRNAND', 0x0B95AE00, 0x41D2D200, Keyslot.CTRNANDNew, CipherMode.CTR, Platform.New3DS),
    ),
    ctr_region_start=0x0B100000,
    image_size={Platform.Old3DS: 0x3AF00000, Platform.New3DS: 0x4D800000},
    fat16_pad_offset=0x0B930000,
    fat16_pad_size_mb={Platform.Old3DS: 758, Platform.New3DS: 1055},
)

# ncsd image size in media units
_ncsd_size_platform = {0x200000: Platform.Old3DS, 0x280000: Platform.New3DS}


def platform_from_ncsd_header(header: bytes) -> Platform:
    """
    Determine the platform from the unencrypted NCSD header at the start of a NAND.

    :param header: The first 0x200 bytes of the NAND.
    :raises InvalidNANDError: If the header is not a NAND NCSD header, or the size is unknown.
    """
    if header[0x100:0x104] != NCSD_MAGIC:
        raise InvalidNANDError(f'NCSD magic not found (got {header[0x100:0x104]!r} instead)')
    image_size_mu = readle(header[0x104:0x108])
    try:
        return _ncsd_size_platform[image_size_mu]
    except KeyError:
        raise InvalidNANDError(f'unknown NAND image size in NCSD header ({image_size_mu:#x} media units)')


def detect_platform(fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None) -> Platform:
    """Determine the platform of a NAND image from its NCSD header."""
    with fs_file(fp, fs) as fh:
        fh.seek(0)
        return platform_from_ncsd_header(fh.read(NAND_SECTOR_SIZE))


class PartitionFileIO(RawIOBase):
    """
    Provides a decrypted, read-only view of a NAND partition as a file-like object. Any offset can be read, the
    blocks around it are decrypted as needed.
    """

    def __init__(self, nand: 'NAND', partition: PartitionDescriptor):
        self._nand = nand
        self._partition = partition
        self._pos = 0

    def __repr__(self):
        return f'<{type(self).__name__} partition={self._partition.name!r} nand={self._nand!r}>'

    @property
    def closed(self) -> bool:
        return self._nand.closed or super().closed

    def _check_open(self):
        if self.closed:
            raise ValueError('I/O operation on closed file')

    def readable(self) -> bool:
        self._check_open()
        return True

    def seekable(self) -> bool:
        self._check_open()
        return True

    def writable(self) -> bool:
        self._check_open()
        return False

    def read(self, size: int = -1) -> bytes:
        self._check_open()
        remaining = self._partition.size - self._pos
        if size < 0 or size > remaining:
            size = remaining
        if size <= 0:
            return b''
        data = self._nand.get_data(self._partition, self._pos, size)
        self._pos += len(data)
        return data

    def readinto(self, b) -> int:
        data = self.read(len(b))
        n = len(data)
        b[:n] = data
        return n

    def seek(self, offset: int, whence: int = SEEK_SET) -> int:
        self._check_open()
        if whence == SEEK_SET:
            if offset < 0:
                raise ValueError(f'negative seek value {offset}')
            new_pos = offset
        elif whence == SEEK_CUR:
            new_pos = max(self._pos + offset, 0)
        elif whence == SEEK_END:
            new_pos = max(self._partition.size + offset, 0)
        else:
            raise ValueError(f'invalid whence ({whence})')
        self._pos = min(new_pos, self._partition.size)
        return self._pos

    def tell(self) -> int:
        self._check_open()
        return self._pos


class NAND(TypeReaderCryptoBase):
    """
    Reads a Nintendo 3DS NAND image.

    The NAND CID is used to generate the counters for both the TWL and CTR regions, so it is required.

    :param file: A file path or a file-like object with the NAND data.
    :param mode: Mode to open the file with, passed to `open`. Use ``rb+`` to restore an image. Only used if a file
        path was given.
    :param closefd: Close the underlying file object when closed. Defaults to `True` for file paths, and `False` for
        file-like objects.
    :param crypto: A custom :class:`~.CryptoEngine` object to be used. Defaults to None, which causes a new one to
        be created.
    :param cid: NAND CID. Overrides `cid_file` if both are provided.
    :param cid_file: Path to a file containing the NAND CID.
    :param platform: The hardware generation. Defaults to None, which reads it from the NCSD header.
    :param layout: Partition layout to use.
    """

    __slots__ = ('counter', 'counter_twl', 'layout', 'platform', 'image_size')

    def __init__(self, file: 'FilePathOrObject', mode: str = 'rb', *, closefd: bool = None,
                 crypto: CryptoEngine = None, cid: bytes = None, cid_file: 'FilePath' = None,
                 platform: 'Optional[Platform]' = None, layout: NANDLayout = DEFAULT_LAYOUT):
        super().__init__(file=file, mode=mode, closefd=closefd, crypto=crypto)

        self.layout = layout

        # cid should take precedence over the file
        if cid_file and not cid:
            with open(cid_file, 'rb') as f:
                cid = f.read(0x10)
                logger.info('Loaded CID from file %s', cid_file)

        if not cid:
            raise MissingCIDError('NAND CID was not provided in the cid or cid_file arguments')
        if len(cid) != 0x10:
            raise MissingCIDError(f'NAND CID must be 0x10 bytes, got {len(cid):#x}')

        self.counter = readbe(sha256(cid).digest()[0:0x10])
        # the TWL counter is the SHA-1 digest read as little-endian
        self.counter_twl = readle(sha1(cid).digest()[0:0x10])
        logger.info('Counters for CTR and TWL generated from CID')

        self.image_size = self._data_size()

        if platform is None:
            self._seek(0)
            platform = platform_from_ncsd_header(self._file.read(0x200))
            logger.info('Detected platform from NCSD header: %s', platform.name)
        self.platform = platform

    @property
    def partitions(self) -> 'List[PartitionDescriptor]':
        """Partitions that are valid for this NAND's platform."""
        return self.layout.partitions_for(self.platform)

    def get_partition(self, partition: 'Union[str, PartitionDescriptor]') -> PartitionDescriptor:
        """
        Get a partition descriptor by name.

        :param partition: Partition name, or a descriptor which is returned as-is.
        """
        if isinstance(partition, PartitionDescriptor):
            return partition
        return self.layout.get_partition(partition, self.platform)

    def derive_counter(self, offset: int) -> int:
        """
        Generate the counter for an absolute offset in the NAND.

        :param offset: Byte offset. Anything within a 16-byte block gives the counter for that block.
        :return: The counter as an int.
        """
        if offset >= self.layout.ctr_region_start:
            base = self.counter
        else:
            base = self.counter_twl
        return add_ctr(base, offset // BLOCK_SIZE)

    def derive_counter_bytes(self, offset: int) -> bytes:
        """Same as :meth:`derive_counter`, returned as 16 big-endian bytes."""
        return self.derive_counter(offset).to_bytes(0x10, 'big')

    @raise_if_closed
    def read_sectors(self, start: int, count: int) -> bytes:
        """
        Read raw (encrypted) sectors.

        :param start: First sector number.
        :param count: Number of sectors.
        :raises NANDReadError: If the image ends before the last sector.
        """
        self._seek(start * NAND_SECTOR_SIZE)
        size = count * NAND_SECTOR_SIZE
        data = self._file.read(size)
        if len(data) != size:
            raise NANDReadError(f'failed to read sectors {start:#x}-{start + count - 1:#x}: '
                                f'got {len(data):#x} of {size:#x} bytes')
        return data

    @raise_if_closed
    def write_sectors(self, start: int, data: bytes):
        """
        Write raw sectors.

        :param start: First sector number.
        :param data: Data to write, which must be a whole number of sectors.
        """
        if len(data) % NAND_SECTOR_SIZE:
            raise ValueError(f'data size {len(data):#x} is not a multiple of the sector size')
        self._seek(start * NAND_SECTOR_SIZE)
        self._file.write(data)

    def _read_raw(self, offset: int, size: int) -> bytes:
        first_sector = offset // NAND_SECTOR_SIZE
        last_sector = roundup(offset + size, NAND_SECTOR_SIZE) // NAND_SECTOR_SIZE
        data = self.read_sectors(first_sector, last_sector - first_sector)
        skip = offset - (first_sector * NAND_SECTOR_SIZE)
        return data[skip:skip + size]

    def read_partition_window(self, partition: 'Union[str, PartitionDescriptor]', offset: int, size: int) -> bytes:
        """
        Read and decrypt part of a partition.

        :param partition: Partition name or descriptor.
        :param offset: Offset within the partition. Must be 16-byte aligned.
        :param size: Number of bytes. Must be a multiple of 16.
        :return: Decrypted data.
        """
        partition = self.get_partition(partition)
        if offset % BLOCK_SIZE or size % BLOCK_SIZE:
            raise ValueError(f'offset {offset:#x} and size {size:#x} must be 16-byte aligned')
        if offset < 0 or offset + size > partition.size:
            raise NANDError(f'window {offset:#x}+{size:#x} is outside of {partition.name} (size {partition.size:#x})')

        absolute = partition.offset + offset
        buf = bytearray(self._read_raw(absolute, size))
        self._crypto.decrypt_stream(buf, partition.keyslot, self.derive_counter(absolute), partition.mode)
        return bytes(buf)

    def get_data(self, partition: PartitionDescriptor, offset: int, size: int) -> bytes:
        """Read decrypted data from a partition at any byte offset. Used by :class:`PartitionFileIO`."""
        start = offset - (offset % BLOCK_SIZE)
        end = min(roundup(offset + size, BLOCK_SIZE), partition.size)
        data = self.read_partition_window(partition, start, end - start)
        return data[offset - start:offset - start + size]

    def open_partition(self, partition: 'Union[str, PartitionDescriptor]') -> PartitionFileIO:
        """
        Opens a partition for reading with on-the-fly decryption.

        :param partition: Partition name or descriptor.
        :return: A file-like object.
        """
        return PartitionFileIO(self, self.get_partition(partition))

    def decrypt_to_file(self, partition: 'Union[str, PartitionDescriptor]', fp: 'FilePathOrObject',
                        offset: int = 0, size: int = None, *, fs: 'Optional[FS]' = None) -> int:
        """
        Decrypt a partition, or a range of it, to a file. The data is processed in chunks.

        :param partition: Partition name or descriptor.
        :param fp: Output path or file-like object.
        :param offset: Offset within the partition.
        :param size: Number of bytes. Defaults to the rest of the partition.
        :param fs: Filesystem to create the output on, if `fp` is a path.
        :return: Number of bytes written.
        """
        partition = self.get_partition(partition)
        if size is None:
            size = partition.size - offset

        with fs_file(fp, fs, mode='wb') as fh:
            for pos in range(0, size, BUFFER_MAX_SIZE):
                to_read = min(BUFFER_MAX_SIZE, size - pos)
                logger.debug('%s: %#x/%#x', partition.name, pos, size)
                fh.write(self.read_partition_window(partition, offset + pos, to_read))

        return size

    def decrypt_partitions(self, out: 'DirPathOrFS') -> 'List[str]':
        """
        Decrypt every partition that is valid on this platform, as ``<NAME>.bin``.

        :param out: Output directory or filesystem.
        :return: Names of the files written.
        """
        out_fs = open_output_fs(out)
        written = []
        for partition in self.partitions:
            logger.info('Dumping & decrypting %s, size (MB): %i', partition.name, partition.size // (1024 * 1024))
            filename = f'/{partition.name}.bin'
            self.decrypt_to_file(partition, filename, fs=out_fs)
            written.append(filename)
        return written

    def dump(self, fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None) -> int:
        """
        Copy the raw (still encrypted) NAND to a file.

        :param fp: Output path or file-like object.
        :param fs: Filesystem to create the output on, if `fp` is a path.
        :return: Number of bytes written.
        """
        nand_size = self.layout.image_size[self.platform]
        logger.info('Dumping System NAND. Size (MB): %i', nand_size // (1024 * 1024))
        sectors_per_read = BUFFER_MAX_SIZE // NAND_SECTOR_SIZE
        n_sectors = nand_size // NAND_SECTOR_SIZE

        with fs_file(fp, fs, mode='wb') as fh:
            for sector in range(0, n_sectors, sectors_per_read):
                logger.debug('Dump: sector %#x/%#x', sector, n_sectors)
                fh.write(self.read_sectors(sector, min(sectors_per_read, n_sectors - sector)))

        return nand_size

    def restore(self, fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None) -> int:
        """
        Write a raw NAND image back. The NAND must have been opened for writing.

        :param fp: Path or file-like object with the raw image.
        :param fs: Filesystem to open the image from, if `fp` is a path.
        :return: Number of bytes written.
        """
        with fs_file(fp, fs) as fh:
            image_size = fh.seek(0, SEEK_END)
            fh.seek(0)
            if image_size % NAND_SECTOR_SIZE:
                raise InvalidNANDError(f'image size {image_size:#x} is not a multiple of the sector size')
            if image_size > self.layout.image_size[self.platform]:
                raise InvalidNANDError(f'image size {image_size:#x} is larger than the NAND '
                                       f'({self.layout.image_size[self.platform]:#x})')

            logger.info('Restoring System NAND. Size (MB): %i', image_size // (1024 * 1024))
            for pos in range(0, image_size, BUFFER_MAX_SIZE):
                data = fh.read(BUFFER_MAX_SIZE)
                if not data:
                    raise NANDReadError(f'image ended early at {pos:#x}')
                logger.debug('Restore: %#x/%#x', pos, image_size)
                self.write_sectors(pos // NAND_SECTOR_SIZE, data)
            self._file.flush()

        return image_size
