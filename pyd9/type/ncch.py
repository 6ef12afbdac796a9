# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

"""Module for finding NCCH contents in a decrypted NAND partition."""

from logging import getLogger
from typing import NamedTuple, TYPE_CHECKING

from ..common import BUFFER_MAX_SIZE, PyD9Error, open_output_fs
from ..util import readle
from .nand import NAND_SECTOR_SIZE

if TYPE_CHECKING:
    from typing import List, Optional
    from ..common import DirPathOrFS
    from .nand import NAND

__all__ = ['NCCH_MAGIC', 'NCCHError', 'InvalidNCCHError', 'NCCHHeaderInfo', 'NCCHContent', 'parse_ncch_header',
           'probe_ncch_header', 'scan_system_titles']

logger = getLogger(__name__)

NCCH_MAGIC = b'NCCH'
NCCH_MEDIA_UNIT = 0x200


class NCCHError(PyD9Error):
    """Generic error for NCCH operations."""


class InvalidNCCHError(NCCHError):
    """The data is not an NCCH header."""


class NCCHHeaderInfo(NamedTuple):
    content_size: int
    """Size of the whole content in bytes."""
    partition_id: int

    @property
    def filename(self) -> str:
        return f'{self.partition_id:016X}.app'


class NCCHContent(NamedTuple):
    offset: int
    """Absolute offset in the NAND."""
    size: int
    filename: str


def parse_ncch_header(header: bytes) -> NCCHHeaderInfo:
    """
    Read the fields needed to extract a content from an NCCH header.

    :param header: At least the first 0x110 bytes of an NCCH.
    :raises InvalidNCCHError: If the magic is not at 0x100.
    """
    if header[0x100:0x104] != NCCH_MAGIC:
        raise InvalidNCCHError(f'NCCH magic not found (got {header[0x100:0x104]!r} instead)')
    return NCCHHeaderInfo(content_size=readle(header[0x104:0x108]) * NCCH_MEDIA_UNIT,
                          partition_id=readle(header[0x108:0x110]))


def probe_ncch_header(sector: bytes) -> 'Optional[NCCHHeaderInfo]':
    """Same as :func:`parse_ncch_header`, but returns None if the magic is not there."""
    try:
        return parse_ncch_header(sector)
    except InvalidNCCHError:
        return None


def scan_system_titles(nand: 'NAND', out: 'DirPathOrFS', *, partition: str = 'CTRNAND') -> 'List[NCCHContent]':
    """
    Search a partition for NCCH contents and extract each one to ``<partition id>.app``.

    Every sector is checked for an NCCH header. A header with a size of zero or a size larger than what is left of
    the partition is ignored. A content whose file already exists is treated as a duplicate. Either way, searching
    continues after the end of the content, so nothing inside it is checked.

    :param nand: The NAND to search.
    :param out: Output directory or filesystem.
    :param partition: Name of the partition to search.
    :return: The contents that were extracted.
    """
    out_fs = open_output_fs(out)
    part = nand.get_partition(partition)
    found: List[NCCHContent] = []

    logger.info('Searching %s for NCCH contents...', part.name)
    pos = 0
    while pos < part.size:
        window_size = min(BUFFER_MAX_SIZE, part.size - pos)
        window = nand.read_partition_window(part, pos, window_size)
        next_pos = pos + window_size

        for rel in range(0, window_size - NAND_SECTOR_SIZE + 1, NAND_SECTOR_SIZE):
            info = probe_ncch_header(window[rel:rel + NAND_SECTOR_SIZE])
            if info is None:
                continue

            content_pos = pos + rel
            if not info.content_size or info.content_size > part.size - content_pos:
                logger.warning('Ignoring NCCH at %#010x with invalid size %#x',
                               part.offset + content_pos, info.content_size)
                continue

            filename = '/' + info.filename
            if out_fs.exists(filename):
                logger.info('Skipping duplicate %s at %#010x', info.filename, part.offset + content_pos)
            else:
                logger.info('Found %s at %#010x, size %#x', info.filename, part.offset + content_pos,
                            info.content_size)
                nand.decrypt_to_file(part, filename, content_pos, info.content_size, fs=out_fs)
                found.append(NCCHContent(part.offset + content_pos, info.content_size, info.filename))
                logger.info('%i titles found', len(found))

            # the rest of the window is inside this content
            next_pos = content_pos + info.content_size
            break

        pos = next_pos

    logger.info('Done, %i unique titles found', len(found))
    return found
