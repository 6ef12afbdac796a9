# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

"""Module for finding tickets in a NAND and recovering titlekeys from them."""

from logging import getLogger
from struct import Struct
from typing import NamedTuple, TYPE_CHECKING

from ..common import MAX_ENTRIES, PyD9Error, fs_file
from ..crypto import COMMON_KEY_Y
from .nand import NAND_SECTOR_SIZE

if TYPE_CHECKING:
    from typing import Iterable, Iterator, List, Optional
    from fs.base import FS
    from ..common import FilePathOrObject
    from ..crypto import CryptoEngine
    from .nand import NAND

__all__ = ['TICKET_SIZE', 'TICKET_MAGIC', 'TICKET_WINDOW_GAP', 'TICKET_ISSUER', 'TicketError', 'TicketNotFoundError',
           'TicketDataError', 'InvalidKeyBundleError', 'NoTitleKeysError', 'TitleKeyEntry', 'KeyBundle',
           'find_ticket_data', 'extract_title_keys', 'dump_ticket', 'decrypt_titlekeys_file',
           'decrypt_titlekeys_nand']

logger = getLogger(__name__)

# size of each ticket area copied out of CTRNAND
TICKET_SIZE = 0xD0000
TICKET_MAGIC = b'TICK'
# distance from the first ticket area to where the search for the second starts, taken from rxTools v2.4
TICKET_WINDOW_GAP = 0x11BE200

TICKET_ISSUER = b'Root-CA00000003-XS0000000c'
# first place the issuer is checked in the ticket data, after that it's checked every TICKET_STRIDE bytes
TICKET_ISSUER_START = 0x158
TICKET_STRIDE = 0x200

# relative to the issuer
TICKET_TITLEKEY_OFFSET = 0x7F
TICKET_TITLE_ID_OFFSET = 0x9C
TICKET_COMMON_KEY_INDEX_OFFSET = 0xB1

KeyBundleHeaderStruct = Struct('<I12x')
TitleKeyEntryStruct = Struct('<I4x8s16s')


class TicketError(PyD9Error):
    """Generic error for ticket operations."""


class TicketNotFoundError(TicketError):
    """The ticket magic was not found in a search window."""


class TicketDataError(TicketError):
    """The ticket areas don't fit in CTRNAND as a contiguous region."""


class InvalidKeyBundleError(TicketError):
    """A titlekey file has too few or too many entries, or is truncated."""


class NoTitleKeysError(TicketError):
    """No titlekeys were found."""


class TitleKeyEntry(NamedTuple):
    common_key_index: int
    title_id: bytes
    """Title ID as 8 big-endian bytes."""
    titlekey: bytes
    """Encrypted or decrypted titlekey, depending on where this came from."""

    @classmethod
    def from_bytes(cls, data: bytes) -> 'TitleKeyEntry':
        return cls(*TitleKeyEntryStruct.unpack(data))

    def to_bytes(self) -> bytes:
        return TitleKeyEntryStruct.pack(self.common_key_index, self.title_id, self.titlekey)

    def decrypt(self, crypto: 'CryptoEngine') -> 'TitleKeyEntry':
        """Return a copy of this entry with the titlekey decrypted."""
        return self._replace(titlekey=crypto.decrypt_titlekey(self.titlekey, self.common_key_index, self.title_id))


class KeyBundle:
    """
    A list of titlekeys. This is the format of ``encTitleKeys.bin`` and ``decTitleKeys.bin``.

    :param entries: Initial entries.
    :param max_entries: Maximum number of entries.
    :param unique: Drop entries with a Title ID that is already in the bundle. Bundles read from a file keep every
        record, so this is False for them.
    """

    __slots__ = ('_entries', 'max_entries', 'unique')

    def __init__(self, entries: 'Iterable[TitleKeyEntry]' = (), *, max_entries: int = MAX_ENTRIES,
                 unique: bool = True):
        self._entries: List[TitleKeyEntry] = []
        self.max_entries = max_entries
        self.unique = unique
        for entry in entries:
            self.add(entry)

    def __len__(self):
        return len(self._entries)

    def __iter__(self) -> 'Iterator[TitleKeyEntry]':
        return iter(self._entries)

    def __getitem__(self, item: int) -> TitleKeyEntry:
        return self._entries[item]

    def __contains__(self, title_id: bytes):
        return any(e.title_id == title_id for e in self._entries)

    def __repr__(self):
        return f'<{type(self).__name__} entries={len(self._entries)}>'

    @property
    def full(self) -> bool:
        return len(self._entries) >= self.max_entries

    def add(self, entry: TitleKeyEntry) -> bool:
        """
        Add an entry. For a bundle with unique Title IDs, nothing is done if the Title ID is already in it.

        :return: True if it was added.
        :raises InvalidKeyBundleError: If the bundle is full.
        """
        if self.unique and entry.title_id in self:
            return False
        if self.full:
            raise InvalidKeyBundleError(f'too many entries (maximum is {self.max_entries})')
        self._entries.append(entry)
        return True

    def decrypt(self, crypto: 'CryptoEngine') -> 'KeyBundle':
        """Return a new bundle with every titlekey decrypted."""
        return type(self)((e.decrypt(crypto) for e in self._entries), max_entries=self.max_entries,
                          unique=self.unique)

    @classmethod
    def from_bytes(cls, data: bytes, *, max_entries: int = MAX_ENTRIES) -> 'KeyBundle':
        """
        Load a bundle from bytes. Every record is kept, including repeated Title IDs.

        :raises InvalidKeyBundleError: If the entry count is zero or too large, or the data is truncated.
        """
        if len(data) < KeyBundleHeaderStruct.size:
            raise InvalidKeyBundleError('header is truncated')
        n_entries, = KeyBundleHeaderStruct.unpack_from(data)
        if not n_entries or n_entries > max_entries:
            raise InvalidKeyBundleError(f'too many/few entries specified: {n_entries}')

        end = KeyBundleHeaderStruct.size + (n_entries * TitleKeyEntryStruct.size)
        if len(data) < end:
            raise InvalidKeyBundleError(f'data is truncated (expected {end:#x} bytes, got {len(data):#x})')

        logger.info('Number of entries: %i', n_entries)
        entries = (TitleKeyEntry(*x) for x in TitleKeyEntryStruct.iter_unpack(data[KeyBundleHeaderStruct.size:end]))
        return cls(entries, max_entries=max_entries, unique=False)

    @classmethod
    def load(cls, fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None, max_entries: int = MAX_ENTRIES):
        """Load a bundle from a file path or file-like object."""
        with fs_file(fp, fs) as fh:
            return cls.from_bytes(fh.read(), max_entries=max_entries)

    def to_bytes(self) -> bytes:
        return KeyBundleHeaderStruct.pack(len(self._entries)) + b''.join(e.to_bytes() for e in self._entries)

    def save(self, fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None):
        """Save the bundle to a file path or file-like object."""
        with fs_file(fp, fs, mode='wb') as fh:
            fh.write(self.to_bytes())


def _find_magic(nand: 'NAND', partition, start: int) -> int:
    for pos in range(start, partition.size - NAND_SECTOR_SIZE + 1, NAND_SECTOR_SIZE):
        if nand.read_partition_window(partition, pos, 0x10)[0:4] == TICKET_MAGIC:
            return pos
    raise TicketNotFoundError(f"'TICK' not found in {partition.name} starting at {start:#x}")


def find_ticket_data(nand: 'NAND', *, partition: str = 'CTRNAND', ticket_size: int = TICKET_SIZE,
                     window_gap: int = TICKET_WINDOW_GAP) -> bytes:
    """
    Find and copy the two ticket areas in CTRNAND.

    The first area is found by searching from the start of the partition, the second by searching from
    `window_gap` bytes after the first. This only works if the ticket database is not fragmented, so the areas are
    checked to be fully inside the partition and not overlapping.

    :param nand: The NAND to search.
    :param partition: Name of the partition to search.
    :param ticket_size: Size of each ticket area.
    :param window_gap: Distance between the first area and the start of the second search.
    :return: Both ticket areas, concatenated.
    """
    part = nand.get_partition(partition)

    offsets = []
    start = 0
    for i in range(2):
        logger.info("Seeking for 'TICK' (%i)...", i + 1)
        found = _find_magic(nand, part, start)
        logger.info('Found at %#010x', part.offset + found)
        if found + ticket_size > part.size:
            raise TicketDataError(f'ticket area at {part.offset + found:#x} runs past the end of {part.name}')
        offsets.append(found)
        start = found + window_gap

    if offsets[1] < offsets[0] + ticket_size:
        raise TicketDataError(f'ticket areas at {offsets[0]:#x} and {offsets[1]:#x} overlap')

    return b''.join(nand.read_partition_window(part, o, ticket_size) for o in offsets)


def extract_title_keys(data: bytes, crypto: 'CryptoEngine', *, max_entries: int = MAX_ENTRIES) -> KeyBundle:
    """
    Search ticket data for tickets and decrypt their titlekeys.

    Tickets are found by the signature issuer, which is checked every 0x200 bytes. Tickets with a Title ID that was
    already found are skipped.

    :param data: Ticket data, e.g. from :func:`find_ticket_data`.
    :param crypto: Engine used to decrypt the titlekeys.
    :param max_entries: Maximum number of titlekeys. Searching stops when it is reached.
    :return: A bundle with decrypted titlekeys.
    """
    bundle = KeyBundle(max_entries=max_entries)
    for i in range(TICKET_ISSUER_START, len(data) - TICKET_STRIDE, TICKET_STRIDE):
        if data[i:i + len(TICKET_ISSUER)] != TICKET_ISSUER:
            continue

        title_id = data[i + TICKET_TITLE_ID_OFFSET:i + TICKET_TITLE_ID_OFFSET + 8]
        if title_id in bundle:
            continue

        if bundle.full:
            logger.warning('Stopped at %#x, titlekey limit of %i reached', i, max_entries)
            break

        common_key_index = data[i + TICKET_COMMON_KEY_INDEX_OFFSET]
        if common_key_index >= len(COMMON_KEY_Y):
            logger.warning('Ignoring ticket at %#x with invalid common key index %i', i, common_key_index)
            continue

        entry = TitleKeyEntry(common_key_index=common_key_index,
                              title_id=title_id,
                              titlekey=data[i + TICKET_TITLEKEY_OFFSET:i + TICKET_TITLEKEY_OFFSET + 0x10])
        bundle.add(entry.decrypt(crypto))

    logger.info('Decrypted %i unique Title Keys', len(bundle))
    return bundle


def dump_ticket(nand: 'NAND', fp: 'FilePathOrObject', *, fs: 'Optional[FS]' = None, **kwargs) -> int:
    """
    Write both ticket areas to a file (``ticket.bin``).

    :param nand: The NAND to search.
    :param fp: Output path or file-like object.
    :param fs: Filesystem to create the output on, if `fp` is a path.
    :param kwargs: Passed to :func:`find_ticket_data`.
    :return: Number of bytes written.
    """
    data = find_ticket_data(nand, **kwargs)
    with fs_file(fp, fs, mode='wb') as fh:
        fh.write(data)
    return len(data)


def decrypt_titlekeys_file(src: 'FilePathOrObject', dst: 'FilePathOrObject', crypto: 'CryptoEngine', *,
                           fs: 'Optional[FS]' = None) -> KeyBundle:
    """
    Decrypt every titlekey in an ``encTitleKeys.bin`` file and write a ``decTitleKeys.bin`` file.

    :param src: Input path or file-like object.
    :param dst: Output path or file-like object.
    :param crypto: Engine used to decrypt the titlekeys.
    :param fs: Filesystem for both paths, if they are paths.
    :return: The decrypted bundle.
    """
    bundle = KeyBundle.load(src, fs=fs)
    logger.info('Decrypting Title Keys...')
    decrypted = bundle.decrypt(crypto)
    decrypted.save(dst, fs=fs)
    return decrypted


def decrypt_titlekeys_nand(nand: 'NAND', dst: 'FilePathOrObject', *, fs: 'Optional[FS]' = None,
                           **kwargs) -> KeyBundle:
    """
    Find tickets in a NAND and write their decrypted titlekeys to a ``decTitleKeys.bin`` file.

    :param nand: The NAND to search.
    :param dst: Output path or file-like object.
    :param fs: Filesystem to create the output on, if `dst` is a path.
    :param kwargs: Passed to :func:`find_ticket_data`.
    :return: The decrypted bundle.
    :raises NoTitleKeysError: If no titlekeys were found. Nothing is written in this case.
    """
    data = find_ticket_data(nand, **kwargs)
    logger.info('Decrypting Title Keys...')
    bundle = extract_title_keys(data, nand.crypto)
    if not bundle:
        raise NoTitleKeysError('no titlekeys were found in the ticket data')
    bundle.save(dst, fs=fs)
    return bundle
