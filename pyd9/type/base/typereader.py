# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from functools import wraps
from io import SEEK_END, SEEK_SET
from typing import TYPE_CHECKING

from ...common import PyD9Error, is_path
from ...crypto import CryptoEngine

if TYPE_CHECKING:
    from typing import BinaryIO, Optional
    from ...common import FilePathOrObject

__all__ = ['raise_if_closed', 'ReaderError', 'ReaderClosedError', 'TypeReaderBase', 'TypeReaderCryptoBase']


def raise_if_closed(method):
    """Wraps a reader method so it raises :class:`ReaderClosedError` if the reader was closed."""
    @wraps(method)
    def decorator(self: 'TypeReaderBase', *args, **kwargs):
        if self.closed:
            raise ReaderClosedError('I/O operation on closed file')
        return method(self, *args, **kwargs)
    return decorator


class ReaderError(PyD9Error):
    """Generic error for reader operations."""


class ReaderClosedError(ReaderError, ValueError):
    """The reader object is closed. This is also a ValueError, like operations on a closed file object."""


class TypeReaderBase:
    """
    Base class for readers of a single image file.

    The reader remembers where the file was when it was given, and every offset is relative to that. This allows
    reading an image that is embedded in a larger file.

    :param file: A file path or a file-like object with the image.
    :param closefd: Close the underlying file object when closed. Defaults to `True` for file paths, and `False` for
        file-like objects.
    :param mode: Mode to open the file with, passed to `open`. Only used if a file path was given.
    """

    closed = False
    """`True` if the reader is closed."""

    _closefd = False

    def __init__(self, file: 'FilePathOrObject', *, closefd: 'Optional[bool]' = None, mode: str = 'rb'):
        opened_here = is_path(file)
        if opened_here:
            file = open(file, mode)

        self._file: BinaryIO = file
        self._closefd = opened_here if closefd is None else closefd
        self._start = file.tell()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        """Close the reader. If closefd is `True`, the underlying file is also closed."""
        if self.closed:
            return
        self.closed = True
        if self._closefd:
            self._file.close()

    __del__ = close

    def _seek(self, offset: int = 0, whence: int = SEEK_SET):
        """Seek to an offset in the underlying file, relative to the starting offset."""
        if whence == SEEK_SET:
            offset += self._start
        return self._file.seek(offset, whence)

    def _data_size(self) -> int:
        """Number of bytes from the starting offset to the end of the underlying file."""
        return self._file.seek(0, SEEK_END) - self._start


class TypeReaderCryptoBase(TypeReaderBase):
    """
    Base class for readers that decrypt with a :class:`~.CryptoEngine`.

    :param crypto: The engine to use. Defaults to None, which creates one that loads key files from the default
        paths.

    Other arguments are the same as :class:`TypeReaderBase`.
    """

    def __init__(self, file: 'FilePathOrObject', *, closefd: 'Optional[bool]' = None, mode: str = 'rb',
                 crypto: 'Optional[CryptoEngine]' = None):
        super().__init__(file, closefd=closefd, mode=mode)
        self._crypto = CryptoEngine() if crypto is None else crypto

    @property
    def crypto(self) -> 'CryptoEngine':
        """The :class:`~.CryptoEngine` used by this reader."""
        return self._crypto
