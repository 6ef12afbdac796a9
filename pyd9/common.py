# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from contextlib import contextmanager
from os import PathLike, fsdecode
from typing import TYPE_CHECKING

from fs import open_fs
from fs.base import FS

if TYPE_CHECKING:
    from typing import BinaryIO, IO, Iterator, Union, Optional, Tuple

    FilePath = Union[PathLike, str, bytes]
    FilePathOrObject = Union[FilePath, BinaryIO]
    DirPathOrFS = Union[PathLike, str, bytes, FS]

# size of the scratch buffer used by every chunked operation (1 MiB)
BUFFER_MAX_SIZE = 1 * 1024 * 1024

# maximum number of entries in key bundles, seed databases and pad job lists
MAX_ENTRIES = 1024


class PyD9Error(Exception):
    """Common base class for all pyd9 errors."""


def is_path(obj) -> bool:
    """Check if something is a path instead of a file-like object."""
    return isinstance(obj, (PathLike, str, bytes))


def get_fs_file_object(path: 'FilePathOrObject', fs: 'Optional[Union[FS, str]]' = None, *,
                       mode: str = 'rb') -> 'Tuple[IO, bool]':
    """
    Get a file object for a path, which can be on an OS path, a path on a filesystem, or an already opened file.

    :param path: A path, or a file-like object which is returned as-is.
    :param fs: A filesystem or an FS URL that `path` is on. Defaults to None, which means `path` is an OS path.
    :param mode: Mode to open the file with.
    :return: A file-like object, and True if it was opened here and should be closed by the caller.
    """
    if not is_path(path):
        return path, False

    if fs is None:
        return open(path, mode), True

    if not isinstance(fs, FS):
        fs = open_fs(fs)
    return fs.open(fsdecode(path), mode), True


@contextmanager
def fs_file(path: 'FilePathOrObject', fs: 'Optional[Union[FS, str]]' = None, *,
            mode: str = 'rb') -> 'Iterator[IO]':
    """
    Same as :func:`get_fs_file_object`, as a context manager. A file that was opened here is closed at the end,
    a file object that was passed in is left open.
    """
    fh, opened = get_fs_file_object(path, fs, mode=mode)
    try:
        yield fh
    finally:
        if opened:
            fh.close()


def open_output_fs(target: 'DirPathOrFS') -> 'FS':
    """
    Opens a directory that output files are written to. The directory is created if it doesn't exist.

    :param target: An OS path, an FS URL, or an already opened FS object.
    :return: An FS object.
    """
    if isinstance(target, FS):
        return target
    return open_fs(fsdecode(target), create=True)
