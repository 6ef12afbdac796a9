# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from os import environ
from os.path import expanduser, join as pjoin
from sys import platform

__all__ = ['windows', 'macos', 'readle', 'readbe', 'roundup', 'config_dirs']

windows = platform == 'win32'
macos = platform == 'darwin'


def readle(b: bytes) -> int:
    """Convert little-endian bytes to an int."""
    return int.from_bytes(b, 'little')


def readbe(b: bytes) -> int:
    """Convert big-endian bytes to an int."""
    return int.from_bytes(b, 'big')


def roundup(offset: int, alignment: int) -> int:
    """Round up a number to a provided alignment."""
    return -(-offset // alignment) * alignment


config_dirs = [pjoin(expanduser('~'), '.3ds'), pjoin(expanduser('~'), '3ds')]
if windows:
    config_dirs.insert(0, pjoin(environ.get('APPDATA', expanduser('~')), '3ds'))
elif macos:
    config_dirs.insert(0, pjoin(expanduser('~'), 'Library', 'Application Support', '3ds'))
