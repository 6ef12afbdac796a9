# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from os.path import isfile
from typing import TYPE_CHECKING

from ..crypto.engine import CryptoEngine, key_paths
from ..crypto.seeddb import seeddb_paths

if TYPE_CHECKING:
    from argparse import ArgumentParser, Namespace
    from typing import Iterable


def _print_list(title: str, items: 'Iterable[str]'):
    print(title)
    for item in items:
        print(' -', item)


def main(parser: 'ArgumentParser', args: 'Namespace'):
    crypto = CryptoEngine(keys_dir=args.keys_dir)
    if crypto.key_files:
        _print_list('key files loaded:', crypto.key_files)
    else:
        _print_list('no key files found. Put slot0xNNKeyX.bin files in one of these paths:',
                    key_paths + ['PYD9_KEYS_PATH (environment variable)'])

    seeddb_found = [p for p in seeddb_paths if isfile(p)]
    if seeddb_found:
        _print_list('seeddb status:', seeddb_found)
    else:
        _print_list('seeddb not found. Put it in one of these paths:',
                    seeddb_paths + ['SEEDDB_PATH (environment variable)'])

    if args.show_keys:
        print()
        print(crypto.format_state(), end='')
