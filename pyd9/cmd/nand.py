# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from typing import TYPE_CHECKING

from ..padgen import nand_padgen
from ..type.ncch import scan_system_titles
from . import nand_from_args

if TYPE_CHECKING:
    from argparse import ArgumentParser, Namespace


def dump_main(parser: 'ArgumentParser', args: 'Namespace'):
    with nand_from_args(args) as nand:
        nand.dump(args.output)
    print(f'Dumped to {args.output}')


def restore_main(parser: 'ArgumentParser', args: 'Namespace'):
    with nand_from_args(args, 'rb+') as nand:
        nand.restore(args.image)
    print(f'Restored {args.image}')


def decrypt_partitions_main(parser: 'ArgumentParser', args: 'Namespace'):
    with nand_from_args(args) as nand:
        for filename in nand.decrypt_partitions(args.output):
            print('Wrote', filename)


def decrypt_titles_main(parser: 'ArgumentParser', args: 'Namespace'):
    with nand_from_args(args) as nand:
        titles = scan_system_titles(nand, args.output, partition=args.partition)
    print(f'{len(titles)} titles extracted')


def padgen_main(parser: 'ArgumentParser', args: 'Namespace'):
    with nand_from_args(args) as nand:
        filename = nand_padgen(nand, args.output)
    print('Wrote', filename)
