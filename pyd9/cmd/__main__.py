# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

import logging
from argparse import ArgumentParser
from sys import argv, version as pyver
from typing import TYPE_CHECKING

from .. import __version__
from ..common import PyD9Error
from . import add_key_args, add_nand_args, _platform_names
from .checkenv import main as checkenv_main
from .nand import (decrypt_partitions_main, decrypt_titles_main, dump_main as dump_nand_main,
                   padgen_main as nand_padgen_main, restore_main as restore_nand_main)
from .padgen import ncch_main as ncch_padgen_main, sd_main as sd_padgen_main
from .titlekeys import dump_ticket_main, file_main as titlekeys_file_main, nand_main as titlekeys_nand_main

if TYPE_CHECKING:
    from typing import List, Optional


def print_version(detail: int):
    if detail == 1:
        print('pyd9 ' + __version__)
    elif detail >= 2:
        pyver_short = pyver.split()[0]
        print('pyd9 ' + __version__ + ' running on Python ' + pyver_short)


def create_argparser(prog):
    p = ArgumentParser(prog=prog, description='Decrypt and recover data from Nintendo 3DS NAND images')

    p.add_argument('--version', '-V', action='count', help='Print version')
    p.add_argument('--verbose', '-v', action='count', default=0, help='Show progress (-vv for debug output)')

    subparsers = p.add_subparsers(metavar='command')

    sp = subparsers.add_parser('checkenv', help='check pyd9 environment', description='check pyd9 environment')
    sp.add_argument('--show-keys', action='store_true', help='print the state of every keyslot')
    add_key_args(sp)
    sp.set_defaults(func=checkenv_main)

    sp = subparsers.add_parser('dump-nand', help='copy the raw NAND image')
    add_nand_args(sp)
    sp.add_argument('-o', '--output', default='NAND.bin', help='output file (default: %(default)s)')
    sp.set_defaults(func=dump_nand_main)

    sp = subparsers.add_parser('restore-nand', help='write a raw image back to a NAND')
    add_nand_args(sp)
    sp.add_argument('image', help='raw image to write')
    sp.set_defaults(func=restore_nand_main)

    sp = subparsers.add_parser('decrypt-partitions', help='decrypt every NAND partition')
    add_nand_args(sp)
    sp.add_argument('-o', '--output', default='.', help='output directory (default: current directory)')
    sp.set_defaults(func=decrypt_partitions_main)

    sp = subparsers.add_parser('decrypt-titles', help='extract NCCH contents from CTRNAND')
    add_nand_args(sp)
    sp.add_argument('-o', '--output', default='.', help='output directory (default: current directory)')
    sp.add_argument('--partition', default='CTRNAND', help='partition to search (default: %(default)s)')
    sp.set_defaults(func=decrypt_titles_main)

    sp = subparsers.add_parser('nand-padgen', help='generate the CTRNAND FAT16 xorpad')
    add_nand_args(sp)
    sp.add_argument('-o', '--output', default='.', help='output directory (default: current directory)')
    sp.set_defaults(func=nand_padgen_main)

    sp = subparsers.add_parser('dump-ticket', help='copy the ticket areas out of CTRNAND')
    add_nand_args(sp)
    sp.add_argument('-o', '--output', default='ticket.bin', help='output file (default: %(default)s)')
    sp.set_defaults(func=dump_ticket_main)

    sp = subparsers.add_parser('titlekeys-nand', help='decrypt the titlekeys of tickets in CTRNAND')
    add_nand_args(sp)
    sp.add_argument('-o', '--output', default='decTitleKeys.bin', help='output file (default: %(default)s)')
    sp.set_defaults(func=titlekeys_nand_main)

    sp = subparsers.add_parser('titlekeys-file', help='decrypt the titlekeys in an encTitleKeys.bin file')
    sp.add_argument('input', help='encTitleKeys.bin')
    sp.add_argument('-o', '--output', default='decTitleKeys.bin', help='output file (default: %(default)s)')
    add_key_args(sp)
    sp.set_defaults(func=titlekeys_file_main)

    sp = subparsers.add_parser('ncch-padgen', help='generate xorpads from an ncchinfo.bin file')
    sp.add_argument('ncchinfo', help='ncchinfo.bin')
    sp.add_argument('-o', '--output', default='.', help='output directory (default: current directory)')
    sp.add_argument('--seeddb', help='seeddb.bin (default: search the config directories)')
    sp.add_argument('--abort-on-missing-seed', action='store_true',
                    help='stop if a seed is missing instead of skipping that title')
    sp.add_argument('--platform', choices=sorted(_platform_names), help='hardware generation the pads are for')
    add_key_args(sp)
    sp.set_defaults(func=ncch_padgen_main)

    sp = subparsers.add_parser('sd-padgen', help='generate xorpads from an SDinfo.bin file')
    sp.add_argument('sdinfo', help='SDinfo.bin')
    sp.add_argument('-o', '--output', default='.', help='output directory (default: current directory)')
    sp.add_argument('--movable',
                    help='movable.sed with the SD KeyY (default: search the config directories, then slot0x34KeyY.bin)')
    add_key_args(sp)
    sp.set_defaults(func=sd_padgen_main)

    return p


def main(args: 'Optional[List[str]]' = None):
    if not args:
        args = argv[1:]

    p = create_argparser('pyd9.cmd')
    a = p.parse_args(args=args)

    if a.version:
        print_version(a.version)
        return

    if 'func' not in a:
        p.print_help()
        return

    if a.verbose:
        logging.basicConfig(level=logging.DEBUG if a.verbose >= 2 else logging.INFO,
                            format='%(levelname)s:%(name)s: %(message)s')

    try:
        a.func(p, a)
    except PyD9Error as e:
        p.exit(1, f'{p.prog}: error: {e}\n')


if __name__ == '__main__':
    main()
