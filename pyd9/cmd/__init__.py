# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from typing import TYPE_CHECKING

from ..crypto import CryptoEngine
from ..type.nand import NAND, Platform

if TYPE_CHECKING:
    from argparse import Namespace

_platform_names = {'old': Platform.Old3DS, 'new': Platform.New3DS}


def add_key_args(p):
    p.add_argument('--keys-dir', metavar='DIR', help='directory with slot0xNNKeyX.bin files (default: search the '
                                                     'config directories)')


def add_nand_args(p):
    p.add_argument('nand', help='NAND image')
    g = p.add_mutually_exclusive_group(required=True)
    g.add_argument('--cid', help='NAND CID as hex')
    g.add_argument('--cid-file', metavar='FILE', help='file with the NAND CID')
    p.add_argument('--platform', choices=sorted(_platform_names), help='hardware generation (default: read it from '
                                                                       'the NCSD header)')
    add_key_args(p)


def crypto_from_args(args: 'Namespace') -> CryptoEngine:
    return CryptoEngine(keys_dir=args.keys_dir)


def nand_from_args(args: 'Namespace', mode: str = 'rb') -> NAND:
    cid = bytes.fromhex(args.cid) if args.cid else None
    platform = _platform_names[args.platform] if args.platform else None
    return NAND(args.nand, mode, crypto=crypto_from_args(args), cid=cid, cid_file=args.cid_file, platform=platform)
