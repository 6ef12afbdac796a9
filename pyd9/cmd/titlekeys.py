# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from typing import TYPE_CHECKING

from ..type.ticket import decrypt_titlekeys_file, decrypt_titlekeys_nand, dump_ticket
from . import crypto_from_args, nand_from_args

if TYPE_CHECKING:
    from argparse import ArgumentParser, Namespace


def dump_ticket_main(parser: 'ArgumentParser', args: 'Namespace'):
    with nand_from_args(args) as nand:
        size = dump_ticket(nand, args.output)
    print(f'Wrote {size:#x} bytes to {args.output}')


def nand_main(parser: 'ArgumentParser', args: 'Namespace'):
    with nand_from_args(args) as nand:
        bundle = decrypt_titlekeys_nand(nand, args.output)
    print(f'Decrypted {len(bundle)} unique Title Keys')


def file_main(parser: 'ArgumentParser', args: 'Namespace'):
    bundle = decrypt_titlekeys_file(args.input, args.output, crypto_from_args(args))
    print(f'Decrypted {len(bundle)} Title Keys')
