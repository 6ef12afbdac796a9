# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from logging import getLogger
from os.path import isfile, join
from typing import TYPE_CHECKING

from ..crypto import SeedDB
from ..padgen import MissingSeedPolicy, load_ncchinfo, load_sdinfo, ncch_padgen, sd_padgen
from ..util import config_dirs
from . import _platform_names, crypto_from_args

if TYPE_CHECKING:
    from argparse import ArgumentParser, Namespace

logger = getLogger(__name__)


def ncch_main(parser: 'ArgumentParser', args: 'Namespace'):
    if args.seeddb:
        seeddb = SeedDB.load(args.seeddb)
    else:
        seeddb = SeedDB.load_default()
        if seeddb is None:
            logger.warning('seeddb.bin not found, 9.x seed crypto titles will be skipped')

    jobs = load_ncchinfo(args.ncchinfo)
    policy = MissingSeedPolicy.Abort if args.abort_on_missing_seed else MissingSeedPolicy.Skip
    platform = _platform_names[args.platform] if args.platform else None
    written = ncch_padgen(crypto_from_args(args), jobs, args.output, seeddb=seeddb, missing_seed=policy,
                          platform=platform)
    print(f'Created {len(written)} of {len(jobs)} pads')


def sd_main(parser: 'ArgumentParser', args: 'Namespace'):
    movable = args.movable
    if movable is None:
        movable = next((p for p in (join(d, 'movable.sed') for d in config_dirs) if isfile(p)), None)
        if movable is None:
            logger.warning('movable.sed not found, using the SD KeyY from the key files')
        else:
            logger.info('Using movable.sed from %s', movable)

    jobs = load_sdinfo(args.sdinfo)
    written = sd_padgen(crypto_from_args(args), jobs, args.output, movable=movable)
    print(f'Created {len(written)} pads')
