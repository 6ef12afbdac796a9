# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from collections import namedtuple

__author__ = 'pyd9 contributors'
__copyright__ = 'Copyright (c) 2024-2026 pyd9 contributors'
__license__ = 'MIT'

VersionInfo = namedtuple('VersionInfo', 'major minor micro releaselevel serial')
version_info = VersionInfo(major=0, minor=1, micro=0, releaselevel='final', serial=0)
__version__ = '0.1.0'
