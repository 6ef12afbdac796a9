# This file is a part of pyd9.
#
# Copyright (c) 2024-2026 pyd9 contributors
# This file is licensed under The MIT License (MIT).
# You can find the full license text in LICENSE in the root of this project.

from .typereader import TypeReaderBase, TypeReaderCryptoBase, raise_if_closed, ReaderError, ReaderClosedError
