# SPDX-License-Identifier: Apache-2.0

__version__ = "0.1.0"
__version_tuple__ = tuple(int(part) for part in __version__.split("."))
