from __future__ import annotations

import logging
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version

import klinecache.utils.logs

klinecache.utils.logs.set_logger_class()

log = logging.getLogger(__name__)

try:
    __version__ = version("klinecache")
except PackageNotFoundError:
    # package is not installed
    __version__ = "0.0.0.not-installed"
