import os
import sys

import pytest

# Ensure we can import klinecache from the src/ directory and the shared
# test fakes from tests/support without installing the package
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_DIR = os.path.join(ROOT_DIR, "src")
TESTS_DIR = os.path.dirname(os.path.abspath(__file__))
for path in (SRC_DIR, TESTS_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)

from support.klines import NOW_MS  # noqa: E402
from support.klines import FakeClock  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock(NOW_MS)


@pytest.fixture
def storage_root(tmp_path):
    return tmp_path / "caches" / "klines"
