import os
import sys

import pytest


# Allow running pytest from either the repo root or from within `pos_terminal/`.
# Tests import `pos_terminal.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from pos_terminal.app.engine import Engine  # noqa: E402
from pos_terminal.app.local_cache import LocalCache  # noqa: E402
from pos_terminal.tests.fakes import FakeRemoteStore  # noqa: E402


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def cache_path(tmp_path):
    return str(tmp_path / "pos_cache.sqlite")


@pytest.fixture
def make_engine(remote, cache_path):
    caches = []

    def _make(timeout_s=1.0, **kw):
        cache = LocalCache(cache_path)
        caches.append(cache)
        return Engine(remote, cache, timeout_s=timeout_s, **kw)

    yield _make
    for c in caches:
        c.close()
