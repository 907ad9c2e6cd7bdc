import os
import sys


# Allow running pytest from either the repo root or from within `desktop/`.
# Tests import `desktop.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import pytest

from desktop import logs


@pytest.fixture(autouse=True)
def _host_logs_in_tmp(tmp_path):
    # Keep the daily log file out of the real app data dir.
    logs.configure(tmp_path / "logs")
    yield
    logs.configure(tmp_path / "logs")
