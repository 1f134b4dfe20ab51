# insulinlog/tests/conftest.py
import sys
from pathlib import Path

import pytest

# This file is at <project_root>/insulinlog/tests/conftest.py
# Project root is two levels up from here.
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from insulinlog.core.notifier import Notifier  # noqa: E402
from insulinlog.tests.fakes import FakeAdmin, FakeSms, FakeStore, make_cfg  # noqa: E402


@pytest.fixture
def cfg(tmp_path):
    return make_cfg(events_csv=str(tmp_path / "notifications.csv"))


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def admin():
    return FakeAdmin()


@pytest.fixture
def notifier(sms, admin, cfg):
    return Notifier(sms, admin, cfg)
