"""
Shared fixtures for the capture controller tests.

Pods are real kubernetes.client models; processes, /proc and the API server
are replaced by the small fakes in helpers.py so no cluster, nsenter or
tcpdump is needed.
"""

import pytest

from capture_controller_sessions import CaptureManager
from helpers import FakePopen, FakeResolver


@pytest.fixture
def popen():
    return FakePopen()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def capture_dir(tmp_path):
    return str(tmp_path / "captures")


@pytest.fixture
def manager(capture_dir, resolver, popen):
    mgr = CaptureManager(capture_dir=capture_dir, resolver=resolver, popen=popen)
    yield mgr
    mgr.stop_all()
