"""Pytest configuration and fixtures."""

import hashlib
import logging
import os
import shutil
import tempfile
from pathlib import Path

import pytest

import metrics
from constants import NOT_APPLICABLE
from database import IndexDatabase
from hashing import HashError


class FakeOracle:
    """Hash oracle stand-in: md5 content digests, audio digests from a lookup table.

    Args:
        audio: Mapping of file name to audio digest; other files get N/A
        failures: File names whose content hashing raises HashError
    """

    def __init__(self, audio=None, failures=()):
        self.audio = audio or {}
        self.failures = set(failures)
        self.content_calls = []
        self.audio_calls = []

    def content_fingerprint(self, path):
        self.content_calls.append(path)
        if os.path.basename(path) in self.failures:
            raise HashError(path, "simulated read error")
        with open(path, 'rb') as f:
            return hashlib.md5(f.read()).hexdigest()

    def audio_fingerprint(self, path):
        self.audio_calls.append(path)
        return self.audio.get(os.path.basename(path), NOT_APPLICABLE)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with empty counters."""
    metrics.get_metrics().reset()
    yield
    metrics.get_metrics().reset()


@pytest.fixture(autouse=True)
def restore_logging():
    """Remove handlers installed by dupelink.main() during a test."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if getattr(handler, 'dupelink_handler', False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = Path(os.path.realpath(tempfile.mkdtemp()))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def tree(temp_dir):
    """Directory that tests fill with files to scan, separate from the database."""
    path = temp_dir / "tree"
    path.mkdir()
    return path


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / "db" / "index.db"


@pytest.fixture
def db(db_path):
    """Open index database."""
    database = IndexDatabase(db_path)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def oracle_factory():
    """Build a FakeOracle with custom audio digests or failures."""
    return FakeOracle
