"""Shared pytest fixtures."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from speechmaker_backend.errors import ErrorClassifier, ErrorLog


@pytest.fixture
def temp_dir(tmp_path):
    """Per-test scratch directory as a plain string path."""
    return str(tmp_path)


@pytest.fixture
def events():
    return MagicMock()


@pytest.fixture
def classifier(events):
    return ErrorClassifier(error_log=ErrorLog(), events=events)
