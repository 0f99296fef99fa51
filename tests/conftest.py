# tests/conftest.py
"""
Pytest configuration and fixtures.
Adds src to sys.path so `import paperpulse` works without an install.
"""

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
src_root = project_root / "src"
if str(src_root) not in sys.path:
    sys.path.insert(0, str(src_root))

# Project root makes `tests.fakes` importable
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'paperpulse-test.db'}"


@pytest.fixture(autouse=True)
def _log_dir(tmp_path, monkeypatch):
    """Keep file logs out of the working tree."""
    from paperpulse.utils.logging_config import Logger

    monkeypatch.setenv("PAPERPULSE_LOG_DIR", str(tmp_path / "logs"))
    Logger.init(base_dir=str(tmp_path / "logs"))
    yield
    Logger.close()
