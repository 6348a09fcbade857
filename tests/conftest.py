"""Pytest configuration for grading_harness tests."""
import socket
import sys
import textwrap
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest


@pytest.fixture
def make_script(tmp_path):
    """Write a Python program under test and return its path."""
    def _make(name: str, source: str) -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(source), encoding='utf-8')
        return path
    return _make


@pytest.fixture
def free_port():
    """Return a callable that finds an unused localhost TCP port."""
    def _free() -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(('127.0.0.1', 0))
            return sock.getsockname()[1]
    return _free
