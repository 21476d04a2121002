"""
Pytest configuration and fixtures for proxyd tests.
"""

import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config_dir(temp_dir: Path) -> Path:
    """Configuration directory nested one level so the legacy sibling path stays inside temp_dir."""
    return temp_dir / "proxyd"


@pytest.fixture
def store(config_dir: Path):
    """Open a fresh store, closed again after the test."""
    from db_helper import Store

    s = Store.open(config_dir)
    yield s
    s.close()


VMESS_LEGACY = {
    "ps": "tokyo-01",
    "add": "jp.example.com",
    "port": "443",
    "id": "b831381d-6324-4d53-ad4f-8cda48b30811",
    "aid": "0",
    "net": "ws",
    "type": "none",
    "host": "jp.example.com",
    "path": "/ray",
    "tls": "tls",
    "protocol": "",
}


@pytest.fixture
def vmess_legacy() -> dict:
    """A legacy (schema v1) vmess server record as found in v2raya.json."""
    return dict(VMESS_LEGACY)
