"""
Global test fixtures for clipsync tests
"""
import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Generator

from clipsync.common.user_config import ConfigManager


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files"""
    path = Path(tempfile.mkdtemp(prefix="clipsync_test_"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def sample_file(temp_dir: Path) -> Path:
    """Create a sample text file for testing"""
    file_path = temp_dir / "sample.txt"
    file_path.write_text("Hello, World! This is a test file.")
    return file_path


@pytest.fixture
def large_text_file(temp_dir: Path) -> Path:
    """A 3MB text file (six 512KB chunks)"""
    file_path = temp_dir / "large_notes.txt"
    line = b"The quick brown fox jumps over the lazy dog 0123456789\n"
    size = 3 * 1024 * 1024
    data = (line * (size // len(line) + 1))[:size]
    file_path.write_bytes(data)
    return file_path


@pytest.fixture
def sample_image_bytes() -> bytes:
    """Minimal valid PNG image for testing"""
    # 1x1 transparent PNG
    return bytes([
        0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A,  # PNG signature
        0x00, 0x00, 0x00, 0x0D, 0x49, 0x48, 0x44, 0x52,  # IHDR chunk
        0x00, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00, 0x01,
        0x08, 0x06, 0x00, 0x00, 0x00, 0x1F, 0x15, 0xC4,
        0x89, 0x00, 0x00, 0x00, 0x0A, 0x49, 0x44, 0x41,  # IDAT chunk
        0x54, 0x78, 0x9C, 0x63, 0x00, 0x01, 0x00, 0x00,
        0x05, 0x00, 0x01, 0x0D, 0x0A, 0x2D, 0xB4, 0x00,
        0x00, 0x00, 0x00, 0x49, 0x45, 0x4E, 0x44, 0xAE,  # IEND chunk
        0x42, 0x60, 0x82
    ])


@pytest.fixture
def encryption_key() -> bytes:
    """Sample 32-byte encryption key"""
    return b"0123456789abcdef0123456789abcdef"


@pytest.fixture
def sample_text() -> str:
    """Sample text for clipboard sync testing"""
    return "Hello, this is a clipboard sync test message!"


@pytest.fixture
def make_config(temp_dir: Path):
    """Factory for a ConfigManager backed by a file in temp_dir"""
    def _make(name: str, allowed=(), **overrides) -> ConfigManager:
        manager = ConfigManager(temp_dir / f"{name}_config.json")
        manager.set('device_name', name)
        manager.set('allowed_peers', list(allowed))
        manager.set('download_dir', str(temp_dir / f"{name}_downloads"))
        for key, value in overrides.items():
            manager.set(key, value)
        return manager
    return _make
