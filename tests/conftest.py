"""Shared pytest fixtures for all tests."""

import pytest

from dropmo.channel import MemoryNetwork
from dropmo.registry import PresenceRegistry
from dropmo.transfer import TransferMetadata


@pytest.fixture
def registry():
    """Fresh presence registry."""
    return PresenceRegistry()


@pytest.fixture
def network():
    """In-process channel network."""
    return MemoryNetwork()


@pytest.fixture
def ten_bytes():
    """Ten-byte payload."""
    return b'0123456789'


@pytest.fixture
def ten_byte_metadata():
    return TransferMetadata(file_name='x.txt', mime_type='text/plain', total_size=10)


@pytest.fixture
def sample_file(tmp_path):
    """
    Create a sample file spanning several chunks.

    Returns:
        (path, content) tuple
    """
    content = bytes(range(256)) * 1000  # 256,000 bytes
    path = tmp_path / 'sample.bin'
    path.write_bytes(content)
    return path, content
