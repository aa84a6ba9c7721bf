# conftest.py - pytest configuration for ebfat tests

import io

import pytest

import ebfat


@pytest.fixture
def fixed_random():
    """Deterministic stand-in for os.urandom."""
    return lambda n: bytes(range(0x11, 0x11 + n))


@pytest.fixture
def make_file():
    """
    Returns a function building an in-memory InputFile.
    The declared size defaults to the length of the content.
    """
    def _make(name, content=b"", size=None):
        return ebfat.InputFile(name, len(content) if size is None else size, io.BytesIO(content))
    return _make


@pytest.fixture
def build_image(fixed_random):
    def _build(fili, label=None):
        return ebfat.create_fat_image(fili, label, fixed_random)
    return _build
