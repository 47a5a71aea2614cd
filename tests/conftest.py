"""
Shared fixtures for cachepack tests.
"""

import os
from pathlib import Path

import pytest

from cachepack.config import create_cache_config
from cachepack.store import InMemoryStore


@pytest.fixture
def sample_tree(tmp_path: Path) -> Path:
    """
    A small directory tree:

        project/
            a.txt            "hello"
            sub/b.txt        "world"
            link -> a.txt
    """
    root = tmp_path / "project"
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_text("hello")
    (root / "sub" / "b.txt").write_text("world")
    os.symlink("a.txt", root / "link")
    return root


@pytest.fixture
def restore_dir(tmp_path: Path) -> Path:
    target = tmp_path / "restored"
    target.mkdir()
    return target


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def memory_config():
    """Configuration using the in-memory store and native handlers only."""
    return create_cache_config(backend="memory", compression_backend="native")
