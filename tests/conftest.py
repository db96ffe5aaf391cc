"""Test harness configuration.

This repo uses a `src/` layout. Ensure tests always import the in-repo code
rather than an installed `agent_sidecar` package.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def worker_config(tmp_path: Path):
    # Import lazily so `pytest_configure()` can prepend the local src/ directory
    # before any `agent_sidecar` modules are loaded.
    from agent_sidecar.config import default_worker_config

    return default_worker_config(tmp_path)
