"""
Test configuration and fixtures for pytest.

Fixtures include: explicit settings, the in-memory cluster session, and
a temporary component source tree.
"""

import sys
import os
from pathlib import Path
import pytest

# Make tests/fakes.py importable from every test package
tests_dir = Path(__file__).parent
sys.path.insert(0, str(tests_dir))


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    os.environ["K8S_NAMESPACE"] = "test-ns"
    os.environ["LOG_LEVEL"] = "DEBUG"

    from kubesync.config import get_settings
    get_settings.cache_clear()

    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "kubernetes: mark test as using kubernetes client models")
    config.addinivalue_line("markers", "sync: mark test as exercising file synchronization")
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture
def settings():
    """Settings with short deadlines so failing waits end quickly."""
    from kubesync.config import Settings
    return Settings(
        k8s_namespace="test-ns",
        rollout_timeout_seconds=2,
        pod_wait_timeout_seconds=2,
        build_wait_timeout_seconds=2,
        secret_wait_timeout_seconds=2,
        project_delete_timeout_seconds=2,
        sync_chunk_size=1024,
        volume_removal_max_attempts=3,
    )


@pytest.fixture
def session():
    """In-memory cluster session."""
    from fakes import FakeSession
    return FakeSession()


@pytest.fixture
def source_tree(tmp_path):
    """
    A component source tree:

        app/
          src/main.go
          build/out.bin
          README.md
    """
    root = tmp_path / "app"
    (root / "src").mkdir(parents=True)
    (root / "build").mkdir()
    (root / "src" / "main.go").write_text("package main\n")
    (root / "build" / "out.bin").write_bytes(b"\x00\x01\x02")
    (root / "README.md").write_text("# app\n")
    return root
