"""Global pytest fixtures and configuration."""

import hashlib
import json
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pkgagent.models.config import AgentConfig  # noqa: E402
from pkgagent.services.state_manager import StateManager  # noqa: E402


def sha256_of(content: bytes) -> str:
    """Helper to calculate SHA-256 hash."""
    return hashlib.sha256(content).hexdigest()


@pytest.fixture(autouse=True)
def reset_state_manager():
    """Reset the StateManager singleton between tests."""
    StateManager._instance = None
    yield
    StateManager._instance = None


@pytest.fixture
def scratch_root(tmp_path):
    """Scratch root for downloads."""
    root = tmp_path / "scratch"
    root.mkdir()
    return root


@pytest.fixture
def config(scratch_root):
    """Fast agent config: short timeouts, scratch under tmp_path."""
    return AgentConfig(
        download_timeout_seconds=5,
        download_attempts_max=3,
        command_grace_seconds=0.5,
        command_timeout_seconds=10,
        install_timeout_seconds=10,
        scratch_root=scratch_root,
    )


@pytest.fixture
def package_bytes():
    """Disk image body served by the fake package server."""
    return b"fake disk image contents" * 64


@pytest.fixture
def sample_manifest(package_bytes):
    """Sample manifest with relative and absolute locations."""
    digest = sha256_of(package_bytes)
    return {
        "stable": [
            ["com.example.app", "pkg-stable.dmg", digest],
            ["com.example.tool", "https://cdn.example.com/tool.dmg", digest.upper()],
        ],
        "testing": [
            {"id": "com.example.app", "url": "pkg-testing.dmg", "sha256": digest},
        ],
    }


@pytest.fixture
def manifest_body(sample_manifest):
    return json.dumps(sample_manifest).encode("utf-8")

