"""Shared pytest fixtures for capm3-manager tests."""

import shutil
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from capm3_manager.config import build_runtime_config
from capm3_manager.flags import parse_args
from capm3_manager.runtime import Manager, ManagerOptions
from capm3_manager.scheme import SchemeRegistry, populate_scheme


@pytest.fixture
def scheme():
    """Populated, frozen scheme."""
    registry = populate_scheme(SchemeRegistry())
    registry.freeze()
    return registry


@pytest.fixture
def runtime_config():
    """RuntimeConfig built from default flags."""
    return build_runtime_config(parse_args([]))


@pytest.fixture
def manager(scheme):
    """Manager with a mocked API client; nothing is started."""
    options = ManagerOptions(
        scheme=scheme,
        metrics_bind_address="0",
        health_probe_bind_address="0",
        webhook_port=9443,
        cert_dir="/nonexistent",
    )
    return Manager(MagicMock(), options)


@pytest.fixture
def cert_dir(tmp_path):
    """Directory holding a self-signed tls.crt/tls.key pair."""
    if shutil.which("openssl") is None:
        pytest.skip("openssl not available")
    subprocess.run(
        [
            "openssl", "req",
            "-x509", "-nodes",
            "-newkey", "rsa:2048",
            "-keyout", str(tmp_path / "tls.key"),
            "-out", str(tmp_path / "tls.crt"),
            "-days", "1",
            "-subj", "/CN=localhost",
        ],
        check=True,
        capture_output=True,
    )
    return tmp_path
