from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Iterator

import pytest

import sys

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

INTEGRATION_IMAGE = os.environ.get("STREAMLINE_INTEGRATION_IMAGE_TAG", "latest")


def _docker_daemon_available() -> bool:
    if shutil.which("docker") is None:
        return False
    result = subprocess.run(
        ["docker", "info", "--format", "{{.ServerVersion}}"],
        check=False,
        text=True,
        capture_output=True,
    )
    return result.returncode == 0 and bool(result.stdout.strip())


def _docker_image_exists(reference: str) -> bool:
    result = subprocess.run(
        ["docker", "image", "inspect", reference],
        check=False,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return result.returncode == 0


@pytest.fixture(scope="session")
def streamline_image_tag() -> str:
    if not _docker_daemon_available():
        pytest.skip("docker daemon is not available")
    if not _docker_image_exists(f"streamline:{INTEGRATION_IMAGE}"):
        pytest.skip(f"streamline:{INTEGRATION_IMAGE} has not been built (run streamline-build)")
    return INTEGRATION_IMAGE


@pytest.fixture()
def targets_dir() -> Iterator[Path]:
    tmp = tempfile.TemporaryDirectory(prefix="streamline-targets-")
    path = Path(tmp.name)
    # The container user is uid 1000; the mounted tree must be world-readable.
    path.chmod(0o755)
    try:
        yield path
    finally:
        tmp.cleanup()
