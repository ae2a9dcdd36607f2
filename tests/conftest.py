import os
import shlex
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src/ to path so the tests run without installing
repo_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(repo_root, "src"))

from mdbharness.config import HarnessSettings  # noqa: E402
from mdbharness.guard import ExitGuardRegistry  # noqa: E402
from mdbharness.transcript import Transcript, quiet_transcript  # noqa: E402

RESOURCES = Path(__file__).parent / "resources"
FAKE_MDB = RESOURCES / "fake_mdb.py"
FAKE_GCORE = RESOURCES / "fake_gcore.py"


def python_command(script: Path) -> str:
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


@pytest.fixture
def dmod(tmp_path: Path) -> Path:
    """An existing file standing in for the built mdb_v8.so."""
    path = tmp_path / "mdb_v8.so"
    path.write_text("dmod")
    return path


@pytest.fixture
def settings(tmp_path: Path, dmod: Path) -> HarnessSettings:
    """Settings pointing mdb and gcore at the fakes under tests/resources."""
    return HarnessSettings(
        mdb_command=python_command(FAKE_MDB),
        gcore_command=python_command(FAKE_GCORE),
        core_prefix=str(tmp_path / "core"),
        mdb_v8_dmod_path=str(dmod),
        mdb_library_path="",
        inherit_environment=True,
        randomize_sentinel=False,
        exit_timeout=5.0,
    )


@pytest.fixture
def core_file(tmp_path: Path) -> Path:
    path = tmp_path / "core.1234"
    path.write_text("core")
    return path


@pytest.fixture
def registry() -> Generator[ExitGuardRegistry, None, None]:
    """A private exit guard registry; every test must leave it empty."""
    reg = ExitGuardRegistry()
    yield reg
    reg.check()


@pytest.fixture
def transcript() -> Transcript:
    return quiet_transcript()


@pytest.fixture
def mock_subprocess() -> AsyncMock:
    """Provides a fully mocked asyncio subprocess."""
    process = AsyncMock()
    process.pid = 4242
    process.stdin = MagicMock()  # write() is not a coroutine
    process.stdin.drain = AsyncMock()
    process.stdout = AsyncMock()
    process.stderr = AsyncMock()
    process.terminate = MagicMock()
    process.kill = MagicMock()
    process.returncode = None
    return process
