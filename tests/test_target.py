import os
from pathlib import Path
from unittest.mock import patch

import pytest

from mdbharness.config import HarnessSettings
from mdbharness.exceptions import AcquisitionError
from mdbharness.target import Target, TargetKind, capture_core, dmod_path, host_arch


def test_file_target() -> None:
    target = Target.file("/var/tmp/core.123")
    assert target.kind is TargetKind.FILE
    assert target.is_file
    assert target.mdb_args() == ["/var/tmp/core.123"]
    assert str(target) == "/var/tmp/core.123"


def test_process_target() -> None:
    target = Target.process(123)
    assert target.kind is TargetKind.PROCESS
    assert not target.is_file
    assert target.mdb_args() == ["-p", "123"]
    assert str(target) == "pid 123"


def test_targets_are_immutable() -> None:
    target = Target.process(1)
    with pytest.raises(AttributeError):
        target.pid = 2  # type: ignore[misc]


@pytest.mark.parametrize(
    "machine,arch",
    [("x86_64", "amd64"), ("AMD64", "amd64"), ("i386", "ia32"), ("i86pc", "ia32")],
)
def test_host_arch(machine: str, arch: str) -> None:
    assert host_arch(machine) == arch


def test_dmod_path_from_build_dir(tmp_path: Path) -> None:
    settings = HarnessSettings(mdb_v8_build_dir=str(tmp_path / "build"), mdb_v8_dmod_path=None)
    assert dmod_path("amd64", settings=settings) == tmp_path / "build" / "amd64" / "mdb_v8.so"

    with patch("platform.machine", return_value="x86_64"):
        assert dmod_path(settings=settings).parent.name == "amd64"


def test_dmod_path_override(tmp_path: Path) -> None:
    settings = HarnessSettings(mdb_v8_dmod_path=str(tmp_path / "custom.so"))
    assert dmod_path("ia32", settings=settings) == tmp_path / "custom.so"


# --- Core Capture ---


@pytest.mark.asyncio
async def test_capture_core(settings: HarnessSettings) -> None:
    core = await capture_core(settings=settings)
    assert core == Path(f"{settings.core_prefix}.{os.getpid()}")
    assert core.exists()


@pytest.mark.asyncio
async def test_capture_core_other_pid(settings: HarnessSettings) -> None:
    core = await capture_core(1234, settings=settings)
    assert core.name.endswith(".1234")
    assert core.read_text() == "core of 1234\n"


@pytest.mark.asyncio
async def test_capture_core_failure(
    settings: HarnessSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_GCORE_FAIL", "1")
    with pytest.raises(AcquisitionError, match="gcore exited with code 1") as exc:
        await capture_core(settings=settings)
    assert exc.value.exit_code == 1
    assert "failed to grab process" in (exc.value.stderr or "")


@pytest.mark.asyncio
async def test_capture_core_spawn_failure(settings: HarnessSettings, tmp_path: Path) -> None:
    missing = settings.model_copy(update={"gcore_command": str(tmp_path / "no-gcore")})
    with pytest.raises(AcquisitionError, match="Failed to spawn gcore"):
        await capture_core(settings=missing)
