from pathlib import Path

import pytest

from mdbharness.config import HarnessSettings
from mdbharness.exceptions import AttachError, ProtocolViolation
from mdbharness.guard import ExitGuardRegistry
from mdbharness.leaks import check_mdb_leaks
from mdbharness.session import MdbSession, SessionState
from mdbharness.target import Target
from mdbharness.transcript import Transcript


async def _open(
    core_file: Path,
    settings: HarnessSettings,
    registry: ExitGuardRegistry,
    transcript: Transcript,
) -> MdbSession:
    return await MdbSession.open(
        Target.file(core_file), settings=settings, registry=registry, transcript=transcript
    )


@pytest.mark.asyncio
async def test_leak_check_leaves_parent_usable(
    settings: HarnessSettings,
    registry: ExitGuardRegistry,
    transcript: Transcript,
    core_file: Path,
) -> None:
    parent = await _open(core_file, settings, registry, transcript)

    output = await check_mdb_leaks(parent)

    assert output == "findleaks: no memory leaks detected\n"
    assert parent.sub_session is None
    assert registry.active == [parent]
    assert await parent.run_cmd("1+1\n") == "2\n"

    # The nested session is recorded in the same transcript under its own label
    labels = {e.label for e in transcript.entries}
    assert f"mdb[leaks of pid {parent.pid}]" in labels
    assert output in transcript.outputs(f"mdb[leaks of pid {parent.pid}]")

    await parent.finish()
    assert not core_file.exists()


@pytest.mark.asyncio
async def test_leak_check_as_session_method(
    settings: HarnessSettings,
    registry: ExitGuardRegistry,
    transcript: Transcript,
    core_file: Path,
) -> None:
    parent = await _open(core_file, settings, registry, transcript)
    assert "no memory leaks" in await parent.check_leaks()
    assert "no memory leaks" in await parent.check_leaks()
    await parent.finish()


@pytest.mark.asyncio
async def test_reentrant_attach_is_protocol_violation(
    settings: HarnessSettings,
    registry: ExitGuardRegistry,
    transcript: Transcript,
    core_file: Path,
) -> None:
    parent = await _open(core_file, settings, registry, transcript)
    holder = MdbSession(Target.process(parent.pid), settings=settings, registry=registry)
    with parent.holding_sub_session(holder):
        assert parent.sub_session is holder
        with pytest.raises(ProtocolViolation, match="already has an attached leak check"):
            await check_mdb_leaks(parent)
        assert parent.sub_session is holder

    assert parent.sub_session is None
    await parent.finish()


@pytest.mark.asyncio
async def test_failed_leak_command_raises_attach_error(
    settings: HarnessSettings,
    registry: ExitGuardRegistry,
    transcript: Transcript,
    core_file: Path,
) -> None:
    crashing = settings.model_copy(update={"mdb_leak_command": "::crash 4"})
    parent = await _open(core_file, crashing, registry, transcript)

    with pytest.raises(AttachError) as exc:
        await check_mdb_leaks(parent)

    assert exc.value.pid == parent.pid
    assert parent.state is SessionState.OPEN
    assert parent.sub_session is None
    assert registry.active == [parent]
    assert await parent.run_cmd("2+2\n") == "4\n"
    await parent.finish()


@pytest.mark.asyncio
async def test_failed_attach_raises_attach_error(
    settings: HarnessSettings,
    registry: ExitGuardRegistry,
    transcript: Transcript,
    core_file: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    parent = await _open(core_file, settings, registry, transcript)

    # Only the nested mdb starts after this, and it will complain on stderr
    monkeypatch.setenv("FAKE_MDB_STDERR_AT_START", "1")
    with pytest.raises(AttachError, match="failed to attach"):
        await check_mdb_leaks(parent)

    assert registry.active == [parent]
    assert await parent.run_cmd("1+1\n") == "2\n"
    await parent.finish()
