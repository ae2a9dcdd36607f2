# Copyright 2026 BadCompany
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Standalone test runs.

A standalone test builds structures in memory, saves a core file of its
own process, opens mdb on that core file and runs a list of steps against
the session. On success the core file is removed; on failure it is kept
and its location is reported so someone can open it by hand.

Example:
    async def find_object(mdb: MdbSession) -> None:
        output = await mdb.run_cmd("::findjsobjects -p testObjectFinished\\n")
        assert output

    await standalone_test([find_object, check_mdb_leaks])
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from .config import HarnessSettings, get_settings
from .exceptions import AcquisitionError, MdbHarnessError, SessionTerminated, TestFailure
from .guard import ExitGuardRegistry
from .session import MdbSession, SessionState
from .target import Target, capture_core
from .transcript import Transcript

__all__ = ["LifecycleRun", "PipelineResult", "Step", "run_pipeline", "standalone_test"]

_logger = logging.getLogger("mdbharness.lifecycle")

Step = Callable[[MdbSession], Awaitable[object]]


def step_name(step: Step) -> str:
    return getattr(step, "__name__", None) or repr(step)


@dataclass
class PipelineResult:
    """Outcome of running steps in order: what ran and what failed."""

    executed: list[str] = field(default_factory=list)
    error: BaseException | None = None
    failed_step: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class LifecycleRun:
    """One capture / open / run / finalize cycle."""

    steps: Sequence[Step]
    core_path: Path | None = None
    session: MdbSession | None = None
    result: PipelineResult | None = None


async def run_pipeline(steps: Sequence[Step], session: MdbSession) -> PipelineResult:
    """Run ``steps`` in order against ``session``, stopping at the first failure.

    Failures are returned in the result rather than raised.
    """
    result = PipelineResult()
    for step in steps:
        if not result.ok:
            break
        name = step_name(step)
        result.executed.append(name)
        _logger.debug("Running step %s", name)
        try:
            await step(session)
        except Exception as e:
            _logger.error("Step %s failed: %s", name, e)
            result.error = e
            result.failed_step = name
    return result


async def standalone_test(
    steps: Sequence[Step],
    *,
    settings: HarnessSettings | None = None,
    pid: int | None = None,
    registry: ExitGuardRegistry | None = None,
    transcript: Transcript | None = None,
) -> LifecycleRun:
    """
    Capture a core file, open mdb on it and run ``steps`` against the session.

    Args:
        steps: Async callables taking the session; run strictly in order.
        settings: Harness settings (defaults to the environment).
        pid: Process to capture (defaults to this process).
        registry: Exit guard registry for the session.
        transcript: Where commands and responses are recorded.

    Returns:
        The completed run.

    Raises:
        TestFailure: If capturing the core, opening the session or any step
            failed, or mdb exited early. A captured core file is kept and
            named in the message.
    """
    settings = settings or get_settings()
    run = LifecycleRun(steps=list(steps))

    try:
        run.core_path = await capture_core(pid, settings=settings)
    except AcquisitionError as e:
        raise TestFailure("test failed", context={"cause": str(e)}) from e

    session = MdbSession(
        Target.file(run.core_path),
        settings=settings,
        registry=registry,
        transcript=transcript,
    )
    try:
        await session.start()
    except MdbHarnessError as e:
        raise _failure(run, e) from e
    run.session = session

    run.result = await run_pipeline(run.steps, session)
    error = run.result.error
    if error is None and session.error is not None:
        # A step swallowed the failure; the session cannot be finalized.
        error = session.error
    elif error is None and session.exited:
        error = SessionTerminated(
            "mdb exited before the session was finalized", exit_code=session.exit_code
        )

    if error is None:
        try:
            await session.finish()
        except MdbHarnessError as e:
            raise _failure(run, e) from e
        _logger.info("Test passed (%d steps)", len(run.result.executed))
        return run

    if session.state is SessionState.OPEN and session.pending is None:
        await session.finish(error)
    else:
        await session.abort()
    raise _failure(run, error, step=run.result.failed_step) from error


def _failure(run: LifecycleRun, cause: BaseException, step: str | None = None) -> TestFailure:
    context = {"cause": str(cause)}
    if step:
        context["step"] = step
    return TestFailure(
        f"test failed (keeping core file {run.core_path})",
        core_path=str(run.core_path),
        context=context,
    )
