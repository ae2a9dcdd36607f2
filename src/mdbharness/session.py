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
mdb sessions.

This module provides the MdbSession class, which runs mdb as a child
process against a core file or live process and exposes a strictly
sequential ``run_cmd`` API on top of mdb's unframed output.

Example:
    async with MdbSession(Target.file("/var/tmp/mdbharness.1234")) as mdb:
        output = await mdb.run_cmd("::jsprint -a\\n")
"""

import asyncio
import codecs
import contextlib
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from .config import HarnessSettings, get_settings
from .exceptions import (
    MdbHarnessError,
    ProtocolViolation,
    SessionClosed,
    SessionOpenError,
    SessionTerminated,
    TestFailure,
)
from .framing import SentinelFramer, make_sentinel
from .guard import ExitGuardRegistry, default_registry
from .target import Target, dmod_path
from .transcript import Transcript, TranscriptEntry

__all__ = ["MdbSession", "PendingCommand", "SessionState"]

_READ_CHUNK = 64 * 1024

_logger = logging.getLogger("mdbharness.session")

FatalListener = Callable[[MdbHarnessError], Any]


class SessionState(enum.Enum):
    NEW = "new"
    OPEN = "open"
    FINALIZED = "finalized"
    EXITED = "exited"
    ERRORED = "errored"


@dataclass
class PendingCommand:
    """The one command in flight and the future its response resolves."""

    command: str
    future: "asyncio.Future[str]"
    entry: TranscriptEntry


class MdbSession:
    """One mdb child process bound to one target.

    Attributes:
        label: Name used in logs and the transcript.
        transcript: Record of commands and responses.
    """

    def __init__(
        self,
        target: Target,
        *,
        settings: HarnessSettings | None = None,
        load_dmod: bool = True,
        remove_on_success: bool = True,
        registry: ExitGuardRegistry | None = None,
        transcript: Transcript | None = None,
        label: str | None = None,
    ) -> None:
        """Configure a session; nothing is spawned until ``start()``.

        Args:
            target: Core file or process id to attach to.
            settings: Harness settings (defaults to the environment).
            load_dmod: Load the mdb_v8 dmod during setup (file targets only).
            remove_on_success: Delete the core file when finished without error.
            registry: Exit guard registry (defaults to the process-wide one).
            transcript: Where commands and responses are recorded.
            label: Name for logs; defaults to one derived from the target.
        """
        self._target = target
        self._settings = settings or get_settings()
        self._load_dmod = load_dmod and target.is_file
        self._remove_on_success = remove_on_success
        self._registry = registry if registry is not None else default_registry()
        self.transcript = transcript if transcript is not None else Transcript()
        self.label = label or f"mdb[{target}]"

        self._framer = SentinelFramer(make_sentinel(self._settings.randomize_sentinel))

        # Runtime state
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._pending: PendingCommand | None = None
        self._error: MdbHarnessError | None = None
        self._exited = False
        self._exit_code: int | None = None
        self._finalized = False
        self._guarded = False
        self._setup_complete = False
        self._fatal_listeners: list[FatalListener] = []
        self._sub_session: "MdbSession | None" = None

    def __repr__(self) -> str:
        return f"<MdbSession {self.label} {self.state.value}>"

    def __str__(self) -> str:
        return self.label

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def target(self) -> Target:
        return self._target

    @property
    def pid(self) -> int:
        """Process id of the mdb child."""
        if self._process is None:
            raise SessionClosed("mdb session not started")
        return self._process.pid

    @property
    def state(self) -> SessionState:
        if self._finalized:
            return SessionState.FINALIZED
        if self._error is not None:
            return SessionState.ERRORED
        if self._exited:
            return SessionState.EXITED
        if self._process is None:
            return SessionState.NEW
        return SessionState.OPEN

    @property
    def settings(self) -> HarnessSettings:
        return self._settings

    @property
    def registry(self) -> ExitGuardRegistry:
        return self._registry

    @property
    def error(self) -> MdbHarnessError | None:
        return self._error

    @property
    def exited(self) -> bool:
        return self._exited

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def pending(self) -> PendingCommand | None:
        return self._pending

    @property
    def sub_session(self) -> "MdbSession | None":
        """The self-attach session currently open against this session's mdb."""
        return self._sub_session

    @contextlib.contextmanager
    def holding_sub_session(self, sub: "MdbSession") -> Iterator["MdbSession"]:
        """Record ``sub`` as this session's attached session for the block.

        Raises:
            ProtocolViolation: If another session is already attached.
        """
        if self._sub_session is not None:
            raise ProtocolViolation(f"{self} already has an attached leak check")
        self._sub_session = sub
        try:
            yield sub
        finally:
            self._sub_session = None

    def add_fatal_listener(self, listener: FatalListener) -> None:
        """Call ``listener`` with the terminal error once the session fails."""
        self._fatal_listeners.append(listener)
        if self._error is not None:
            listener(self._error)

    # -------------------------------------------------------------------------
    # Async Context Manager Protocol
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> "MdbSession":
        await self.start()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        _exc_tb: Any,
    ) -> None:
        if self.state is SessionState.OPEN and self._pending is None:
            await self.finish(exc_val)
        elif not self._finalized:
            await self.abort()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @classmethod
    async def open(cls, target: Target, **kwargs: Any) -> "MdbSession":
        """Create a session and run its setup commands."""
        session = cls(target, **kwargs)
        await session.start()
        return session

    async def start(self) -> None:
        """Spawn mdb and run the setup commands.

        Raises:
            SessionOpenError: If mdb cannot be spawned, writes to stderr
                before setup completes, or dies during setup.
        """
        if self._process is not None:
            raise ProtocolViolation(f"{self} already started")

        cmd = self._build_command()
        _logger.info("Spawning mdb: %s", " ".join(cmd))

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._settings.child_env(),
            )
        except OSError as e:
            raise SessionOpenError(
                f"Failed to spawn mdb: {e}",
                phase="spawn",
                underlying_error=e,
                context={"target": str(self._target)},
            ) from e

        self._registry.register(self)
        self._guarded = True

        # Start background readers
        self._reader_task = asyncio.create_task(self._read_stdout_loop())
        self._stderr_task = asyncio.create_task(self._read_stderr_loop())
        self._exit_task = asyncio.create_task(self._watch_exit())

        try:
            if self._load_dmod:
                await self.run_cmd(f"::load {dmod_path(settings=self._settings)}\n")
            # A wide display keeps mdb from wrapping lines at 80 columns.
            await self.run_cmd(f"{self._settings.display_width}$w\n")
        except SessionOpenError:
            await self.abort()
            raise
        except MdbHarnessError as e:
            await self.abort()
            raise SessionOpenError(
                f"mdb setup failed: {e.message}",
                phase="setup",
                underlying_error=e,
                context={"target": str(self._target)},
            ) from e

        # A failure (e.g. stderr) can land after the last setup response resolves.
        if self._error is not None:
            error = self._error
            await self.abort()
            if isinstance(error, SessionOpenError):
                raise error
            raise SessionOpenError(
                f"mdb setup failed: {error.message}",
                phase="setup",
                underlying_error=error,
                context={"target": str(self._target)},
            ) from error

        self._setup_complete = True
        _logger.info("%s ready (pid %d)", self, self._process.pid)

    async def run_cmd(self, command: str) -> str:
        """Send one command and wait for its complete output.

        Raises:
            ProtocolViolation: If another command is still pending.
            SessionClosed: If the session is finalized, exited or failed.
            SessionTerminated: If mdb exits before responding.
        """
        if self._pending is not None:
            raise ProtocolViolation(
                "command is already pending",
                context={
                    "pending": self._pending.command.rstrip("\n"),
                    "command": command.rstrip("\n"),
                },
            )
        self._check_usable()
        assert self._process is not None and self._process.stdin is not None

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        entry = self.transcript.command(self.label, command)
        self._pending = PendingCommand(command=command, future=future, entry=entry)

        try:
            self._process.stdin.write(self._framer.wire(command).encode("utf-8"))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            if self._pending is not None and self._pending.future is future:
                self._pending = None
            raise SessionTerminated(
                "Broken pipe to mdb process", command=command
            ) from e

        return await future

    async def finish(self, error: BaseException | None = None) -> None:
        """Finalize the session.

        Without ``error`` the core file is removed (when the session owns
        it). With ``error`` the core file is kept and the failure becomes
        this session's terminal error.

        Raises:
            ProtocolViolation: If already finalized, already failed, or a
                command is still pending.
        """
        if self._finalized:
            raise ProtocolViolation(f"{self} already finalized")
        if self._error is not None:
            raise ProtocolViolation(
                "already experienced fatal error", context={"error": str(self._error)}
            )
        if self._process is None:
            raise ProtocolViolation(f"{self} was never started")
        if self._pending is not None:
            raise ProtocolViolation(
                "cannot finalize with a command pending",
                context={"pending": self._pending.command.rstrip("\n")},
            )

        self._finalized = True
        self._release_guard()

        if not self._exited and self._process.stdin is not None:
            self._process.stdin.close()
        await self._reap()

        if error is not None:
            core_path = str(self._target.path) if self._target.is_file else None
            _logger.error("test failed; saving core file %s", self._target)
            failure = TestFailure("error running test", core_path=core_path)
            failure.__cause__ = error
            self._error = failure
            return

        if self._target.is_file and self._remove_on_success:
            assert self._target.path is not None
            self._target.path.unlink()
            _logger.info("Removed %s", self._target.path)

    async def abort(self) -> None:
        """Tear down a session that cannot be finalized normally. Idempotent."""
        self._release_guard()
        if self._error is None and not self._finalized:
            self._error = SessionClosed(f"{self} aborted")

        proc = self._process
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

        for task in (self._reader_task, self._stderr_task, self._exit_task):
            if task and not task.done():
                task.cancel()
        await self._join_tasks()

    async def check_leaks(self) -> str:
        """Run the self-attach leak check against this session's mdb."""
        from .leaks import check_mdb_leaks

        return await check_mdb_leaks(self)

    # -------------------------------------------------------------------------
    # Process Management (Private)
    # -------------------------------------------------------------------------

    def _build_command(self) -> list[str]:
        cmd = self._settings.mdb_argv()
        # "-S" keeps a user's .mdbrc from interfering.
        cmd.append("-S")
        cmd.extend(self._settings.library_path_args())
        cmd.extend(self._target.mdb_args())
        return cmd

    def _check_usable(self) -> None:
        if self._finalized:
            raise SessionClosed(f"{self} already finalized")
        if self._error is not None:
            raise SessionClosed(
                "already experienced fatal error", context={"error": str(self._error)}
            )
        if self._exited:
            raise SessionClosed("mdb already exited", context={"exit_code": self._exit_code})
        if self._process is None or self._process.stdin is None:
            raise SessionClosed(f"{self} not started")

    def _release_guard(self) -> None:
        if self._guarded:
            self._guarded = False
            self._registry.deregister(self)

    async def _reap(self) -> None:
        proc = self._process
        assert proc is not None
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._settings.exit_timeout)
        except asyncio.TimeoutError:
            _logger.warning(
                "%s did not exit within %.1fs; killing", self, self._settings.exit_timeout
            )
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        await self._join_tasks()

    async def _join_tasks(self) -> None:
        tasks = [t for t in (self._exit_task, self._reader_task, self._stderr_task) if t]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _fail(self, error: MdbHarnessError) -> None:
        """Record the terminal error, fail any waiter and notify listeners."""
        if self._error is not None:
            return
        self._error = error
        _logger.error("%s failed: %s", self, error)

        pending, self._pending = self._pending, None
        if pending and not pending.future.done():
            pending.future.set_exception(error)

        for listener in list(self._fatal_listeners):
            try:
                listener(error)
            except Exception:
                _logger.exception("Fatal listener for %s raised", self)

    # -------------------------------------------------------------------------
    # I/O Handling (Private)
    # -------------------------------------------------------------------------

    async def _read_stdout_loop(self) -> None:
        if not self._process or not self._process.stdout:
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await self._process.stdout.read(_READ_CHUNK)
                if not data:
                    break
                for body in self._framer.feed(decoder.decode(data)):
                    self._deliver(body)
        except asyncio.CancelledError:
            pass

        if self._framer.buffered:
            _logger.debug("%s: unframed output at EOF: %r", self, self._framer.buffered[-200:])

    async def _read_stderr_loop(self) -> None:
        if not self._process or not self._process.stderr:
            return

        try:
            while True:
                line_bytes = await self._process.stderr.readline()
                if not line_bytes:
                    break

                text = line_bytes.decode(errors="replace").rstrip("\n")
                if not self._setup_complete:
                    _logger.error("mdb: stderr: %s", text)
                    self._fail(
                        SessionOpenError(
                            "mdb emitted stderr before setup was complete",
                            phase="setup",
                            context={"stderr": text, "target": str(self._target)},
                        )
                    )
                else:
                    _logger.warning("mdb: stderr: %s", text)
                    self.transcript.note(f"mdb: stderr: {text}")
        except asyncio.CancelledError:
            pass

    async def _watch_exit(self) -> None:
        if not self._process:
            return

        try:
            code = await self._process.wait()
            # Let the reader drain whatever mdb wrote before exiting.
            if self._reader_task is not None:
                await asyncio.wait({self._reader_task}, timeout=self._settings.exit_timeout)
        except asyncio.CancelledError:
            return
        self._on_exit(code)

    def _deliver(self, body: str) -> None:
        pending = self._pending
        if pending is None:
            self._fail(
                ProtocolViolation(
                    "mdb produced output with no command pending",
                    context={"output": body[-200:]},
                )
            )
            return

        self._pending = None
        self.transcript.output(pending.entry, body)
        _logger.debug("%s: %r -> %d bytes", self, pending.command.rstrip("\n"), len(body))
        if not pending.future.done():
            pending.future.set_result(body)

    def _on_exit(self, code: int) -> None:
        self._exited = True
        self._exit_code = code

        if self._finalized:
            _logger.debug("%s exited with code %d", self, code)
            return

        pending = self._pending
        command = pending.command if pending else None
        if code != 0:
            self._fail(
                SessionTerminated(
                    f"mdb exited unexpectedly with code {code}",
                    exit_code=code,
                    command=command,
                )
            )
            return

        _logger.warning("%s exited before the session was finalized", self)
        if pending is not None:
            self._pending = None
            if not pending.future.done():
                pending.future.set_exception(
                    SessionTerminated(
                        "mdb exited before responding", exit_code=code, command=command
                    )
                )
