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
mdb harness exceptions.

Defines the hierarchy of errors raised while driving mdb sessions.
"""

from typing import Any, Dict, Optional


class MdbHarnessError(Exception):
    """Base class for all harness errors.

    Attributes:
        message: A human-readable error message.
        context: Optional dictionary containing debugging metadata.
    """
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} (context: {self.context})"
        return self.message


class HarnessConfigError(MdbHarnessError):
    """Raised when configuration is invalid or missing.

    Attributes:
        config_key: The name of the configuration setting that caused the error.
    """
    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        ctx = context or {}
        if config_key:
            ctx["config_key"] = config_key
        super().__init__(message, context=ctx)
        self.config_key = config_key


class AcquisitionError(MdbHarnessError):
    """Raised when the core file could not be captured.

    Includes the capture tool's exit code and stderr when it ran at all.
    """
    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        ctx = context or {}
        if exit_code is not None:
            ctx["exit_code"] = exit_code
        if stderr:
            ctx["stderr"] = stderr.strip()[-500:]
        super().__init__(message, context=ctx)
        self.exit_code = exit_code
        self.stderr = stderr


class SessionOpenError(MdbHarnessError):
    """Raised when mdb could not be started or its setup commands failed.

    Attributes:
        phase: Where opening failed ('spawn', 'setup').
    """
    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        underlying_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        ctx = context or {}
        if phase:
            ctx["open_phase"] = phase
        if underlying_error:
            ctx["underlying_error"] = str(underlying_error)
        super().__init__(message, context=ctx)
        self.phase = phase
        self.underlying_error = underlying_error


class ProtocolViolation(MdbHarnessError):
    """Raised when the caller breaks the session protocol.

    Submitting while a command is pending, finalizing twice, or output
    arriving with nobody waiting for it. These are programming errors.
    """


class SessionTerminated(MdbHarnessError):
    """Raised when the mdb process exits while the session is still in use."""
    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        command: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        ctx = context or {}
        if exit_code is not None:
            ctx["exit_code"] = exit_code
        if command:
            ctx["command"] = command.rstrip("\n")
        super().__init__(message, context=ctx)
        self.exit_code = exit_code
        self.command = command


class SessionClosed(MdbHarnessError):
    """Raised when a command is submitted to a session that can no longer accept one."""


class AttachError(MdbHarnessError):
    """Raised when the self-attach leak check fails to open or run."""
    def __init__(
        self,
        message: str,
        pid: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        ctx = context or {}
        if pid is not None:
            ctx["pid"] = pid
        super().__init__(message, context=ctx)
        self.pid = pid


class TestFailure(MdbHarnessError):
    """Raised when a standalone test fails; the core file is left in place.

    Attributes:
        core_path: Location of the preserved core file, if one was captured.
    """
    __test__ = False  # not a pytest test class

    def __init__(
        self,
        message: str,
        core_path: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        ctx = context or {}
        if core_path:
            ctx["core_path"] = core_path
        super().__init__(message, context=ctx)
        self.core_path = core_path


class UnfinalizedSessionError(MdbHarnessError):
    """Raised when the host is exiting with sessions that were never finalized."""
