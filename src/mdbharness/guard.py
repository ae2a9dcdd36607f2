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
Exit guards for open sessions.

Each session registers itself when it opens and deregisters when it is
finalized. If the host interpreter exits cleanly while a session is still
registered, a test forgot to finish its session; the default registry
turns that into a hard failure with its own exit status.
"""

import atexit
import logging
import os
import sys
import threading
from typing import Any

from .exceptions import ProtocolViolation, UnfinalizedSessionError

_logger = logging.getLogger("mdbharness.guard")

# Distinct from the status 1 of an ordinary failed test run.
UNFINALIZED_EXIT_STATUS = 70


class ExitGuardRegistry:
    """Tracks sessions that still owe a finalize."""

    def __init__(self) -> None:
        self._active: dict[int, Any] = {}
        self._lock = threading.Lock()

    @property
    def active(self) -> list[Any]:
        with self._lock:
            return list(self._active.values())

    def is_registered(self, session: Any) -> bool:
        with self._lock:
            return id(session) in self._active

    def register(self, session: Any) -> None:
        with self._lock:
            if id(session) in self._active:
                raise ProtocolViolation(f"exit guard already registered for {session}")
            self._active[id(session)] = session

    def deregister(self, session: Any) -> None:
        """Remove the guard for ``session``; it must be registered exactly once."""
        with self._lock:
            if self._active.pop(id(session), None) is None:
                raise ProtocolViolation(f"no exit guard registered for {session}")

    def check(self) -> None:
        """Raise if any session is still registered."""
        active = self.active
        if active:
            names = ", ".join(str(s) for s in active)
            raise UnfinalizedSessionError(
                f"test exiting prematurely (mdb session not finalized): {names}",
                context={"sessions": len(active)},
            )


class _ProcessExitGuard(ExitGuardRegistry):
    """Registry hooked into interpreter shutdown."""

    def __init__(self) -> None:
        super().__init__()
        self._installed = False
        self._uncaught = False

    def register(self, session: Any) -> None:
        self._install()
        super().register(session)

    def _install(self) -> None:
        if self._installed:
            return
        self._installed = True
        previous = sys.excepthook

        def hook(exc_type, exc, tb):  # type: ignore[no-untyped-def]
            self._uncaught = True
            previous(exc_type, exc, tb)

        sys.excepthook = hook
        atexit.register(self._on_exit)

    def _on_exit(self) -> None:
        if self._uncaught:
            # The run is already failing; the unfinished session is a symptom.
            return
        try:
            self.check()
        except UnfinalizedSessionError as e:
            _logger.critical("%s", e)
            logging.shutdown()
            sys.stderr.flush()
            os._exit(UNFINALIZED_EXIT_STATUS)


_default_registry = _ProcessExitGuard()


def default_registry() -> ExitGuardRegistry:
    """The registry guarding this interpreter's exit."""
    return _default_registry
