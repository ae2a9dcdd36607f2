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
Leak checking mdb itself.

A second mdb is attached to the pid of the session's own mdb process and
asked to look for leaked memory. The nested session never outlives the
call that opened it, and it never touches the parent's state.
"""

import logging

from .exceptions import AttachError, MdbHarnessError
from .session import MdbSession
from .target import Target

_logger = logging.getLogger("mdbharness.leaks")


async def check_mdb_leaks(parent: MdbSession) -> str:
    """
    Attach to ``parent``'s mdb process and run the leak command.

    Returns:
        The leak command's output (also recorded in the transcript).

    Raises:
        ProtocolViolation: If a leak check is already attached to ``parent``.
        AttachError: If the nested session fails to open, run or finish.
    """
    pid = parent.pid
    settings = parent.settings
    sub = MdbSession(
        Target.process(pid),
        settings=settings,
        load_dmod=False,
        remove_on_success=False,
        registry=parent.registry,
        transcript=parent.transcript,
        label=f"mdb[leaks of pid {pid}]",
    )

    with parent.holding_sub_session(sub):
        try:
            await sub.start()
        except MdbHarnessError as e:
            raise AttachError(f"failed to attach to mdb (pid {pid})", pid=pid) from e

        try:
            output = await sub.run_cmd(settings.mdb_leak_command + "\n")
        except MdbHarnessError as e:
            await sub.abort()
            raise AttachError(
                f"leak check against mdb (pid {pid}) failed", pid=pid
            ) from e

        try:
            await sub.finish()
        except MdbHarnessError as e:
            await sub.abort()
            raise AttachError(
                f"failed to detach from mdb (pid {pid})", pid=pid
            ) from e

    _logger.info("Leak check of mdb pid %d complete", pid)
    return output
