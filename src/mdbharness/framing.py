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
Sentinel framing for mdb's unframed output.

mdb prints free-form text with nothing marking the end of a response, so
every command is followed by ``!echo <sentinel>``. Whatever precedes the
echoed sentinel on stdout is the response to that command.

Example:
    framer = SentinelFramer("S\\n")
    framer.feed("2\\n")      # -> []
    framer.feed("S\\n")      # -> ["2\\n"]
"""

import uuid

__all__ = ["DEFAULT_SENTINEL", "SentinelFramer", "make_sentinel"]

DEFAULT_SENTINEL = "MDB_SENTINEL\n"

_ECHO_PREFIX = "!echo "


def make_sentinel(randomize: bool = False) -> str:
    """Return the sentinel line, optionally with a per-session random tag."""
    if not randomize:
        return DEFAULT_SENTINEL
    return f"MDB_SENTINEL_{uuid.uuid4().hex}\n"


class SentinelFramer:
    """Incremental splitter turning output chunks into response bodies."""

    def __init__(self, sentinel: str = DEFAULT_SENTINEL) -> None:
        if not sentinel.endswith("\n") or sentinel == "\n":
            raise ValueError("sentinel must be non-empty text ending in a newline")
        self._sentinel = sentinel
        self._buffer = ""

    @property
    def sentinel(self) -> str:
        return self._sentinel

    @property
    def buffered(self) -> str:
        """Output received but not yet claimed by a sentinel."""
        return self._buffer

    def wire(self, command: str) -> str:
        """Text to write for ``command``: the command line plus the sentinel echo."""
        if not command.endswith("\n"):
            command += "\n"
        return command + _ECHO_PREFIX + self._sentinel

    def feed(self, chunk: str) -> list[str]:
        """Append ``chunk`` and return every response it completes, oldest first.

        A chunk may complete zero, one or several responses, and a
        response may be empty.
        """
        self._buffer += chunk
        bodies: list[str] = []
        while True:
            i = self._buffer.find(self._sentinel)
            if i < 0:
                break
            bodies.append(self._buffer[:i])
            self._buffer = self._buffer[i + len(self._sentinel):]
        return bodies
