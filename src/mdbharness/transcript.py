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

"""Command transcript: what was sent to mdb and what came back."""

from dataclasses import dataclass, field

from rich.console import Console
from rich.text import Text


@dataclass
class TranscriptEntry:
    label: str
    command: str
    output: str | None = None


@dataclass
class Transcript:
    """Records every command/response pair and echoes it to the console.

    Commands are rendered as ``> command`` and responses verbatim, on
    stderr so test stdout stays clean.
    """

    console: Console | None = field(
        default_factory=lambda: Console(stderr=True, highlight=False, markup=False)
    )
    entries: list[TranscriptEntry] = field(default_factory=list)

    def command(self, label: str, command: str) -> TranscriptEntry:
        entry = TranscriptEntry(label=label, command=command.rstrip("\n"))
        self.entries.append(entry)
        if self.console is not None:
            self.console.print(Text(f"> {entry.command}", style="bold cyan"))
        return entry

    def output(self, entry: TranscriptEntry, output: str) -> None:
        entry.output = output
        if self.console is not None and output:
            self.console.print(Text(output.rstrip("\n")))

    def note(self, message: str) -> None:
        if self.console is not None:
            self.console.print(Text(message, style="yellow"))

    def outputs(self, label: str | None = None) -> list[str]:
        return [
            e.output or ""
            for e in self.entries
            if label is None or e.label == label
        ]


def quiet_transcript() -> Transcript:
    """A transcript that records but never prints."""
    return Transcript(console=None)
