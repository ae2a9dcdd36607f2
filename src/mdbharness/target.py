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
Session targets, core capture and dmod lookup.

A session attaches either to a saved core file or to a live process id.
Core files are produced with gcore(1) against the current process.
"""

import asyncio
import enum
import logging
import os
import platform
from dataclasses import dataclass
from pathlib import Path

from .config import HarnessSettings, get_settings
from .exceptions import AcquisitionError

_logger = logging.getLogger("mdbharness.target")

_DMOD_NAME = "mdb_v8.so"


class TargetKind(enum.Enum):
    FILE = "file"
    PROCESS = "process"


@dataclass(frozen=True)
class Target:
    """What a session inspects: a core file path or a running process id."""

    kind: TargetKind
    path: Path | None = None
    pid: int | None = None

    @classmethod
    def file(cls, path: str | os.PathLike[str]) -> "Target":
        return cls(kind=TargetKind.FILE, path=Path(path))

    @classmethod
    def process(cls, pid: int) -> "Target":
        return cls(kind=TargetKind.PROCESS, pid=int(pid))

    @property
    def is_file(self) -> bool:
        return self.kind is TargetKind.FILE

    def mdb_args(self) -> list[str]:
        """Trailing mdb arguments selecting this target."""
        if self.is_file:
            return [str(self.path)]
        return ["-p", str(self.pid)]

    def __str__(self) -> str:
        if self.is_file:
            return str(self.path)
        return f"pid {self.pid}"


def host_arch(machine: str | None = None) -> str:
    """Map the host machine name to the dmod build directory name."""
    machine = (machine if machine is not None else platform.machine()).lower()
    if machine in ("x86_64", "amd64", "x64"):
        return "amd64"
    return "ia32"


def dmod_path(arch: str | None = None, *, settings: HarnessSettings | None = None) -> Path:
    """
    Return the path of the built mdb_v8 dmod to load into mdb.

    An explicit ``MDB_V8_DMOD_PATH`` wins; otherwise the path is
    ``<MDB_V8_BUILD_DIR>/<arch>/mdb_v8.so``.
    """
    settings = settings or get_settings()
    if settings.mdb_v8_dmod_path:
        return Path(settings.mdb_v8_dmod_path).absolute()
    return (Path(settings.mdb_v8_build_dir) / (arch or host_arch()) / _DMOD_NAME).absolute()


async def capture_core(
    pid: int | None = None, *, settings: HarnessSettings | None = None
) -> Path:
    """
    Save a core file of ``pid`` (default: this process) using gcore.

    Returns:
        Path of the new core file, ``<core_prefix>.<pid>``.

    Raises:
        AcquisitionError: If gcore cannot be started or exits non-zero.
    """
    settings = settings or get_settings()
    pid = os.getpid() if pid is None else pid
    prefix = settings.core_prefix
    corefile = Path(f"{prefix}.{pid}")
    cmd = [*settings.gcore_argv(), "-o", prefix, str(pid)]
    _logger.debug("Running %s", " ".join(cmd))

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise AcquisitionError(
            f"Failed to spawn gcore: {e}", context={"command": cmd[0]}
        ) from e

    _, err_bytes = await proc.communicate()
    stderr = err_bytes.decode(errors="replace") if err_bytes else ""
    for line in stderr.splitlines():
        _logger.info("gcore: stderr: %s", line)

    if proc.returncode != 0:
        raise AcquisitionError(
            f"gcore exited with code {proc.returncode}",
            exit_code=proc.returncode,
            stderr=stderr,
        )

    _logger.info("gcore created %s", corefile)
    return corefile
