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
Harness configuration.

Every setting can be supplied through the environment (upper-cased field
name) or a local ``.env`` file.
"""

import functools
import os
import shlex

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import HarnessConfigError


class HarnessSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Tools
    mdb_command: str = "mdb"
    gcore_command: str = "gcore"

    # Extra library search path for mdb ("-L"); empty means none
    mdb_library_path: str = ""

    # Core files land at "<core_prefix>.<pid>"
    core_prefix: str = "/var/tmp/mdbharness"

    # mdb_v8 dmod location
    mdb_v8_build_dir: str = "build"
    mdb_v8_dmod_path: str | None = None

    # Child environment
    mdb_timezone: str = "utc"
    inherit_environment: bool = False

    # Protocol
    randomize_sentinel: bool = False
    display_width: int = Field(default=1000, gt=0)
    exit_timeout: float = Field(default=5.0, gt=0)
    mdb_leak_command: str = "::findleaks"

    def mdb_argv(self) -> list[str]:
        """Split ``mdb_command`` into an argv prefix.

        Raises:
            HarnessConfigError: If the command is empty or malformed.
        """
        return _split_command(self.mdb_command, "mdb_command")

    def gcore_argv(self) -> list[str]:
        """Split ``gcore_command`` into an argv prefix."""
        return _split_command(self.gcore_command, "gcore_command")

    def library_path_args(self) -> list[str]:
        if self.mdb_library_path:
            return ["-L", self.mdb_library_path]
        return []

    def child_env(self) -> dict[str, str]:
        """Environment for mdb children: just TZ unless inheriting."""
        env: dict[str, str] = {}
        if self.inherit_environment:
            env.update(os.environ)
        env["TZ"] = self.mdb_timezone
        return env


def _split_command(command: str, key: str) -> list[str]:
    try:
        parts = shlex.split(command)
    except ValueError as e:
        raise HarnessConfigError(f"Malformed command: {e}", config_key=key) from e
    if not parts:
        raise HarnessConfigError("Command is empty after parsing.", config_key=key)
    return parts


@functools.lru_cache(maxsize=1)
def get_settings() -> HarnessSettings:
    """Process-wide settings, read once."""
    return HarnessSettings()
