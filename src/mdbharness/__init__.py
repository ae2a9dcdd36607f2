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
mdb harness - drive mdb sessions from standalone tests.

Provides:
- Sentinel-framed, strictly sequential command sessions over mdb
- Core file capture and keep-on-failure cleanup
- Self-attach leak checks against mdb's own process
"""

from .config import HarnessSettings, get_settings
from .exceptions import (
    AcquisitionError,
    AttachError,
    HarnessConfigError,
    MdbHarnessError,
    ProtocolViolation,
    SessionClosed,
    SessionOpenError,
    SessionTerminated,
    TestFailure,
    UnfinalizedSessionError,
)
from .framing import SentinelFramer, make_sentinel
from .guard import ExitGuardRegistry, default_registry
from .leaks import check_mdb_leaks
from .lifecycle import LifecycleRun, PipelineResult, run_pipeline, standalone_test
from .session import MdbSession, SessionState
from .target import Target, TargetKind, capture_core, dmod_path
from .transcript import Transcript

__version__ = "0.1.0"
__all__ = [
    "AcquisitionError",
    "AttachError",
    "ExitGuardRegistry",
    "HarnessConfigError",
    "HarnessSettings",
    "LifecycleRun",
    "MdbHarnessError",
    "MdbSession",
    "PipelineResult",
    "ProtocolViolation",
    "SentinelFramer",
    "SessionClosed",
    "SessionOpenError",
    "SessionState",
    "SessionTerminated",
    "Target",
    "TargetKind",
    "TestFailure",
    "Transcript",
    "UnfinalizedSessionError",
    "capture_core",
    "check_mdb_leaks",
    "default_registry",
    "dmod_path",
    "get_settings",
    "make_sentinel",
    "run_pipeline",
    "standalone_test",
    "__version__",
]
