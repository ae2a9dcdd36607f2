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
Run mdb commands against an existing core file.

Usage:
    mdb-harness /var/tmp/mdbharness.1234 -c '::jsstack' -c '::findjsobjects'
"""

import argparse
import asyncio
import logging
import sys

from .exceptions import MdbHarnessError
from .log import configure_logging
from .session import MdbSession
from .target import Target

_logger = logging.getLogger("mdbharness.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mdb-harness",
        description="Open an mdb session on a core file and run commands against it",
    )
    parser.add_argument(
        "core",
        help="Path to the core file"
    )
    parser.add_argument(
        "-c", "--command",
        dest="commands",
        action="append",
        default=[],
        help="mdb command to run (repeatable, run in order)"
    )
    parser.add_argument(
        "--no-dmod",
        action="store_true",
        help="Do not load the mdb_v8 dmod"
    )
    parser.add_argument(
        "--leaks",
        action="store_true",
        help="Finish with a leak check against mdb itself"
    )
    parser.add_argument(
        "--remove",
        action="store_true",
        help="Delete the core file if every command succeeds"
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (default: WARNING)"
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines"
    )
    return parser


async def _run(args: argparse.Namespace) -> None:
    session = MdbSession(
        Target.file(args.core),
        load_dmod=not args.no_dmod,
        remove_on_success=args.remove,
    )
    async with session:
        for command in args.commands:
            output = await session.run_cmd(command)
            sys.stdout.write(output)
        if args.leaks:
            sys.stdout.write(await session.check_leaks())


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, json_format=args.json_logs)
    try:
        asyncio.run(_run(args))
    except MdbHarnessError as e:
        _logger.error("%s", e)
        print(f"mdb-harness: {e}", file=sys.stderr)
        return 1
    return 0
