"""
The compileflags package defines the flags used by the execution engine.

We centralize the definition of flags to avoid defining flags into each package
and ending up with incompatible engine flags. The package also reads the default
concurrency limit used by the concurrent backward visitor.
"""

# SPDX-License-Identifier: Apache-2.0

from typing import Callable
import os


TRACE = 1 << 0
"""Indicates that we should trace execution."""

BREAK = 1 << 1
"""Indicates that we should break execution after evaluation."""

DUMP = 1 << 2
"""Indicates that we should dump the execution order before running it."""

_flagnames: dict[str, int] = {
    "break": BREAK,
    "dump": DUMP,
    "trace": TRACE,
}
"""Maps the lowercase name of the flag to its value."""


def from_environ(
    varname: str = "PRAD_ENGINE_FLAGS",
    getenv: Callable[[str], str | None] = os.getenv,
) -> int:
    """Read flags from a specific environment variable.

    The format for the flags is the following:

        <key>[,<key>,...]

    where <key> is the case-insensitive name of an existing flag.

    For example:

        export PRAD_ENGINE_FLAGS=trace,break

    causes this function to return:

        TRACE|BREAK

    Arguments
    ---------
    varname: the name of the environment variable (default: `PRAD_ENGINE_FLAGS`).
    getenv: the function to read the environment variable (default: os.getenv).
    """
    flags: int = 0
    for value in (getenv(varname) or "").split(","):
        flags |= _flagnames.get(value.strip().lower(), 0)
    return flags


def workers_from_environ(
    varname: str = "PRAD_ENGINE_WORKERS",
    getenv: Callable[[str], str | None] = os.getenv,
    cpu_count: Callable[[], int | None] = os.cpu_count,
) -> int:
    """Read the backward concurrency limit from an environment variable.

    Missing, malformed, or non-positive values fall back to the number
    of CPUs (and to 1 when that is unknown).
    """
    try:
        workers = int((getenv(varname) or "").strip())
    except ValueError:
        workers = 0
    if workers > 0:
        return workers
    return max(1, cpu_count() or 1)


defaults = from_environ()
"""Default engine flags initialized from the `PRAD_ENGINE_FLAGS` environment variable."""

default_workers = workers_from_environ()
"""Default concurrency limit initialized from the `PRAD_ENGINE_WORKERS` environment variable."""
