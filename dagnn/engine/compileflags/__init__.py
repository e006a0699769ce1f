"""
The compileflags package defines the flags used by the execution engine.

We centralize the definition of flags to avoid defining flags into each package
and ending up with incompatible engine flags.
"""

# SPDX-License-Identifier: Apache-2.0

import os
from typing import Callable

TRACE = 1 << 0
"""Indicates that we should trace execution."""

BREAK = 1 << 1
"""Indicates that we should break execution after evaluating each layer."""

DUMP = 1 << 2
"""Indicates that we should dump the network before evaluating it."""

_flagnames: dict[str, int] = {
    "break": BREAK,
    "dump": DUMP,
    "trace": TRACE,
}
"""Maps the lowercase name of the flag to its value."""


def from_environ(
    varname: str = "DAGNN_ENGINE_FLAGS",
    getenv: Callable[[str], str | None] = os.getenv,
) -> int:
    """Read flags from a specific environment variable.

    The format for the flags is the following:

        <key>[,<key>,...]

    where <key> is the case-insensitive name of an existing flag.

    For example:

        export DAGNN_ENGINE_FLAGS=trace,break

    causes this function to return:

        TRACE|BREAK

    Unknown keys are ignored.

    Arguments
    ---------
    varname: the name of the environment variable (default: `DAGNN_ENGINE_FLAGS`).
    getenv: the function to read the environment variable (default: os.getenv).
    """
    flags: int = 0
    for value in (getenv(varname) or "").split(","):
        flags |= _flagnames.get(value.strip().lower(), 0)
    return flags


defaults = from_environ()
"""Default engine flags initialized from the `DAGNN_ENGINE_FLAGS` environment variable."""
