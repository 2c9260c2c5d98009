"""Process exit codes returned by the ``opcsign`` CLI."""

from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_OPTIONS = 1
    FAILED = 2
