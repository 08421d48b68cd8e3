"""Exceptions raised by the paracat engines.

Errors never cross a process boundary. They are raised and handled inside the
process that observed them; only exit statuses reach the final aggregate.
"""

from __future__ import annotations


class ParacatError(Exception):
    """Base class for paracat runtime errors."""


class SpawnError(ParacatError):
    """Raised when the worker group cannot be set up.

    Covers pipe creation, process spawning and closing of transferred pipe
    ends. The group is torn down before this propagates.
    """


class TransportError(ParacatError):
    """Raised when reading or writing a channel fails.

    Attributes:
        owner: Label of the component that observed the failure.
    """

    def __init__(self, owner: str, message: str) -> None:
        self.owner = owner
        super().__init__(f'{owner}: {message}')
