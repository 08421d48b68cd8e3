"""Pipe channels connecting the parent process to its workers.

A Channel is one end of an OS pipe. Each end has exactly one owner: the
distributor, a specific worker, or the recombiner. Every other process must
close its copy, otherwise end-of-stream is never observed on that pipe.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import os

from paracat.errors import TransportError


class ChannelRole(Enum):
    """Direction of a channel relative to the worker it serves.

    Attributes:
        INPUT: Carries distributed input from the parent into a worker.
        OUTPUT: Carries a worker's output back to the parent.
    """

    INPUT = 'input'
    OUTPUT = 'output'


def write_fully(fd: int, data: bytes) -> None:
    """Write all of ``data`` to ``fd``, retrying on short writes.

    Args:
        fd: File descriptor to write to.
        data: Bytes to transmit.

    Raises:
        OSError: If any underlying write fails.
    """
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


@dataclass
class Channel:
    """One end of a pipe together with its role and owner.

    Attributes:
        fd: The file descriptor of this end.
        role: Whether the pipe feeds a worker or drains one.
        owner: Label of the component allowed to use this end.
        closed: Whether this end has been closed.
    """

    fd: int
    role: ChannelRole
    owner: str
    closed: bool = field(default=False, compare=False)

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes. Empty bytes mean end-of-stream.

        Raises:
            TransportError: If the read fails.
        """
        try:
            return os.read(self.fd, size)
        except OSError as exc:
            msg = f'could not read from {self.role.value} channel fd {self.fd}: {exc.strerror or exc}'
            raise TransportError(self.owner, msg) from exc

    def write_fully(self, data: bytes) -> None:
        """Write the whole of ``data`` to this channel.

        Raises:
            TransportError: If a write fails before all bytes are transmitted.
        """
        try:
            write_fully(self.fd, data)
        except OSError as exc:
            msg = f'could not write to {self.role.value} channel fd {self.fd}: {exc.strerror or exc}'
            raise TransportError(self.owner, msg) from exc

    def close(self) -> None:
        """Close this end. Closing an already closed channel does nothing.

        Raises:
            OSError: If the close itself fails. The channel is marked closed
                regardless, since the descriptor must not be reused.
        """
        if self.closed:
            return
        self.closed = True
        os.close(self.fd)


@dataclass(frozen=True)
class Pipe:
    """Both ends of one OS pipe.

    Attributes:
        read_end: The end the reader owns.
        write_end: The end the writer owns.
    """

    read_end: Channel
    write_end: Channel

    def close(self) -> None:
        """Close both ends, best effort."""
        for end in (self.read_end, self.write_end):
            try:
                end.close()
            except OSError:
                continue


def open_pipe(role: ChannelRole, reader: str, writer: str) -> Pipe:
    """Create a pipe and label its ends with their owners.

    The descriptors are non-inheritable, so spawned workers only ever see the
    ends explicitly handed to them.

    Args:
        role: Direction of the pipe relative to the worker.
        reader: Owner label for the read end.
        writer: Owner label for the write end.

    Returns:
        The new Pipe.

    Raises:
        OSError: If the pipe cannot be created.
    """
    read_fd, write_fd = os.pipe()
    return Pipe(
        read_end=Channel(read_fd, role, reader),
        write_end=Channel(write_fd, role, writer),
    )
