"""Round-robin distribution of stdin lines across worker input channels.

The distributor owns the parent's stdin and the write end of every worker's
input pipe. Each read is split at its last newline: the complete lines go to
the current worker and the cursor moves on, while the trailing fragment stays
buffered and is sent to the next worker together with the rest of its line.

Granularity is per read, not per line. One read that carries several lines
sends all of them to the same worker, but no line is ever split between two.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from paracat.errors import TransportError
from paracat.fragment import DEFAULT_BUFFER_SIZE, NEWLINE, LineAccumulator


if TYPE_CHECKING:
    from collections.abc import Sequence

    from paracat.channel import Channel


logger = logging.getLogger(__name__)


class Distributor:
    """Routes chunks of complete lines round-robin across input channels.

    Attributes:
        cursor: Index of the slot currently receiving input.
        pending: The buffered, not yet newline-terminated fragment.

    Example:
        >>> distributor = Distributor(channels)  # doctest: +SKIP
        >>> distributor.run(0)  # doctest: +SKIP
    """

    def __init__(
        self,
        channels: Sequence[Channel],
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        """Initialize the distributor.

        Args:
            channels: One input channel per worker slot, in slot order.
            buffer_size: Maximum number of bytes buffered per read.

        Raises:
            ValueError: If no channels are given.
        """
        if not channels:
            msg = 'Distributor needs at least one channel'
            raise ValueError(msg)
        self._channels = list(channels)
        self._cursor = 0
        self._buffer = LineAccumulator(buffer_size)
        self._bytes_routed = 0

    @property
    def cursor(self) -> int:
        """Return the index of the slot currently receiving input."""
        return self._cursor

    @property
    def pending(self) -> bytes:
        """Return the buffered fragment."""
        return self._buffer.pending

    @property
    def bytes_routed(self) -> int:
        """Return the number of bytes written to workers so far."""
        return self._bytes_routed

    def feed(self, data: bytes) -> None:
        """Route one chunk of input.

        Args:
            data: Bytes just read from the source.

        Raises:
            TransportError: If writing to the current worker fails.
        """
        ready = self._buffer.push(data)
        if not ready:
            return
        self._send(ready)
        if ready.endswith(NEWLINE):
            self._advance()

    def finish(self) -> None:
        """Flush the trailing fragment, if any, to the current worker.

        The fragment is sent verbatim; no newline is added.

        Raises:
            TransportError: If writing to the current worker fails.
        """
        fragment = self._buffer.drain()
        if fragment:
            self._send(fragment)

    def run(self, source_fd: int) -> None:
        """Consume ``source_fd`` to end-of-stream, distributing its lines.

        Channels are not closed here; the process group closes them once
        this returns or fails.

        Args:
            source_fd: File descriptor to read input from, usually stdin.

        Raises:
            TransportError: If the source cannot be read or a worker cannot
                be written to. A read failure flushes the pending fragment
                first.
        """
        while True:
            try:
                data = os.read(source_fd, self._buffer.room)
            except OSError as exc:
                self.finish()
                msg = f'could not read input fd {source_fd}: {exc.strerror or exc}'
                raise TransportError('distributor', msg) from exc
            if not data:
                self.finish()
                logger.debug('Input exhausted after %d bytes', self._bytes_routed)
                return
            self.feed(data)

    def _send(self, data: bytes) -> None:
        self._channels[self._cursor].write_fully(data)
        self._bytes_routed += len(data)

    def _advance(self) -> None:
        self._cursor = (self._cursor + 1) % len(self._channels)
