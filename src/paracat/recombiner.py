"""Merging of worker outputs into a single stream.

Every worker's output channel gets its own reader thread. A reader forwards
only whole lines (or its worker's final unterminated tail) to a shared
LineSink, which serializes writes behind a lock. Each write on the combined
output therefore belongs to exactly one worker, and every worker's bytes keep
their order. Writes from different workers interleave in whatever order the
readers get to them.

A line longer than the buffer is flushed in pieces. The reader that flushed
the first piece keeps the output turn until the line ends, so no other
worker's bytes land inside it.

When a channel reaches end-of-stream its slot is reclaimed for good. The
recombiner finishes once no slot is left.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
import logging
import threading
from typing import TYPE_CHECKING, Protocol

from paracat.channel import write_fully
from paracat.errors import TransportError
from paracat.fragment import DEFAULT_BUFFER_SIZE, NEWLINE, LineAccumulator


if TYPE_CHECKING:
    from collections.abc import Sequence

    from paracat.channel import Channel


logger = logging.getLogger(__name__)


class Sink(Protocol):
    """Destination for recombined output."""

    def write(self, data: bytes) -> None:
        """Write ``data`` as one uninterrupted span."""
        ...


class LineSink:
    """Thread-safe writer for the combined output stream.

    Example:
        >>> sink = LineSink(1)  # doctest: +SKIP
        >>> sink.write(b'hello\\n')  # doctest: +SKIP
    """

    def __init__(self, fd: int) -> None:
        """Initialize the sink.

        Args:
            fd: File descriptor of the combined output, usually stdout.
        """
        self._fd = fd
        self._lock = threading.Lock()

    @property
    def fd(self) -> int:
        """Return the output file descriptor."""
        return self._fd

    def write(self, data: bytes) -> None:
        """Write the whole of ``data`` before any other writer may proceed.

        Raises:
            OSError: If the output cannot be written.
        """
        with self._lock:
            write_fully(self._fd, data)


@dataclass
class RecombinerSlot:
    """One worker's output channel and its pending fragment.

    Attributes:
        index: The worker slot this output belongs to.
        channel: The read end of the worker's output pipe.
        buffer: Fragment buffer for this channel only.
    """

    index: int
    channel: Channel
    buffer: LineAccumulator = field(default_factory=LineAccumulator)


class Recombiner:
    """Multiplexes worker output channels onto one sink.

    The recombiner takes exclusive ownership of the channels it is given and
    closes each one as it reaches end-of-stream.

    Attributes:
        active: Slot indexes whose channels are still open.
        failure: The sink write error that stopped output, if any.
    """

    def __init__(
        self,
        channels: Sequence[Channel],
        sink: Sink,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        """Initialize the recombiner.

        Args:
            channels: Output read ends, one per worker slot, in slot order.
            sink: Where the merged output goes.
            buffer_size: Per-channel buffer capacity in bytes.
        """
        self._slots = [
            RecombinerSlot(index, channel, LineAccumulator(buffer_size)) for index, channel in enumerate(channels)
        ]
        self._active = list(self._slots)
        self._sink = sink
        self._lock = threading.Lock()
        self._turn = threading.RLock()
        self._failure: OSError | None = None

    @property
    def active(self) -> list[int]:
        """Return the indexes of slots still being serviced."""
        with self._lock:
            return [slot.index for slot in self._active]

    @property
    def failure(self) -> OSError | None:
        """Return the sink error that stopped output, if any."""
        return self._failure

    def run(self) -> None:
        """Service every channel until all of them reach end-of-stream.

        After a sink failure the remaining channels are still drained, with
        their output discarded, so that no worker blocks on a full pipe.

        Raises:
            TransportError: If writing to the sink failed at any point.
        """
        if not self._slots:
            return

        with ThreadPoolExecutor(
            max_workers=len(self._slots),
            thread_name_prefix='paracat-recombine',
        ) as executor:
            futures = [executor.submit(self._drain, slot) for slot in self._slots]
            wait(futures)

        for future in futures:
            future.result()

        if self._failure is not None:
            msg = f'could not write combined output: {self._failure.strerror or self._failure}'
            raise TransportError('recombiner', msg) from self._failure

    def _drain(self, slot: RecombinerSlot) -> None:
        """Read one channel to end-of-stream, emitting whole lines.

        After a flush that does not end in a newline this reader holds the
        output turn until its line is terminated or its channel ends.
        """
        holding = False
        try:
            while True:
                try:
                    data = slot.channel.read(slot.buffer.room)
                except TransportError as exc:
                    logger.warning('%s; treating as end of stream', exc)
                    data = b''

                if not data:
                    tail = slot.buffer.drain()
                    if tail:
                        self._emit(tail)
                    self._reclaim(slot)
                    return

                ready = slot.buffer.push(data)
                if not ready:
                    continue
                line_open = not ready.endswith(NEWLINE)
                if line_open and not holding:
                    self._turn.acquire()
                    holding = True
                self._emit(ready)
                if holding and not line_open:
                    self._turn.release()
                    holding = False
        finally:
            if holding:
                self._turn.release()

    def _emit(self, data: bytes) -> None:
        if self._failure is not None:
            return
        try:
            with self._turn:
                self._sink.write(data)
        except OSError as exc:
            with self._lock:
                if self._failure is None:
                    self._failure = exc
                    logger.error('Could not write combined output: %s', exc)

    def _reclaim(self, slot: RecombinerSlot) -> None:
        """Remove ``slot`` from the active set and close its channel."""
        with self._lock:
            self._active.remove(slot)
            remaining = len(self._active)
        try:
            slot.channel.close()
        except OSError as exc:
            logger.warning('Could not close output channel of worker %d: %s', slot.index, exc)
        logger.debug('Output of worker %d finished, %d still active', slot.index, remaining)
