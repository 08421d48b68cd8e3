"""Line-boundary splitting shared by the distributor and the recombiner.

Both engines read arbitrarily sized chunks and may only forward whole lines.
Bytes after the last newline are held back as a fragment until more data
arrives or the stream ends.
"""

from __future__ import annotations


NEWLINE = b'\n'
DEFAULT_BUFFER_SIZE = 4096


def split_at_last_newline(data: bytes) -> tuple[bytes, bytes]:
    """Split ``data`` after its last newline.

    Args:
        data: Bytes to split.

    Returns:
        ``(complete, fragment)`` where ``complete`` ends with the last newline
        (or is empty if there is none) and ``fragment`` holds the rest.

    Example:
        >>> split_at_last_newline(b'a\\nb\\nc')
        (b'a\\nb\\n', b'c')
        >>> split_at_last_newline(b'abc')
        (b'', b'abc')
    """
    pos = data.rfind(NEWLINE)
    if pos < 0:
        return b'', data
    return data[: pos + 1], data[pos + 1 :]


class LineAccumulator:
    """Buffers an unterminated fragment between reads.

    The retained fragment never contains a newline and stays shorter than
    ``capacity``. When a fragment fills the whole capacity without a newline
    it is released as-is, so memory stays bounded; the caller keeps sending it
    to the same destination, so the line is still never split between two.

    Example:
        >>> acc = LineAccumulator(capacity=16)
        >>> acc.push(b'one\\ntw')
        b'one\\n'
        >>> acc.pending
        b'tw'
        >>> acc.push(b'o\\n')
        b'two\\n'
    """

    def __init__(self, capacity: int = DEFAULT_BUFFER_SIZE) -> None:
        if capacity <= 0:
            msg = f'capacity must be positive, got {capacity}'
            raise ValueError(msg)
        self._capacity = capacity
        self._pending = b''

    @property
    def capacity(self) -> int:
        """Return the buffer capacity in bytes."""
        return self._capacity

    @property
    def pending(self) -> bytes:
        """Return the buffered fragment."""
        return self._pending

    @property
    def room(self) -> int:
        """Return how many bytes the next read may fetch."""
        return self._capacity - len(self._pending)

    def push(self, data: bytes) -> bytes:
        """Append ``data`` and return whatever is ready to be flushed.

        Args:
            data: Newly read bytes.

        Returns:
            The bytes up to and including the last newline, the whole buffer if
            it reached capacity without a newline, or empty bytes.
        """
        combined = self._pending + data
        complete, fragment = split_at_last_newline(combined)
        if not complete and len(fragment) >= self._capacity:
            complete, fragment = fragment, b''
        self._pending = fragment
        return complete

    def drain(self) -> bytes:
        """Return the pending fragment and clear it."""
        fragment, self._pending = self._pending, b''
        return fragment
