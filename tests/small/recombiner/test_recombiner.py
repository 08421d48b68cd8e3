"""Tests for the Recombiner.

Worker outputs are simulated with real pipes whose write ends the test fills
and closes; a recording sink captures each emitted write separately.
"""

from __future__ import annotations

import threading
import time

import pytest

from paracat.channel import ChannelRole
from paracat.errors import TransportError
from paracat.recombiner import LineSink, Recombiner


class RecordingSink:
    """Sink that keeps every write as a separate entry."""

    def __init__(self) -> None:
        self.writes: list[bytes] = []
        self._lock = threading.Lock()

    def write(self, data: bytes) -> None:
        with self._lock:
            self.writes.append(data)


class BrokenSink:
    """Sink whose every write fails."""

    def __init__(self) -> None:
        self.attempts = 0

    def write(self, data: bytes) -> None:  # noqa: ARG002
        self.attempts += 1
        raise BrokenPipeError(32, 'Broken pipe')


@pytest.fixture
def output_pipes(make_pipe):
    """Return a factory for N worker output pipes."""

    def factory(count: int):
        return [make_pipe(ChannelRole.OUTPUT, reader='recombiner', writer=f'worker-{i}') for i in range(count)]

    return factory


def finish_worker(pipe, data: bytes) -> None:
    """Simulate a worker writing ``data`` and exiting."""
    pipe.write_end.write_fully(data)
    pipe.write_end.close()


class TestRecombinerMerge:
    """Tests for merging complete lines."""

    def test_each_write_belongs_to_one_worker(self, output_pipes) -> None:
        """No emitted write mixes bytes from two workers."""
        pipes = output_pipes(2)
        finish_worker(pipes[0], b'a1\na2\na3\n')
        finish_worker(pipes[1], b'b1\nb2\n')
        sink = RecordingSink()

        Recombiner([p.read_end for p in pipes], sink).run()

        for write in sink.writes:
            prefixes = {line[:1] for line in write.splitlines()}
            assert len(prefixes) == 1

    def test_per_worker_order_is_preserved(self, output_pipes) -> None:
        """Each worker's lines appear in the order it wrote them."""
        pipes = output_pipes(2)
        finish_worker(pipes[0], b'a1\na2\na3\n')
        finish_worker(pipes[1], b'b1\nb2\n')
        sink = RecordingSink()

        Recombiner([p.read_end for p in pipes], sink).run()

        lines = b''.join(sink.writes).splitlines()
        assert [line for line in lines if line.startswith(b'a')] == [b'a1', b'a2', b'a3']
        assert [line for line in lines if line.startswith(b'b')] == [b'b1', b'b2']

    def test_unterminated_tail_flushed_at_end_of_stream(self, output_pipes) -> None:
        """A worker's final line without newline is emitted on its own."""
        pipes = output_pipes(1)
        finish_worker(pipes[0], b'x\ny')
        sink = RecordingSink()

        Recombiner([p.read_end for p in pipes], sink).run()

        assert b''.join(sink.writes) == b'x\ny'
        assert sink.writes[-1].endswith(b'y')

    def test_lines_split_across_reads_are_reassembled(self, output_pipes) -> None:
        """Output read in several pieces reaches the sink complete and in order."""
        pipes = output_pipes(1)
        sink = RecordingSink()
        recombiner = Recombiner([p.read_end for p in pipes], sink, buffer_size=4)
        finish_worker(pipes[0], b'ab\ncdefgh\n')

        recombiner.run()

        assert b''.join(sink.writes) == b'ab\ncdefgh\n'
        assert sink.writes[0] == b'ab\n'

    def test_long_line_is_not_interleaved(self, output_pipes) -> None:
        """A line longer than the buffer keeps the output until it ends."""
        pipes = output_pipes(2)
        sink = RecordingSink()
        recombiner = Recombiner([p.read_end for p in pipes], sink, buffer_size=8)
        runner = threading.Thread(target=recombiner.run)
        runner.start()

        pipes[0].write_end.write_fully(b'A' * 16)
        for _ in range(500):
            if sink.writes:
                break
            time.sleep(0.01)
        pipes[1].write_end.write_fully(b'B\n')
        time.sleep(0.1)
        finish_worker(pipes[0], b'A\n')
        pipes[1].write_end.close()
        runner.join(timeout=10)

        assert not runner.is_alive()
        assert b''.join(sink.writes) == b'A' * 17 + b'\nB\n'

    def test_long_tail_releases_output_at_end_of_stream(self, output_pipes) -> None:
        """An over-long unterminated tail gives up the output when its channel ends."""
        pipes = output_pipes(2)
        sink = RecordingSink()
        recombiner = Recombiner([p.read_end for p in pipes], sink, buffer_size=8)
        runner = threading.Thread(target=recombiner.run)
        runner.start()

        pipes[0].write_end.write_fully(b'A' * 12)
        for _ in range(500):
            if sink.writes:
                break
            time.sleep(0.01)
        pipes[1].write_end.write_fully(b'B\n')
        time.sleep(0.1)
        pipes[0].write_end.close()
        pipes[1].write_end.close()
        runner.join(timeout=10)

        assert not runner.is_alive()
        assert b''.join(sink.writes) == b'A' * 12 + b'B\n'

    def test_worker_without_output(self, output_pipes) -> None:
        """A worker that writes nothing emits nothing."""
        pipes = output_pipes(2)
        finish_worker(pipes[0], b'')
        finish_worker(pipes[1], b'only\n')
        sink = RecordingSink()

        Recombiner([p.read_end for p in pipes], sink).run()

        assert sink.writes == [b'only\n']

    def test_no_channels_finishes_immediately(self) -> None:
        """With nothing to service the recombiner returns at once."""
        recombiner = Recombiner([], RecordingSink())

        recombiner.run()

        assert recombiner.active == []


class TestRecombinerReclamation:
    """Tests for reclaiming slots as workers finish."""

    def test_all_channels_closed_after_run(self, output_pipes) -> None:
        """Every channel is closed and no slot stays active."""
        pipes = output_pipes(3)
        for i, pipe in enumerate(pipes):
            finish_worker(pipe, f'w{i}\n'.encode())
        recombiner = Recombiner([p.read_end for p in pipes], RecordingSink())

        recombiner.run()

        assert recombiner.active == []
        assert all(p.read_end.closed for p in pipes)

    def test_early_finisher_does_not_stop_others(self, output_pipes) -> None:
        """One worker closing early leaves the rest serviced until they finish."""
        pipes = output_pipes(2)
        sink = RecordingSink()
        recombiner = Recombiner([p.read_end for p in pipes], sink)
        finish_worker(pipes[0], b'early\n')
        pipes[1].write_end.write_fully(b'late-1\n')

        runner = threading.Thread(target=recombiner.run)
        runner.start()
        for _ in range(500):
            if recombiner.active == [1]:
                break
            time.sleep(0.01)

        assert recombiner.active == [1]
        assert pipes[0].read_end.closed

        finish_worker(pipes[1], b'late-2\n')
        runner.join(timeout=10)

        assert not runner.is_alive()
        assert recombiner.active == []
        assert b''.join(sink.writes).count(b'\n') == 3

    def test_read_error_reclaims_slot(self, output_pipes) -> None:
        """A channel that cannot be read is treated as finished."""
        pipes = output_pipes(2)
        finish_worker(pipes[1], b'fine\n')
        sink = RecordingSink()
        # Hand the recombiner a write end: reading it fails.
        recombiner = Recombiner([pipes[0].write_end, pipes[1].read_end], sink)

        recombiner.run()

        assert recombiner.active == []
        assert sink.writes == [b'fine\n']


class TestRecombinerSinkFailure:
    """Tests for failures writing the combined output."""

    def test_sink_failure_raises_transport_error(self, output_pipes) -> None:
        """A failed write on the combined output is fatal."""
        pipes = output_pipes(2)
        finish_worker(pipes[0], b'a\n')
        finish_worker(pipes[1], b'b\n')
        recombiner = Recombiner([p.read_end for p in pipes], BrokenSink())

        with pytest.raises(TransportError, match='combined output'):
            recombiner.run()

        assert isinstance(recombiner.failure, BrokenPipeError)

    def test_channels_still_drained_after_sink_failure(self, output_pipes) -> None:
        """After a sink failure the remaining output is discarded, not left blocking."""
        pipes = output_pipes(2)
        finish_worker(pipes[0], b'a\n' * 10)
        finish_worker(pipes[1], b'b\n' * 10)
        sink = BrokenSink()
        recombiner = Recombiner([p.read_end for p in pipes], sink)

        with pytest.raises(TransportError):
            recombiner.run()

        assert recombiner.active == []
        assert all(p.read_end.closed for p in pipes)


class TestLineSink:
    """Tests for the shared output sink."""

    def test_writes_to_descriptor(self, make_pipe, drain) -> None:
        """LineSink writes whole spans to its descriptor."""
        pipe = make_pipe(ChannelRole.OUTPUT)
        sink = LineSink(pipe.write_end.fd)

        sink.write(b'one\n')
        sink.write(b'two\n')
        pipe.write_end.close()

        assert drain(pipe.read_end.fd) == b'one\ntwo\n'

    def test_concurrent_writes_never_interleave(self, make_pipe, drain) -> None:
        """Spans written from several threads arrive intact."""
        pipe = make_pipe(ChannelRole.OUTPUT)
        sink = LineSink(pipe.write_end.fd)
        collected: list[bytes] = []
        reader = threading.Thread(target=lambda: collected.append(drain(pipe.read_end.fd)))
        reader.start()

        def writer(tag: bytes) -> None:
            for _ in range(50):
                sink.write(tag * 1000 + b'\n')

        writers = [threading.Thread(target=writer, args=(tag,)) for tag in (b'a', b'b', b'c')]
        for thread in writers:
            thread.start()
        for thread in writers:
            thread.join(timeout=10)
        pipe.write_end.close()
        reader.join(timeout=10)

        for line in collected[0].splitlines():
            assert len(set(line)) == 1
            assert len(line) == 1000
