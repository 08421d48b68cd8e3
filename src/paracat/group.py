"""Process group management: pipes, workers and the recombiner task.

The ProcessGroup creates one input pipe per worker (and one output pipe when
recombining), starts the workers, hands each pipe end to its single owner and
later reaps everything into an ExitAggregate.

Ownership after spawn():

- the distributor (caller) holds every input write end;
- worker ``i`` holds its input read end as stdin and, when recombining, its
  output write end as stdout;
- the recombiner task holds every output read end.

The parent closes the ends it gave away right after each worker starts.
Workers are started with ``close_fds=True`` and all pipes are
non-inheritable, so no worker holds a copy of another worker's pipe.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import logging
import subprocess
from typing import TYPE_CHECKING, Self

from paracat.aggregate import ExitAggregate
from paracat.channel import Channel, ChannelRole, Pipe, open_pipe
from paracat.errors import SpawnError
from paracat.recombiner import LineSink, Recombiner


if TYPE_CHECKING:
    from paracat.config import RunConfig


logger = logging.getLogger(__name__)

DISTRIBUTOR = 'distributor'
RECOMBINER = 'recombiner'


def worker_label(index: int) -> str:
    """Return the owner label of worker slot ``index``."""
    return f'worker-{index}'


@dataclass
class WorkerSlot:
    """A spawned worker and the channels bound to it.

    Attributes:
        index: Slot number, 0 to N-1.
        process: Handle of the worker process.
        input_channel: Write end of the worker's stdin pipe.
        output_channel: Read end of the worker's stdout pipe, when recombining.
    """

    index: int
    process: subprocess.Popen[bytes]
    input_channel: Channel
    output_channel: Channel | None = None

    @property
    def pid(self) -> int:
        """Return the worker's process id."""
        return self.process.pid


class ProcessGroup:
    """Spawns and reaps the workers of one run.

    Example:
        >>> config = RunConfig(workers=4, command=('cat',))  # doctest: +SKIP
        >>> with ProcessGroup(config) as group:  # doctest: +SKIP
        ...     channels = group.spawn()
        ...     Distributor(channels).run(0)
        ...     group.close_inputs(aggregate)
        ...     group.reap(aggregate)
    """

    def __init__(self, config: RunConfig, output_fd: int = 1) -> None:
        """Initialize the process group.

        Args:
            config: Settings for the run.
            output_fd: Where output goes: the recombiner's sink, or each
                worker's stdout when not recombining.
        """
        self._config = config
        self._output_fd = output_fd
        self._slots: list[WorkerSlot] = []
        self._executor: ThreadPoolExecutor | None = None
        self._recombiner: Future[None] | None = None
        self._inputs_closed = False
        self._reaped = False

    @property
    def config(self) -> RunConfig:
        """Return the run configuration."""
        return self._config

    @property
    def slots(self) -> list[WorkerSlot]:
        """Return the spawned worker slots."""
        return list(self._slots)

    @property
    def workers(self) -> list[subprocess.Popen[bytes]]:
        """Return the worker process handles, in slot order."""
        return [slot.process for slot in self._slots]

    @property
    def input_channels(self) -> list[Channel]:
        """Return the input write ends, in slot order."""
        return [slot.input_channel for slot in self._slots]

    @property
    def recombiner(self) -> Future[None] | None:
        """Return the recombiner task's future, if recombining."""
        return self._recombiner

    def spawn(self) -> list[Channel]:
        """Start every worker and, if enabled, the recombiner.

        Returns:
            The input channel of each worker, in slot order.

        Raises:
            SpawnError: If any pipe, process or close operation fails. Every
                channel opened so far is closed and started workers are
                reaped before this is raised.
            RuntimeError: If called twice.
        """
        if self._slots:
            msg = 'ProcessGroup has already been spawned'
            raise RuntimeError(msg)

        argv = self._config.worker_argv
        try:
            for index in range(self._config.workers):
                self._slots.append(self._spawn_worker(index, argv))
        except SpawnError:
            self._abort()
            raise

        if self._config.recombine:
            outputs = [slot.output_channel for slot in self._slots if slot.output_channel is not None]
            recombiner = Recombiner(outputs, LineSink(self._output_fd), self._config.buffer_size)
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=RECOMBINER)
            self._recombiner = self._executor.submit(recombiner.run)

        logger.debug('Spawned %d workers running %s', len(self._slots), argv)
        return self.input_channels

    def _spawn_worker(self, index: int, argv: list[str]) -> WorkerSlot:
        label = worker_label(index)
        pipes: list[Pipe] = []
        try:
            input_pipe = open_pipe(ChannelRole.INPUT, reader=label, writer=DISTRIBUTOR)
            pipes.append(input_pipe)
            output_pipe = None
            if self._config.recombine:
                output_pipe = open_pipe(ChannelRole.OUTPUT, reader=RECOMBINER, writer=label)
                pipes.append(output_pipe)
        except OSError as exc:
            for pipe in pipes:
                pipe.close()
            msg = f'could not create communication pipe for worker {index}: {exc.strerror or exc}'
            raise SpawnError(msg) from exc

        stdout = output_pipe.write_end.fd if output_pipe is not None else self._output_fd
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=input_pipe.read_end.fd,
                stdout=stdout,
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            for pipe in pipes:
                pipe.close()
            msg = f'could not start worker {index} ({argv[0]}): {exc}'
            raise SpawnError(msg) from exc

        slot = WorkerSlot(
            index=index,
            process=process,
            input_channel=input_pipe.write_end,
            output_channel=output_pipe.read_end if output_pipe is not None else None,
        )
        try:
            input_pipe.read_end.close()
            if output_pipe is not None:
                output_pipe.write_end.close()
        except OSError as exc:
            self._slots.append(slot)
            msg = f'could not close pipe ends handed to worker {index}: {exc.strerror or exc}'
            raise SpawnError(msg) from exc

        logger.debug('Started worker %d with pid %d', index, process.pid)
        return slot

    def _abort(self) -> None:
        """Tear down a partially spawned group."""
        for slot in self._slots:
            for channel in (slot.input_channel, slot.output_channel):
                if channel is None:
                    continue
                try:
                    channel.close()
                except OSError as exc:
                    logger.warning('Could not close %s channel fd %d: %s', channel.role.value, channel.fd, exc)
        for slot in self._slots:
            try:
                slot.process.wait()
            except OSError as exc:
                logger.warning('Could not wait for worker %d (pid %d): %s', slot.index, slot.pid, exc)
        self._inputs_closed = True
        self._reaped = True

    def close_inputs(self, aggregate: ExitAggregate) -> None:
        """Close every input channel, signalling end-of-stream to the workers.

        Each channel is closed exactly once. A failed close is logged and
        recorded as a distributor failure; the remaining channels are still
        closed.

        Args:
            aggregate: Where close failures are recorded.
        """
        if self._inputs_closed:
            return
        self._inputs_closed = True
        for slot in self._slots:
            try:
                slot.input_channel.close()
            except OSError as exc:
                logger.warning('Could not close input of worker %d (fd %d): %s', slot.index, slot.input_channel.fd, exc)
                aggregate.record_distributor(ok=False)

    def reap(self, aggregate: ExitAggregate) -> None:
        """Wait for every worker, then for the recombiner.

        Wait failures and non-zero statuses are logged and recorded in the
        aggregate; reaping always continues with the next process.

        Args:
            aggregate: Where statuses are recorded.
        """
        if self._reaped:
            return
        self._reaped = True

        for slot in self._slots:
            try:
                returncode: int | None = slot.process.wait()
            except OSError as exc:
                logger.warning('Could not wait for worker %d (pid %d): %s', slot.index, slot.pid, exc)
                returncode = None
            aggregate.record_worker(slot.index, slot.pid, returncode)

        if self._recombiner is not None:
            try:
                self._recombiner.result()
            except Exception as exc:  # noqa: BLE001
                logger.warning('Recombiner failed: %s', exc)
                aggregate.record_recombiner(ok=False)
            else:
                aggregate.record_recombiner(ok=True)

        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> Self:
        """Enter the context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit the context manager, closing inputs and reaping if still pending."""
        leftover = ExitAggregate()
        self.close_inputs(leftover)
        self.reap(leftover)
