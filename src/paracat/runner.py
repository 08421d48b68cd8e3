"""Top-level driver tying the process group, distributor and recombiner together."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from paracat.aggregate import ExitAggregate, ExitCode
from paracat.distributor import Distributor
from paracat.errors import SpawnError, TransportError
from paracat.group import ProcessGroup


if TYPE_CHECKING:
    from paracat.config import RunConfig


logger = logging.getLogger(__name__)


def run(config: RunConfig, stdin_fd: int = 0, stdout_fd: int = 1) -> ExitCode:
    """Run ``config.workers`` copies of the command over ``stdin_fd``.

    Input is distributed until end-of-stream, every worker's input is then
    closed, and all processes are reaped.

    Args:
        config: Settings for the run.
        stdin_fd: Source of the input lines.
        stdout_fd: Destination of the combined output (or of each worker's
            output when not recombining).

    Returns:
        The aggregated exit code.
    """
    aggregate = ExitAggregate()

    with ProcessGroup(config, output_fd=stdout_fd) as group:
        try:
            channels = group.spawn()
        except SpawnError as exc:
            logger.error('Could not spawn workers: %s', exc)
            aggregate.record_spawn_failure()
            return aggregate.exit_code

        distributor = Distributor(channels, config.buffer_size)
        try:
            distributor.run(stdin_fd)
        except TransportError as exc:
            logger.error('%s', exc)
            aggregate.record_distributor(ok=False)
        else:
            aggregate.record_distributor(ok=True)

        group.close_inputs(aggregate)
        group.reap(aggregate)

    if aggregate.failures:
        logger.debug('Run finished with failures in %s', ', '.join(aggregate.failures))
    return aggregate.exit_code
