"""Exit status aggregation for a paracat run.

Statuses are recorded as each process is reaped and folded into a single
ExitCode made of independent indicator bits.
"""

from __future__ import annotations

from enum import IntFlag
import logging
import signal


logger = logging.getLogger(__name__)


class ExitCode(IntFlag):
    """Indicator bits making up the process exit code.

    Attributes:
        SUCCESS: Everything finished cleanly.
        WORKER_FAILED: At least one worker exited non-zero or could not be reaped.
        RECOMBINER_FAILED: The recombiner could not write the combined output.
        DISTRIBUTOR_FAILED: Input could not be read, delivered, or closed.
        SPAWN_FAILED: The worker group could not be set up.
    """

    SUCCESS = 0
    WORKER_FAILED = 1
    RECOMBINER_FAILED = 2
    DISTRIBUTOR_FAILED = 4
    SPAWN_FAILED = 8


def describe_status(returncode: int) -> str:
    """Return a human-readable description of a process return code.

    Example:
        >>> describe_status(3)
        'exit status 3'
        >>> describe_status(-9)
        'signal SIGKILL'
    """
    if returncode < 0:
        try:
            return f'signal {signal.Signals(-returncode).name}'
        except ValueError:
            return f'signal {-returncode}'
    return f'exit status {returncode}'


class ExitAggregate:
    """Collects the outcome of every process in a run.

    Statuses are keyed by process identity: ``worker-<index>``,
    ``recombiner`` and ``distributor``. A ``None`` status means the process
    could not be waited for.

    Example:
        >>> aggregate = ExitAggregate()
        >>> aggregate.record_worker(0, pid=1234, returncode=0)
        >>> aggregate.record_worker(1, pid=1235, returncode=2)
        >>> aggregate.exit_code
        <ExitCode.WORKER_FAILED: 1>
    """

    def __init__(self) -> None:
        self._statuses: dict[str, int | None] = {}
        self._code = ExitCode.SUCCESS

    @property
    def statuses(self) -> dict[str, int | None]:
        """Return a copy of the recorded statuses."""
        return dict(self._statuses)

    @property
    def failures(self) -> list[str]:
        """Return the identities of processes that did not succeed."""
        return [identity for identity, status in self._statuses.items() if status != 0]

    @property
    def exit_code(self) -> ExitCode:
        """Return the combined exit code."""
        return self._code

    def record_worker(self, index: int, pid: int, returncode: int | None) -> None:
        """Record a reaped worker.

        Args:
            index: The worker's slot index.
            pid: The worker's process id.
            returncode: Its return code, or None if it could not be waited for.
        """
        self._statuses[f'worker-{index}'] = returncode
        if returncode is None:
            self._code |= ExitCode.WORKER_FAILED
        elif returncode != 0:
            logger.warning('Worker %d (pid %d) finished with %s', index, pid, describe_status(returncode))
            self._code |= ExitCode.WORKER_FAILED

    def record_recombiner(self, ok: bool) -> None:
        """Record whether the recombiner finished cleanly."""
        self._statuses['recombiner'] = 0 if ok else 1
        if not ok:
            self._code |= ExitCode.RECOMBINER_FAILED

    def record_distributor(self, ok: bool) -> None:
        """Record a distributor failure. Repeated failures stay failures."""
        if not ok or 'distributor' not in self._statuses:
            self._statuses['distributor'] = 0 if ok else 1
        if not ok:
            self._code |= ExitCode.DISTRIBUTOR_FAILED

    def record_spawn_failure(self) -> None:
        """Record that the worker group could not be set up."""
        self._code |= ExitCode.SPAWN_FAILED
