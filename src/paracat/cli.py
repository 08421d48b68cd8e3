"""Command-line entry point for paracat.

Usage:
    paracat [options] NUMPROCS -- COMMAND [ARG ...]

Exit Codes:
    0: All workers and the recombiner finished cleanly
    1, 2, 4, 8 (combined bitwise): see ExitCode
    64: Usage error
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys
from typing import TYPE_CHECKING, NoReturn

from paracat import __version__
from paracat.config import load_config, merge_configs
from paracat.runner import run


if TYPE_CHECKING:
    from collections.abc import Sequence


USAGE = 'paracat [options] NUMPROCS -- COMMAND [ARG ...]'
USAGE_ERROR = 64
SEPARATOR = '--'


class UsageError(Exception):
    """Raised when the command line cannot be understood."""


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    """Build the parser for the options before the ``--`` separator."""
    parser = _ArgumentParser(
        prog='paracat',
        usage=USAGE,
        description='Split stdin by lines across NUMPROCS copies of COMMAND.',
    )
    parser.add_argument('numprocs', metavar='NUMPROCS', help='Number of worker processes to spawn')
    parser.add_argument(
        '--recombine',
        action=argparse.BooleanOptionalAction,
        default=None,
        help='Merge worker outputs into stdout line by line (default: on)',
    )
    parser.add_argument(
        '--shell',
        action=argparse.BooleanOptionalAction,
        default=None,
        help='Run COMMAND through /bin/sh -c (default: off)',
    )
    parser.add_argument(
        '--buffer-size',
        type=int,
        default=None,
        help='Read buffer size in bytes (default: 4096)',
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Log lifecycle details to stderr')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def split_command(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Split ``argv`` at the first ``--`` into options and command.

    Raises:
        UsageError: If there is no separator or no command after it.

    Example:
        >>> split_command(['2', '--', 'grep', '-v', '--', 'x'])
        (['2'], ['grep', '-v', '--', 'x'])
    """
    if SEPARATOR not in argv:
        msg = f'missing {SEPARATOR!r} before the command'
        raise UsageError(msg)
    pos = list(argv).index(SEPARATOR)
    options, command = list(argv[:pos]), list(argv[pos + 1 :])
    if not command:
        msg = f'no command given after {SEPARATOR!r}'
        raise UsageError(msg)
    return options, command


def parse_numprocs(value: str) -> int:
    """Parse the worker count.

    Raises:
        UsageError: If the value is not an integer of at least 1.
    """
    try:
        count = int(value, 10)
    except ValueError:
        msg = f'could not parse spawn count: {value!r}'
        raise UsageError(msg) from None
    if count < 1:
        msg = 'spawn count must be 1 or greater'
        raise UsageError(msg)
    return count


def configure_logging(verbose: bool) -> None:
    """Send log records to stderr, prefixed with the program name."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='paracat: %(levelname)s: %(message)s',
        stream=sys.stderr,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run paracat with ``argv`` (defaults to ``sys.argv[1:]``).

    Returns:
        The process exit code.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    try:
        if SEPARATOR not in argv:
            # Still honour --help and --version without a command.
            parser.parse_args(argv)
        options, command = split_command(argv)
        args = parser.parse_args(options)
        workers = parse_numprocs(args.numprocs)
        config = merge_configs(
            load_config(Path.cwd()),
            workers=workers,
            command=command,
            cli_recombine=args.recombine,
            cli_shell=args.shell,
            cli_buffer_size=args.buffer_size,
        )
    except (UsageError, ValueError) as exc:
        sys.stderr.write(f'Error: {exc}\nUsage: {USAGE}\n')
        return USAGE_ERROR

    configure_logging(args.verbose)
    return int(run(config, stdin_fd=sys.stdin.fileno(), stdout_fd=sys.stdout.fileno()))
