"""Configuration for a paracat run.

RunConfig is the explicit set of values handed to the process group. Optional
defaults can be set in the [tool.paracat] section of a pyproject.toml; values
given on the command line take precedence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import shlex
import tomllib
from typing import TYPE_CHECKING

from paracat.fragment import DEFAULT_BUFFER_SIZE


if TYPE_CHECKING:
    from pathlib import Path


SHELL = '/bin/sh'


@dataclass(frozen=True, eq=True)
class RunConfig:
    """Settings for one run.

    Attributes:
        workers: Number of worker processes to spawn.
        command: The command and arguments each worker runs.
        recombine: Whether worker outputs are merged back into stdout. When
            off, each worker writes to the run's stdout directly.
        use_shell: Whether to run the command through ``/bin/sh -c``.
        buffer_size: Read buffer size in bytes, per stream.

    Example:
        >>> config = RunConfig(workers=2, command=('cat',))
        >>> config.worker_argv
        ['cat']
        >>> RunConfig(workers=1, command=('echo', 'a b'), use_shell=True).worker_argv
        ['/bin/sh', '-c', "echo 'a b'"]
    """

    workers: int
    command: tuple[str, ...] = field(default_factory=tuple)
    recombine: bool = True
    use_shell: bool = False
    buffer_size: int = DEFAULT_BUFFER_SIZE

    def __post_init__(self) -> None:
        """Validate configuration values.

        Raises:
            ValueError: If any configuration value is invalid.
        """
        if self.workers < 1:
            msg = f'spawn count must be 1 or greater, got {self.workers}'
            raise ValueError(msg)

        if not self.command:
            msg = 'a command to run is required'
            raise ValueError(msg)

        for name in ('recombine', 'use_shell'):
            value = getattr(self, name)
            if not isinstance(value, bool):
                msg = f'{name} must be true or false, got {value!r}'
                raise ValueError(msg)

        if isinstance(self.buffer_size, bool) or not isinstance(self.buffer_size, int):
            msg = f'buffer_size must be an integer, got {self.buffer_size!r}'
            raise ValueError(msg)

        if self.buffer_size <= 0:
            msg = f'buffer_size must be positive, got {self.buffer_size}'
            raise ValueError(msg)

    @property
    def worker_argv(self) -> list[str]:
        """Return the argument vector each worker is started with."""
        if self.use_shell:
            return [SHELL, '-c', shlex.join(self.command)]
        return list(self.command)


@dataclass
class FileConfig:
    """Defaults read from pyproject.toml.

    All fields default to None, meaning the built-in default applies.

    Attributes:
        recombine: Whether to merge worker outputs.
        shell: Whether to run workers through the shell.
        buffer_size: Read buffer size in bytes.
    """

    recombine: bool | None = None
    shell: bool | None = None
    buffer_size: int | None = None


def load_config(rootdir: Path) -> FileConfig:
    """Load defaults from the [tool.paracat] section of pyproject.toml.

    Args:
        rootdir: Directory containing pyproject.toml.

    Returns:
        FileConfig with values from pyproject.toml, or an empty one if the file
        or section does not exist.
    """
    pyproject_path = rootdir / 'pyproject.toml'

    if not pyproject_path.exists():
        return FileConfig()

    with pyproject_path.open('rb') as f:
        data = tomllib.load(f)

    tool_config = data.get('tool', {}).get('paracat', {})

    return FileConfig(
        recombine=tool_config.get('recombine'),
        shell=tool_config.get('shell'),
        buffer_size=tool_config.get('buffer_size'),
    )


def merge_configs(
    file_config: FileConfig,
    workers: int,
    command: list[str],
    cli_recombine: bool | None = None,
    cli_shell: bool | None = None,
    cli_buffer_size: int | None = None,
) -> RunConfig:
    """Build a RunConfig, letting CLI values override file defaults.

    Args:
        file_config: Defaults loaded from pyproject.toml.
        workers: Number of workers from the command line.
        command: Command vector from the command line.
        cli_recombine: --recombine/--no-recombine, or None if not given.
        cli_shell: --shell/--no-shell, or None if not given.
        cli_buffer_size: --buffer-size, or None if not given.

    Returns:
        The validated RunConfig.

    Raises:
        ValueError: If the merged values are invalid.
    """
    recombine = cli_recombine if cli_recombine is not None else file_config.recombine
    use_shell = cli_shell if cli_shell is not None else file_config.shell
    buffer_size = cli_buffer_size if cli_buffer_size is not None else file_config.buffer_size

    return RunConfig(
        workers=workers,
        command=tuple(command),
        recombine=True if recombine is None else recombine,
        use_shell=False if use_shell is None else use_shell,
        buffer_size=DEFAULT_BUFFER_SIZE if buffer_size is None else buffer_size,
    )
