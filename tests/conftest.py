"""Shared pytest configuration and fixtures for paracat tests."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from paracat.channel import ChannelRole, Pipe, open_pipe


if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


# Register markers for test categories
def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    config.addinivalue_line('markers', 'small: Fast, isolated unit tests (< 100ms)')
    config.addinivalue_line('markers', 'medium: Integration tests with real worker processes (< 10s)')
    config.addinivalue_line('markers', 'large: End-to-end system tests (< 60s)')


# Auto-mark tests based on directory
def pytest_collection_modifyitems(
    config: pytest.Config,  # noqa: ARG001
    items: list[pytest.Item],
) -> None:
    """Automatically apply markers based on test directory."""
    for item in items:
        item_path = Path(str(item.fspath))
        path_parts = item_path.parts

        if 'small' in path_parts:
            item.add_marker(pytest.mark.small)
        elif 'medium' in path_parts:
            item.add_marker(pytest.mark.medium)
        elif 'large' in path_parts:
            item.add_marker(pytest.mark.large)


@pytest.fixture
def make_pipe() -> Iterator[Callable[..., Pipe]]:
    """Create labelled pipes that are closed again at teardown."""
    created: list[Pipe] = []

    def factory(role: ChannelRole = ChannelRole.INPUT, reader: str = 'reader', writer: str = 'writer') -> Pipe:
        pipe = open_pipe(role, reader=reader, writer=writer)
        created.append(pipe)
        return pipe

    yield factory

    for pipe in created:
        pipe.close()


def read_all(fd: int) -> bytes:
    """Read ``fd`` until end-of-stream."""
    chunks = []
    while chunk := os.read(fd, 65536):
        chunks.append(chunk)
    return b''.join(chunks)


@pytest.fixture
def drain() -> Callable[[int], bytes]:
    """Return a helper that reads a descriptor until end-of-stream."""
    return read_all
