"""Shared fixtures for quickfork tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from quickfork.config import ChannelConfig, ForkConfig, PoolConfig, QuickforkConfig
from quickfork.pool import Quickfork


@pytest.fixture(autouse=True)
def _clear_cached_config() -> Iterator[None]:
    """Never leak a cached configuration between tests."""
    QuickforkConfig.clear()
    try:
        yield
    finally:
        QuickforkConfig.clear()


@pytest.fixture
def fork_config() -> ForkConfig:
    """Fork configuration with a short poll interval."""
    return ForkConfig(poll_interval=0.01, kill_grace_ms=200)


@pytest.fixture
def config(fork_config: ForkConfig) -> QuickforkConfig:
    """Application configuration tuned for fast test runs."""
    return QuickforkConfig(
        fork=fork_config,
        pool=PoolConfig(max_concurrent=2, poll_interval=0.01, worker_timeout=10.0),
        channel=ChannelConfig(),
    )


@pytest.fixture
def pool(config: QuickforkConfig) -> Quickfork:
    """Worker pool using the test configuration."""
    return Quickfork(config)
