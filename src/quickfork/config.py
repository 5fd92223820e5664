from pathlib import Path
from typing import ClassVar, Final, Self

from msgspec import field, toml, yaml

from .base import BaseStruct, PathOrStr
from .toolkit import get_env

__all__ = (
    "APP_NAME",
    "BackoffConfig",
    "ChannelConfig",
    "ForkConfig",
    "LogConfig",
    "PoolConfig",
    "QuickforkConfig",
)

APP_NAME: Final[str] = "quickfork"

ROOT_DIR: Final[Path] = Path.cwd()


class ForkConfig(BaseStruct):
    """Configuration for a single forked process."""

    poll_interval: float = field(default_factory=get_env("QUICKFORK_FORK_POLL_INTERVAL", 0.1))
    """Seconds between two exit-status checks while waiting for a child."""
    kill_grace_ms: int = field(default_factory=get_env("QUICKFORK_KILL_GRACE_MS", 200))
    """Milliseconds between SIGTERM and SIGKILL. Never lower than 200."""


class PoolConfig(BaseStruct):
    """Configuration for the worker pool."""

    max_concurrent: int = field(default_factory=get_env("QUICKFORK_MAX_CONCURRENT", 4))
    """Number of worker processes when the caller does not give one."""
    poll_interval: float = field(default_factory=get_env("QUICKFORK_POLL_INTERVAL", 0.1))
    """Seconds the dispatch loop and worker loop wait for channel activity."""
    worker_timeout: float = field(default_factory=get_env("QUICKFORK_WORKER_TIMEOUT", 60.0))
    """Seconds each worker gets to exit after `shutdown` before it is killed."""


class ChannelConfig(BaseStruct):
    """Configuration for the message channel."""

    read_chunk_size: int = field(default=65536)
    """Bytes requested from the socket per read."""
    compression_level: int = field(default=6)
    """zlib compression level for encoded frames."""


class BackoffConfig(BaseStruct):
    """Configuration for `ExponentialBackoff`."""

    factor: float = field(default=1.05)
    min_sleep_ms: int = field(default=10)
    max_sleep_ms: int = field(default=5000)
    max_attempts: int | None = field(default=None)


class LogConfig(BaseStruct):
    """Logging configuration."""

    level: str = field(default_factory=get_env("QUICKFORK_LOG_LEVEL", "INFO"))
    json: bool = field(default_factory=get_env("QUICKFORK_LOG_JSON", False))


class QuickforkConfig(BaseStruct):
    """Application configurations."""

    _instance: ClassVar["QuickforkConfig | None"] = None

    fork: ForkConfig = field(default_factory=ForkConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_file(cls, filename: PathOrStr | None = None) -> Self:
        """Load the configuration from a file.

        Args:
            filename (`str`): The name of the configuration file, like "quickfork.yaml".

        Note:
            Configuration filename suffix determines the format:
            - `.yaml` / `.yml`: YAML format
            - `.toml`: TOML format

            A missing file yields the default configuration.
        """

        if filename is None:
            filename = "quickfork.yaml"

        if (config_file := ROOT_DIR / filename).exists():
            with config_file.open("r", encoding="utf-8") as f:
                configuration = f.read()

            match suffix := Path(filename).suffix:
                case ".yaml" | ".yml":
                    return yaml.decode(configuration, type=cls)
                case ".toml":
                    return toml.decode(configuration, type=cls)
                case _:
                    raise ValueError(f"Unsupported configuration file format: {suffix}")

        return cls()

    @classmethod
    def get_config(cls, filename: PathOrStr | None = None) -> "QuickforkConfig":
        """Get the application configuration."""

        if cls._instance is None:
            cls._instance = cls.from_file(filename)

        return cls._instance

    @classmethod
    def clear(cls) -> None:
        """Drop the cached configuration."""

        cls._instance = None
