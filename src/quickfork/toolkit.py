import os
from collections.abc import Callable
from typing import Any, TypeVar

__all__ = ("get_env", "str_to_bool")

T = TypeVar("T")

_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "y", "t"})


def str_to_bool(value: str) -> bool:
    """Interpret an environment string as a boolean."""

    return value.strip().lower() in _TRUE_VALUES


def get_env(key: str, default: T) -> Callable[[], T]:
    """Build a default factory reading ``key`` from the environment.

    The raw string is cast to the type of ``default``. A ``None`` default
    returns the raw string when the variable is set.

    Args:
        key: Environment variable name.
        default: Value used when the variable is unset or empty.

    Example:
        >>> poll_interval: float = field(default_factory=get_env("QUICKFORK_POLL_INTERVAL", 0.1))
    """

    def _factory() -> T:
        raw = os.getenv(key)

        if raw is None or raw == "":
            return default

        caster: Any
        match default:
            case bool():
                caster = str_to_bool
            case int() | float():
                caster = type(default)
            case None:
                return raw  # type: ignore[return-value]
            case _:
                caster = type(default)

        return caster(raw)

    return _factory
