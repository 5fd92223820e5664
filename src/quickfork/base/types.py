from typing import Any

from msgspec import Struct, to_builtins

__all__ = ("BaseStruct",)


class BaseStruct(Struct):
    """Base class for structured configuration models."""

    def to_dict(
        self,
        include: set[str] | None = None,
        exclude: set[str] | None = None,
        exclude_none: bool = False,
    ) -> dict[str, Any]:
        """Convert the struct to a dictionary."""

        if include and exclude:
            raise ValueError("Cannot specify both include and exclude")

        ret = to_builtins(self)

        attr_names = set(ret)

        if include:
            attr_names = include & attr_names

        if exclude:
            attr_names -= exclude

        if exclude_none:
            attr_names -= {name for name in attr_names if getattr(self, name, None) is None}

        return {name: ret[name] for name in attr_names if name in ret}
