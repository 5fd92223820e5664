from .abc import AnyCallable, PathOrStr
from .types import BaseStruct

__all__ = (
    "AnyCallable",
    "BaseStruct",
    "PathOrStr",
)
