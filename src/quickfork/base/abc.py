from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeAlias

AnyCallable: TypeAlias = Callable[..., Any]

PathOrStr: TypeAlias = Path | str
