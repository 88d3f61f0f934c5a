"""Top-level kernel_weave helpers."""

from kernel_weave import _math, core, fast
from kernel_weave.core.array import FusedArray
from kernel_weave.core.target import ExecutionTarget, to_target
from kernel_weave.errors import InvalidArgumentError, UnsupportedOperationError
from kernel_weave.kernel_weave import Config, Session

__all__ = [
    "Config",
    "ExecutionTarget",
    "FusedArray",
    "InvalidArgumentError",
    "Session",
    "UnsupportedOperationError",
    "_math",
    "core",
    "fast",
    "to_target",
]
