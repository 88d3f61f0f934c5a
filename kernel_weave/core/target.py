"""
Execution targets: which device a fused operator is bound to.

The target decides, at construction time, whether an operator builds a
fused node (GPU-class platforms) or evaluates its decomposition right away.
Targets are frozen and shared read-only between operators.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

import jax

from kernel_weave.errors import InvalidArgumentError
from kernel_weave.kernel_weave import Config

logger = logging.getLogger(__name__)

GPU_PLATFORMS = frozenset({"gpu", "cuda", "rocm", "metal"})


class DeviceKind(Enum):
    CPU = "cpu"
    GPU = "gpu"

    @classmethod
    def from_platform(cls, platform: str) -> "DeviceKind":
        return cls.GPU if platform.lower() in GPU_PLATFORMS else cls.CPU


@dataclass(frozen=True)
class ExecutionTarget:
    """
    A (platform, queue index) pair.

    Attributes
    ----------
    platform : str
        JAX platform name, e.g. ``"cpu"``, ``"gpu"``, ``"cuda"``.
    index : int
        Device index on that platform; doubles as the queue identifier.
    """

    platform: str
    index: int = 0

    @property
    def kind(self) -> DeviceKind:
        return DeviceKind.from_platform(self.platform)

    @property
    def is_gpu(self) -> bool:
        return self.kind is DeviceKind.GPU

    def device(self) -> Optional[jax.Device]:
        """
        Returns the matching ``jax.Device``, or None when this host has no
        such platform (nodes then evaluate on the default device).
        """
        try:
            devices = jax.devices(self.platform)
        except RuntimeError:
            logger.debug("Platform %s not available on this host", self.platform)
            return None
        if self.index >= len(devices):
            logger.debug(
                "Device %s:%d not available, %d device(s) present",
                self.platform,
                self.index,
                len(devices),
            )
            return None
        return devices[self.index]

    def __str__(self) -> str:
        return f"{self.platform}:{self.index}"


TargetLike = Union[None, str, ExecutionTarget, Any]


def _parse_platform(spec: str) -> ExecutionTarget:
    platform, sep, index = spec.partition(":")
    if not platform:
        raise InvalidArgumentError(f"[target] Empty platform in target {spec!r}.")
    if not sep:
        return ExecutionTarget(platform.lower())
    try:
        idx = int(index)
    except ValueError as e:
        raise InvalidArgumentError(
            f"[target] Invalid device index in target {spec!r}."
        ) from e
    if idx < 0:
        raise InvalidArgumentError(
            f"[target] Device index must be non-negative, got {spec!r}."
        )
    return ExecutionTarget(platform.lower(), idx)


def default_target() -> ExecutionTarget:
    configured = Config().default_target
    if configured is not None:
        return _parse_platform(configured)
    return ExecutionTarget(jax.default_backend().lower())


def to_target(target: TargetLike = None) -> ExecutionTarget:
    """
    Normalize anything target-like into an ExecutionTarget.

    Parameters
    ----------
    target : None | str | jax.Device | ExecutionTarget
        None selects the configured default target.

    Returns
    -------
    ExecutionTarget

    Raises
    ------
    InvalidArgumentError
        If the value cannot be interpreted as a target.
    """
    if target is None:
        return default_target()
    if isinstance(target, ExecutionTarget):
        return target
    if isinstance(target, str):
        return _parse_platform(target)
    if isinstance(target, jax.Device):
        return ExecutionTarget(target.platform.lower(), target.id)
    raise InvalidArgumentError(
        f"[target] Cannot use object of type {type(target).__name__} as an "
        "execution target."
    )
