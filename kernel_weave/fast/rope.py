"""
Rotary position encoding.

The rotation is orthogonal, so the gradient of encoding is decoding with the
same parameters: `RoPE.vjp` is one more `rope` call on the cotangent with
``forward`` flipped.
"""

from __future__ import annotations

from typing import Any, List, Sequence

import jax
import jax.numpy as jnp

from kernel_weave._math import ops
from kernel_weave.core import jitted
from kernel_weave.core.array import as_input
from kernel_weave.core.meta import RopeMeta
from kernel_weave.core.policy import fused_eligible
from kernel_weave.core.primitive import Primitive, apply
from kernel_weave.core.target import TargetLike, to_target
from kernel_weave.errors import InvalidArgumentError


class RoPE(Primitive):
    __slots__ = ()

    def kernel(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        return [jitted.rope(self.meta, inputs[0])]

    def vjp(self, primals, cotangents, argnums, outputs):
        meta = self.meta.inverted()
        return [
            rope(
                cotangents[0],
                meta.dims,
                meta.traditional,
                meta.base,
                meta.scale,
                meta.offset,
                forward=meta.forward,
                target=self.target,
            )
        ]


def rope(
    x: Any,
    dims: int,
    traditional: bool,
    base: float,
    scale: float,
    offset: int,
    forward: bool = True,
    target: TargetLike = None,
) -> Any:
    """
    Apply rotary positional encoding to ``x``.

    Parameters
    ----------
    x: array-like
        Input of rank >= 3; the last two axes are (sequence, features)
    dims: int
        Number of leading features to rotate, even and at most the feature
        size; the rest pass through unchanged
    traditional: bool
        Rotate interleaved (even, odd) feature pairs instead of the two
        halves of the rotated features
    base: float
        Base of the angular frequencies
    scale: float
        Multiplier applied to the positions
    offset: int
        Position of the first element of the sequence
    forward: bool
        False applies the inverse rotation
    target: None | str | jax.Device | ExecutionTarget
        Execution target, the configured default when None
    """
    x = as_input(x)
    if x.ndim < 3:
        raise InvalidArgumentError(
            f"[rope] Input must have at least 3 dimensions but got input with "
            f"{x.ndim} dimensions."
        )
    features = x.shape[-1]
    if dims <= 0 or dims > features or dims % 2 != 0:
        raise InvalidArgumentError(
            f"[rope] dims must be a positive even number no larger than the "
            f"feature size {features}, got {dims}."
        )
    if not jnp.issubdtype(x.dtype, jnp.floating):
        raise InvalidArgumentError(f"[rope] Received unsupported type {x.dtype}.")

    tgt = to_target(target)
    meta = RopeMeta(
        dims=int(dims),
        traditional=bool(traditional),
        base=float(base),
        scale=float(scale),
        offset=int(offset),
        forward=bool(forward),
    )

    def fallback(inputs):
        return [
            ops.rope(
                inputs[0],
                dims=meta.dims,
                traditional=meta.traditional,
                base=meta.base,
                scale=meta.scale,
                offset=meta.offset,
                forward=meta.forward,
            )
        ]

    primitive = RoPE(tgt, fallback, meta)
    return apply(primitive, [x], [x.shape], [x.dtype], fused_eligible(tgt))[0]
