"""
RMSNorm and LayerNorm with analytic gradient primitives.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence

import jax
import jax.numpy as jnp
import numpy as np

from kernel_weave._math import ops
from kernel_weave.core import jitted
from kernel_weave.core.array import as_dtype, as_input
from kernel_weave.core.meta import NormMeta
from kernel_weave.core.policy import fused_eligible
from kernel_weave.core.primitive import Fallback, Primitive, apply
from kernel_weave.core.target import ExecutionTarget, TargetLike, to_target
from kernel_weave.errors import InvalidArgumentError


class RMSNorm(Primitive):
    __slots__ = ("_out_dtype",)

    def __init__(
        self,
        target: ExecutionTarget,
        fallback: Fallback,
        eps: float,
        out_dtype: Any,
    ) -> None:
        super().__init__(target, fallback, NormMeta(float(eps)))
        self._out_dtype = np.dtype(out_dtype)

    def kernel(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        x, weight = inputs
        return [jitted.rms_norm(self.meta, x, weight, self._out_dtype)]

    def vjp(self, primals, cotangents, argnums, outputs):
        x, weight = primals
        vjps = _rms_norm_vjp(self.target, self.meta, x, weight, cotangents[0])
        return [vjps[i] for i in sorted(argnums)]


class RMSNormVJP(Primitive):
    __slots__ = ()

    def kernel(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        return list(jitted.rms_norm_vjp(self.meta, *inputs))


def _rms_norm_vjp(
    target: ExecutionTarget,
    meta: NormMeta,
    x: Any,
    weight: Any,
    cotangent: Any,
) -> List[Any]:
    def fallback(inputs):
        return list(ops.rms_norm_vjp(*inputs, eps=meta.eps))

    primitive = RMSNormVJP(target, fallback, meta)
    return apply(
        primitive,
        [x, weight, cotangent],
        [x.shape, weight.shape],
        [x.dtype, weight.dtype],
        fused_eligible(target),
    )


def rms_norm(
    x: Any,
    weight: Any,
    eps: float,
    target: TargetLike = None,
) -> Any:
    """
    Root mean square normalization over the last axis of ``x``.

    Parameters
    ----------
    x: array-like
        Input with at least one dimension
    weight: array-like
        Rank-1 multiplicative weight sized like the last axis of ``x``
    eps: float
        Added to the mean square for numerical stability
    target: None | str | jax.Device | ExecutionTarget
        Execution target, the configured default when None

    Returns
    -------
    FusedArray | jax.Array
        A fused node on GPU-class targets, otherwise the evaluated result

    Raises
    ------
    InvalidArgumentError
        On a rank-0 input, a weight that is not rank 1 or does not match the
        last axis, or a non-floating result type
    """
    x = as_input(x)
    weight = as_input(weight)
    if x.ndim == 0:
        raise InvalidArgumentError(
            "[rms_norm] Input must have at least 1 dimension but got input "
            "with 0 dimensions."
        )
    if weight.ndim != 1:
        raise InvalidArgumentError(
            f"[rms_norm] weight must have 1 dimension but has {weight.ndim} "
            "dimensions."
        )
    if weight.shape[0] != x.shape[-1]:
        raise InvalidArgumentError(
            f"[rms_norm] weight of shape {weight.shape} does not match the last "
            f"axis of input with shape {x.shape}."
        )
    out_dtype = jnp.result_type(x.dtype, weight.dtype)
    if not jnp.issubdtype(out_dtype, jnp.floating):
        raise InvalidArgumentError(f"[rms_norm] Received unsupported type {out_dtype}.")

    tgt = to_target(target)
    meta = NormMeta(float(eps))

    def fallback(inputs):
        return [ops.rms_norm(inputs[0], inputs[1], eps=meta.eps, out_dtype=out_dtype)]

    primitive = RMSNorm(tgt, fallback, meta.eps, out_dtype)
    return apply(
        primitive, [x, weight], [x.shape], [out_dtype], fused_eligible(tgt)
    )[0]


class LayerNorm(Primitive):
    __slots__ = ("_out_dtype", "_has_weight", "_has_bias")

    def __init__(
        self,
        target: ExecutionTarget,
        fallback: Fallback,
        eps: float,
        out_dtype: Any,
        has_weight: bool = True,
        has_bias: bool = True,
    ) -> None:
        super().__init__(target, fallback, NormMeta(float(eps)))
        self._out_dtype = np.dtype(out_dtype)
        self._has_weight = has_weight
        self._has_bias = has_bias

    def kernel(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        x, weight, bias = inputs
        return [
            jitted.layer_norm(
                self.meta,
                x,
                weight,
                bias,
                self._out_dtype,
                self._has_weight,
                self._has_bias,
            )
        ]

    def vjp(self, primals, cotangents, argnums, outputs):
        x, weight, bias = primals
        vjps = _layer_norm_vjp(self.target, self.meta, x, weight, bias, cotangents[0])
        return [vjps[i] for i in sorted(argnums)]


class LayerNormVJP(Primitive):
    __slots__ = ()

    def kernel(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        return list(jitted.layer_norm_vjp(self.meta, *inputs))


def _layer_norm_vjp(
    target: ExecutionTarget,
    meta: NormMeta,
    x: Any,
    weight: Any,
    bias: Any,
    cotangent: Any,
) -> List[Any]:
    def fallback(inputs):
        return list(ops.layer_norm_vjp(*inputs, eps=meta.eps))

    primitive = LayerNormVJP(target, fallback, meta)
    return apply(
        primitive,
        [x, weight, bias, cotangent],
        [x.shape, weight.shape, bias.shape],
        [x.dtype, weight.dtype, bias.dtype],
        fused_eligible(target),
    )


def layer_norm(
    x: Any,
    weight: Optional[Any] = None,
    bias: Optional[Any] = None,
    eps: float = 1e-5,
    target: TargetLike = None,
) -> Any:
    """
    Layer normalization over the last axis of ``x``.

    ``weight`` and ``bias`` are optional rank-1 arrays sized like the last
    axis; when unset, scalar 1 and 0 of the output type stand in for them.
    """
    x = as_input(x)
    weight = as_input(weight) if weight is not None else None
    bias = as_input(bias) if bias is not None else None
    if x.ndim == 0:
        raise InvalidArgumentError(
            "[layer_norm] Input must have at least 1 dimension but got input "
            "with 0 dimensions."
        )
    for label, param in (("weight", weight), ("bias", bias)):
        if param is None:
            continue
        if param.ndim != 1:
            raise InvalidArgumentError(
                f"[layer_norm] {label} must have 1 dimension but has "
                f"{param.ndim} dimensions."
            )
        if param.shape[0] != x.shape[-1]:
            raise InvalidArgumentError(
                f"[layer_norm] {label} of shape {param.shape} does not match the "
                f"last axis of input with shape {x.shape}."
            )

    if weight is None:
        out_dtype = np.dtype(x.dtype)
    elif bias is None:
        out_dtype = jnp.result_type(x.dtype, weight.dtype)
    else:
        out_dtype = jnp.result_type(x.dtype, weight.dtype, bias.dtype)
    if not jnp.issubdtype(out_dtype, jnp.floating):
        raise InvalidArgumentError(
            f"[layer_norm] Received unsupported type {out_dtype}."
        )

    tgt = to_target(target)
    meta = NormMeta(float(eps))
    has_weight = weight is not None
    has_bias = bias is not None

    def fallback(inputs):
        return [
            ops.layer_norm(
                inputs[0],
                inputs[1],
                inputs[2],
                eps=meta.eps,
                out_dtype=out_dtype,
                has_weight=has_weight,
                has_bias=has_bias,
            )
        ]

    passed_weight = jnp.asarray(1, out_dtype)
    if has_weight:
        passed_weight = as_dtype(weight, out_dtype)
    passed_bias = jnp.asarray(0, out_dtype)
    if has_bias:
        passed_bias = as_dtype(bias, out_dtype)

    primitive = LayerNorm(tgt, fallback, meta.eps, out_dtype, has_weight, has_bias)
    return apply(
        primitive,
        [x, passed_weight, passed_bias],
        [x.shape],
        [out_dtype],
        fused_eligible(tgt),
    )[0]
