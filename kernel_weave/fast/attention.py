"""
Scaled dot-product attention with grouped/multi-query support.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence

import jax
import jax.numpy as jnp

from kernel_weave._math import ops
from kernel_weave.core import jitted
from kernel_weave.core.array import as_input
from kernel_weave.core.meta import AttentionMeta
from kernel_weave.core.policy import sdpa_eligibility, sdpa_use_fused
from kernel_weave.core.primitive import Primitive, apply
from kernel_weave.core.target import TargetLike, to_target
from kernel_weave.errors import InvalidArgumentError


class ScaledDotProductAttention(Primitive):
    __slots__ = ()

    def kernel(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        dtype = jnp.result_type(*(t.dtype for t in inputs[:3]))
        q, k, v = (t.astype(dtype) for t in inputs[:3])
        return [jitted.scaled_dot_product_attention(self.meta, q, k, v, *inputs[3:])]


def _validate(queries, keys, values, mask) -> None:
    for tensor in (queries, keys, values):
        if tensor.ndim != 4:
            raise InvalidArgumentError(
                f"[scaled_dot_product_attention] input with shape {tensor.shape} "
                "expected to be rank 4"
            )

    batch = queries.shape[0]
    for tensor in (keys, values):
        if tensor.shape[0] != batch:
            raise InvalidArgumentError(
                "[scaled_dot_product_attention] mismatching batch dimension for "
                f"input with shape {tensor.shape}."
            )

    if queries.shape[-1] != keys.shape[-1]:
        raise InvalidArgumentError(
            "[scaled_dot_product_attention] query, keys expected to have matching "
            f"last dimension; found query shape {queries.shape} for keys shape "
            f"{keys.shape}."
        )

    if keys.shape[-3] != values.shape[-3]:
        raise InvalidArgumentError(
            "[scaled_dot_product_attention] keys, values expected to have matching "
            f"n_kv_heads; found keys with n_heads {keys.shape[-3]} for values with "
            f"n_heads {values.shape[-3]}."
        )

    if keys.shape[-2] != values.shape[-2]:
        raise InvalidArgumentError(
            "[scaled_dot_product_attention] keys, values expected to have matching "
            f"sequence length; found keys shape {keys.shape} for values shape "
            f"{values.shape}."
        )

    n_q_heads = queries.shape[-3]
    n_kv_heads = keys.shape[-3]
    if n_kv_heads == 0 or n_q_heads % n_kv_heads != 0:
        raise InvalidArgumentError(
            "[scaled_dot_product_attention] n_heads must be a multiple of "
            f"n_kv_heads, found n_heads {n_q_heads} for n_kv_heads {n_kv_heads}."
        )

    if mask is not None:
        scores_shape = (batch, n_q_heads, queries.shape[-2], keys.shape[-2])
        try:
            broadcast = jnp.broadcast_shapes(mask.shape, scores_shape)
        except ValueError as e:
            raise InvalidArgumentError(
                f"[scaled_dot_product_attention] mask with shape {mask.shape} "
                f"cannot be broadcast to the scores shape {scores_shape}."
            ) from e
        if tuple(broadcast) != scores_shape:
            raise InvalidArgumentError(
                f"[scaled_dot_product_attention] mask with shape {mask.shape} "
                f"cannot be broadcast to the scores shape {scores_shape}."
            )


def scaled_dot_product_attention(
    queries: Any,
    keys: Any,
    values: Any,
    scale: float,
    mask: Optional[Any] = None,
    target: TargetLike = None,
) -> Any:
    """
    Computes ``softmax(scale * Q @ K.T + mask) @ V``.

    Keys and values carry ``n_kv_heads`` heads which are shared by groups of
    query heads (grouped/multi-query attention); they should not be tiled by
    the caller. The softmax always runs in at least float32.

    Parameters
    ----------
    queries: array-like
        Shape (batch, n_q_heads, q_len, head_dim)
    keys: array-like
        Shape (batch, n_kv_heads, kv_len, head_dim)
    values: array-like
        Shape (batch, n_kv_heads, kv_len, value_dim)
    scale: float
        Multiplier for the queries, typically ``1 / sqrt(head_dim)``
    mask: array-like, optional
        Additive mask broadcastable to (batch, n_q_heads, q_len, kv_len)
    target: None | str | jax.Device | ExecutionTarget
        Execution target, the configured default when None

    Returns
    -------
    FusedArray | jax.Array
        Shape (batch, n_q_heads, q_len, value_dim)
    """
    queries = as_input(queries)
    keys = as_input(keys)
    values = as_input(values)
    mask = as_input(mask) if mask is not None else None
    _validate(queries, keys, values, mask)

    final_dtype = jnp.result_type(queries.dtype, keys.dtype, values.dtype)
    if not jnp.issubdtype(final_dtype, jnp.floating):
        raise InvalidArgumentError(
            f"[scaled_dot_product_attention] Received unsupported type {final_dtype}."
        )

    tgt = to_target(target)
    meta = AttentionMeta(scale=float(scale), needs_mask=mask is not None)

    def fallback(inputs):
        q, k, v = (t.astype(final_dtype) for t in inputs[:3])
        m = inputs[3] if meta.needs_mask else None
        return [ops.scaled_dot_product_attention(q, k, v, m, scale=meta.scale)]

    inputs = [queries, keys, values]
    if mask is not None:
        inputs.append(mask)

    eligibility = sdpa_eligibility(
        queries.shape, keys.shape[-3], mask is not None, final_dtype, tgt
    )
    out_shape = queries.shape[:3] + (values.shape[-1],)
    primitive = ScaledDotProductAttention(tgt, fallback, meta)
    return apply(
        primitive, inputs, [out_shape], [final_dtype], sdpa_use_fused(eligibility)
    )[0]
