"""
Jitted entry points for the fused operators.

These are the accelerated kernels: each decomposition compiled by XLA with
its scalar parameters static, so repeated calls with the same parameters
reuse one executable per input shape. Primitives dispatch here from
``kernel``; the decompositions themselves live in `kernel_weave._math.ops`.
"""

from __future__ import annotations

from functools import partial
from typing import Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from kernel_weave._math import ops
from kernel_weave.core.meta import AttentionMeta, NormMeta, QuantMeta, RopeMeta


@partial(jax.jit, static_argnames=("eps", "out_dtype"))
def _rms_norm_jitted(x, weight, eps: float, out_dtype: np.dtype):
    return ops.rms_norm(x, weight, eps=eps, out_dtype=out_dtype)


def rms_norm(
    meta: NormMeta, x: jnp.ndarray, weight: jnp.ndarray, out_dtype: np.dtype
) -> jnp.ndarray:
    return _rms_norm_jitted(x, weight, meta.eps, np.dtype(out_dtype))


@partial(jax.jit, static_argnames=("eps",))
def _rms_norm_vjp_jitted(x, weight, cotangent, eps: float):
    return ops.rms_norm_vjp(x, weight, cotangent, eps=eps)


def rms_norm_vjp(
    meta: NormMeta, x: jnp.ndarray, weight: jnp.ndarray, cotangent: jnp.ndarray
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    return _rms_norm_vjp_jitted(x, weight, cotangent, meta.eps)


@partial(
    jax.jit, static_argnames=("eps", "out_dtype", "has_weight", "has_bias")
)
def _layer_norm_jitted(
    x, weight, bias, eps: float, out_dtype: np.dtype, has_weight: bool, has_bias: bool
):
    return ops.layer_norm(
        x,
        weight,
        bias,
        eps=eps,
        out_dtype=out_dtype,
        has_weight=has_weight,
        has_bias=has_bias,
    )


def layer_norm(
    meta: NormMeta,
    x: jnp.ndarray,
    weight: jnp.ndarray,
    bias: jnp.ndarray,
    out_dtype: np.dtype,
    has_weight: bool = True,
    has_bias: bool = True,
) -> jnp.ndarray:
    return _layer_norm_jitted(
        x, weight, bias, meta.eps, np.dtype(out_dtype), has_weight, has_bias
    )


@partial(jax.jit, static_argnames=("eps",))
def _layer_norm_vjp_jitted(x, weight, bias, cotangent, eps: float):
    return ops.layer_norm_vjp(x, weight, bias, cotangent, eps=eps)


def layer_norm_vjp(
    meta: NormMeta,
    x: jnp.ndarray,
    weight: jnp.ndarray,
    bias: jnp.ndarray,
    cotangent: jnp.ndarray,
) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
    return _layer_norm_vjp_jitted(x, weight, bias, cotangent, meta.eps)


@partial(jax.jit, static_argnames=("meta",))
def _rope_jitted(x, meta: RopeMeta):
    return ops.rope(
        x,
        dims=meta.dims,
        traditional=meta.traditional,
        base=meta.base,
        scale=meta.scale,
        offset=meta.offset,
        forward=meta.forward,
    )


def rope(meta: RopeMeta, x: jnp.ndarray) -> jnp.ndarray:
    return _rope_jitted(x, meta)


@partial(jax.jit, static_argnames=("scale",))
def _sdpa_jitted(queries, keys, values, mask, scale: float):
    return ops.scaled_dot_product_attention(queries, keys, values, mask, scale=scale)


def scaled_dot_product_attention(
    meta: AttentionMeta,
    queries: jnp.ndarray,
    keys: jnp.ndarray,
    values: jnp.ndarray,
    mask: Optional[jnp.ndarray] = None,
) -> jnp.ndarray:
    return _sdpa_jitted(queries, keys, values, mask, meta.scale)


@partial(jax.jit, static_argnames=("group_size", "bits"))
def _affine_quantize_jitted(w, group_size: int, bits: int):
    return ops.affine_quantize(w, group_size=group_size, bits=bits)


def affine_quantize(
    meta: QuantMeta, w: jnp.ndarray
) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
    return _affine_quantize_jitted(w, meta.group_size, meta.bits)


@partial(jax.jit, static_argnames=("group_size", "bits"))
def _affine_quantize_with_jitted(w, scales, biases, group_size: int, bits: int):
    return ops.affine_quantize_with(
        w, scales, biases, group_size=group_size, bits=bits
    )


def affine_quantize_with(
    meta: QuantMeta, w: jnp.ndarray, scales: jnp.ndarray, biases: jnp.ndarray
) -> jnp.ndarray:
    return _affine_quantize_with_jitted(w, scales, biases, meta.group_size, meta.bits)


@partial(jax.jit, static_argnames=("group_size", "bits"))
def _affine_dequantize_jitted(w, scales, biases, group_size: int, bits: int):
    return ops.affine_dequantize(w, scales, biases, group_size=group_size, bits=bits)


def affine_dequantize(
    meta: QuantMeta, w: jnp.ndarray, scales: jnp.ndarray, biases: jnp.ndarray
) -> jnp.ndarray:
    return _affine_dequantize_jitted(w, scales, biases, meta.group_size, meta.bits)
