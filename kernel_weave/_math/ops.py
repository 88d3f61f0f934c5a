"""
Decompositions of the fused operators.

Every function here is plain ``jax.numpy`` math with its scalar parameters
passed as keyword arguments, so it can be differentiated, vmapped and jitted
by JAX. These are the reference semantics of each operator; the accelerated
entry points in ``kernel_weave.core.jitted`` compile exactly these.
"""

from __future__ import annotations

import math
from typing import Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np
import opt_einsum as oe


def wide_dtype(dtype) -> np.dtype:
    """
    Floating type used for reductions: at least float32, float64 stays.
    """
    return jnp.promote_types(dtype, jnp.float32)


def _leading_axes(g: jnp.ndarray) -> Tuple[int, ...]:
    return tuple(range(g.ndim - 1))


def rms_norm(
    x: jnp.ndarray,
    weight: jnp.ndarray,
    *,
    eps: float,
    out_dtype: Optional[np.dtype] = None,
) -> jnp.ndarray:
    """
    Root mean square normalization over the last axis.

    .. math::
        y = w \\cdot \\frac{x}{\\sqrt{\\mathrm{mean}(x^2) + \\epsilon}}

    The reduction runs in :func:`wide_dtype` and is cast back to
    ``out_dtype`` before the weight is applied.
    """
    if out_dtype is None:
        out_dtype = jnp.result_type(x, weight)
    xw = x.astype(wide_dtype(x.dtype))
    xw = xw * jax.lax.rsqrt(jnp.mean(jnp.square(xw), axis=-1, keepdims=True) + eps)
    return weight.astype(out_dtype) * xw.astype(out_dtype)


def rms_norm_vjp(
    x: jnp.ndarray,
    weight: jnp.ndarray,
    cotangent: jnp.ndarray,
    *,
    eps: float,
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Closed-form gradients of :func:`rms_norm` w.r.t. ``x`` and ``weight``.

    Parameters
    ----------
    x: jnp.ndarray
        Primal input
    weight: jnp.ndarray
        Primal weight, rank 1
    cotangent: jnp.ndarray
        Upstream cotangent shaped like the output

    Returns
    -------
    Tuple[jnp.ndarray, jnp.ndarray]
        (dx, dweight), cast to the primal dtypes
    """
    wide = wide_dtype(x.dtype)
    xw = x.astype(wide)
    w = weight.astype(wide)
    g = cotangent.astype(wide)

    n = jax.lax.rsqrt(jnp.mean(jnp.square(xw), axis=-1, keepdims=True) + eps)
    n3 = n**3

    gw = g * w
    t = jnp.mean(gw * xw, axis=-1, keepdims=True)
    dx = gw * n - xw * t * n3

    dw = jnp.sum(g * xw * n, axis=_leading_axes(g))
    return dx.astype(x.dtype), dw.astype(weight.dtype)


def layer_norm(
    x: jnp.ndarray,
    weight: jnp.ndarray,
    bias: jnp.ndarray,
    *,
    eps: float,
    out_dtype: Optional[np.dtype] = None,
    has_weight: bool = True,
    has_bias: bool = True,
) -> jnp.ndarray:
    """
    Layer normalization over the last axis.

    Mean and variance are taken as ``mean(x)`` and ``mean(x^2) - mean(x)^2``
    in :func:`wide_dtype`. The variance is clamped at zero since the
    difference can round below it for near-constant rows.
    """
    if out_dtype is None:
        out_dtype = x.dtype
    xw = x.astype(wide_dtype(x.dtype))

    mu = jnp.mean(xw, axis=-1, keepdims=True)
    x2 = jnp.mean(jnp.square(xw), axis=-1, keepdims=True)
    var = jnp.maximum(x2 - jnp.square(mu), 0)

    out = ((xw - mu) * jax.lax.rsqrt(var + eps)).astype(out_dtype)
    if has_weight:
        out = out * weight
    if has_bias:
        out = out + bias
    return out.astype(out_dtype)


def layer_norm_vjp(
    x: jnp.ndarray,
    weight: jnp.ndarray,
    bias: jnp.ndarray,
    cotangent: jnp.ndarray,
    *,
    eps: float,
) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
    """
    Closed-form gradients of :func:`layer_norm` w.r.t. ``x``, ``weight`` and
    ``bias``. Rank-0 weight/bias stand in for "not set" and get zero
    gradients.
    """
    wide = wide_dtype(x.dtype)
    xw = x.astype(wide)
    w = weight.astype(wide)
    g = cotangent.astype(wide)

    norm = 1.0 / xw.shape[-1]
    mu = jnp.sum(xw, axis=-1, keepdims=True) * norm
    mu2 = jnp.sum(jnp.square(xw), axis=-1, keepdims=True) * norm
    var = jnp.maximum(mu2 - jnp.square(mu), 0)
    n = jax.lax.rsqrt(var + eps)
    n3 = n**3
    x_c = xw - mu

    wg = w * g
    sumwg = jnp.sum(wg, axis=-1, keepdims=True) * norm
    sumwgxc = jnp.sum(wg * x_c, axis=-1, keepdims=True) * norm
    t1 = x_c * sumwgxc * n3
    t2 = (wg - sumwg) * n
    dx = t2 - t1

    axes = _leading_axes(g)
    if weight.ndim == 0:
        dw = jnp.zeros_like(weight)
    else:
        dw = jnp.sum(g * x_c * n, axis=axes).astype(weight.dtype)
    if bias.ndim == 0:
        db = jnp.zeros_like(bias)
    else:
        db = jnp.sum(g, axis=axes).astype(bias.dtype)
    return dx.astype(x.dtype), dw, db


def _rotate(x1, x2, coss, sins, forward: bool):
    if forward:
        return x1 * coss - x2 * sins, x1 * sins + x2 * coss
    return x2 * sins + x1 * coss, x2 * coss - x1 * sins


def rope(
    x: jnp.ndarray,
    *,
    dims: int,
    traditional: bool,
    base: float,
    scale: float,
    offset: int,
    forward: bool = True,
) -> jnp.ndarray:
    """
    Rotary position encoding over the last two axes (sequence, features).

    Frequencies are ``exp(-i * log(base) / (dims / 2))`` and positions
    ``(offset + arange(L)) * scale``. With ``traditional`` the rotated pairs
    are interleaved (even, odd) features, otherwise the two halves of the
    first ``dims`` features. Features past ``dims`` pass through.
    ``forward=False`` applies the inverse rotation.
    """
    shape = x.shape
    x = x.reshape((math.prod(shape[:-2]), shape[-2], shape[-1]))
    t = x.dtype
    batch, seq_len, features = x.shape
    half_dims = dims // 2

    positions = jnp.arange(offset, offset + seq_len, dtype=t) * jnp.asarray(scale, t)
    freqs = jnp.exp(
        -jnp.arange(0, half_dims, dtype=t) * jnp.asarray(math.log(base) / half_dims, t)
    )
    theta = positions[:, None] * freqs[None, :]
    coss = jnp.cos(theta)
    sins = jnp.sin(theta)

    if traditional:
        x1 = x[..., 0:dims:2]
        x2 = x[..., 1:dims:2]
        o1, o2 = _rotate(x1, x2, coss, sins, forward)
        out = jnp.stack([o1, o2], axis=-1).reshape((batch, seq_len, dims))
    else:
        x1 = x[..., :half_dims]
        x2 = x[..., half_dims:dims]
        o1, o2 = _rotate(x1, x2, coss, sins, forward)
        out = jnp.concatenate([o1, o2], axis=-1)

    if dims < features:
        out = jnp.concatenate([out, x[..., dims:]], axis=-1)
    return out.reshape(shape)


def scaled_dot_product_attention(
    queries: jnp.ndarray,
    keys: jnp.ndarray,
    values: jnp.ndarray,
    mask: Optional[jnp.ndarray] = None,
    *,
    scale: float,
) -> jnp.ndarray:
    """
    ``softmax(scale * Q @ K.T + mask) @ V`` with grouped-query support.

    Queries are regrouped to (B, n_kv_heads, n_repeats, L, D) so keys and
    values are shared across each group of query heads without being tiled.
    The softmax is evaluated in :func:`wide_dtype` regardless of the input
    precision.
    """
    batch, n_q_heads, q_len, _ = queries.shape
    n_kv_heads, kv_len = keys.shape[1], keys.shape[2]
    n_repeats = n_q_heads // n_kv_heads

    q = jnp.asarray(scale, queries.dtype) * queries
    q = q.reshape((batch, n_kv_heads, n_repeats, q_len, queries.shape[-1]))
    scores = oe.contract("bgrqd,bgkd->bgrqk", q, keys, backend="jax")

    wide = wide_dtype(scores.dtype)
    scores = scores.astype(wide)
    if mask is not None:
        full = (batch, n_q_heads, q_len, kv_len)
        grouped = (batch, n_kv_heads, n_repeats, q_len, kv_len)
        scores = scores + jnp.broadcast_to(mask, full).reshape(grouped).astype(wide)
    probs = jax.nn.softmax(scores, axis=-1).astype(queries.dtype)

    out = oe.contract("bgrqk,bgkd->bgrqd", probs, values, backend="jax")
    return out.reshape((batch, n_q_heads, q_len, values.shape[-1]))


def calibrate(
    w_groups: jnp.ndarray, *, bits: int
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Per-group affine scale and bias for groups along the last axis.

    The edge with the larger magnitude is chosen as the calibration point and
    the scale is nudged so that edge lands exactly on an integer code.

    Parameters
    ----------
    w_groups: jnp.ndarray
        Weights shaped (..., n_groups, group_size)
    bits: int
        Bits per code

    Returns
    -------
    Tuple[jnp.ndarray, jnp.ndarray]
        (scales, biases) shaped (..., n_groups, 1)
    """
    dtype = w_groups.dtype
    zero = jnp.asarray(0, dtype)
    n_bins = jnp.asarray((1 << bits) - 1, dtype)
    eps = jnp.asarray(1e-7, dtype)

    w_max = jnp.max(w_groups, axis=-1, keepdims=True)
    w_min = jnp.min(w_groups, axis=-1, keepdims=True)
    mask = jnp.abs(w_min) > jnp.abs(w_max)
    scales = jnp.maximum((w_max - w_min) / n_bins, eps)
    scales = jnp.where(mask, scales, -scales)
    edge = jnp.where(mask, w_min, w_max)
    q0 = jnp.round(edge / scales)
    # q0 == 0 only for all-zero groups; keep the unadjusted scale there
    safe_q0 = jnp.where(q0 == zero, jnp.asarray(1, dtype), q0)
    scales = jnp.where(q0 != zero, edge / safe_q0, scales)
    biases = jnp.where(q0 == zero, zero, edge)
    return scales, biases


def quantize_codes(
    w_groups: jnp.ndarray,
    scales: jnp.ndarray,
    biases: jnp.ndarray,
    *,
    bits: int,
) -> jnp.ndarray:
    n_bins = (1 << bits) - 1
    codes = jnp.clip(jnp.round((w_groups - biases) / scales), 0, n_bins)
    return codes.astype(jnp.uint32)


def pack_codes(codes: jnp.ndarray, *, bits: int) -> jnp.ndarray:
    """
    Packs ``32 // bits`` consecutive codes of the last axis into one uint32
    word, code ``i`` of a word occupying bits ``[i*bits, (i+1)*bits)``.
    """
    el_per_int = 32 // bits
    codes = codes.astype(jnp.uint32)
    n_words = codes.shape[-1] // el_per_int
    codes = codes.reshape(codes.shape[:-1] + (n_words, el_per_int))
    shifts = jnp.arange(el_per_int, dtype=jnp.uint32) * jnp.uint32(bits)
    return jnp.sum(jnp.left_shift(codes, shifts), axis=-1, dtype=jnp.uint32)


def unpack_codes(packed: jnp.ndarray, *, bits: int) -> jnp.ndarray:
    """
    Inverse of :func:`pack_codes`: every uint32 word expands into
    ``32 // bits`` codes along the last axis.
    """
    el_per_int = 32 // bits
    shifts = jnp.arange(el_per_int, dtype=jnp.uint32) * jnp.uint32(bits)
    mask = jnp.uint32((1 << bits) - 1)
    codes = jnp.bitwise_and(jnp.right_shift(packed[..., None], shifts), mask)
    return codes.reshape(packed.shape[:-1] + (packed.shape[-1] * el_per_int,))


def affine_quantize(
    w: jnp.ndarray, *, group_size: int, bits: int
) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
    """
    Calibrates and packs ``w``; returns (packed, scales, biases) where
    packed has ``w.shape[-1] * bits / 32`` words per row and scales/biases
    ``w.shape[-1] / group_size`` entries.
    """
    shape = w.shape
    rows = math.prod(shape[:-1])
    n_groups = shape[-1] // group_size
    w_groups = w.reshape((rows, n_groups, group_size))
    scales, biases = calibrate(w_groups, bits=bits)
    codes = quantize_codes(w_groups, scales, biases, bits=bits)
    packed = pack_codes(codes.reshape((rows, shape[-1])), bits=bits)
    lead = shape[:-1] + (n_groups,)
    return (
        packed.reshape(shape[:-1] + (packed.shape[-1],)),
        scales.reshape(lead),
        biases.reshape(lead),
    )


def affine_quantize_with(
    w: jnp.ndarray,
    scales: jnp.ndarray,
    biases: jnp.ndarray,
    *,
    group_size: int,
    bits: int,
) -> jnp.ndarray:
    shape = w.shape
    rows = math.prod(shape[:-1])
    n_groups = shape[-1] // group_size
    w_groups = w.reshape((rows, n_groups, group_size))
    s = scales.reshape((rows, n_groups, 1))
    b = biases.reshape((rows, n_groups, 1))
    codes = quantize_codes(w_groups, s, b, bits=bits)
    packed = pack_codes(codes.reshape((rows, shape[-1])), bits=bits)
    return packed.reshape(shape[:-1] + (packed.shape[-1],))


def affine_dequantize(
    w: jnp.ndarray,
    scales: jnp.ndarray,
    biases: jnp.ndarray,
    *,
    group_size: int,
    bits: int,
) -> jnp.ndarray:
    codes = unpack_codes(w, bits=bits).astype(scales.dtype)
    codes = codes.reshape(scales.shape + (group_size,))
    out = codes * scales[..., None] + biases[..., None]
    return out.reshape(scales.shape[:-1] + (scales.shape[-1] * group_size,))
