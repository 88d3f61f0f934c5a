"""
Affine group quantization and the uint32 bit-packing codec.

Weights are split into groups of ``group_size`` along the last axis; each
group gets a scale and bias, and every element becomes a ``bits``-wide code.
``32 // bits`` codes are packed per uint32 word, so a (..., N) matrix turns
into packed (..., N * bits / 32) words plus (..., N / group_size) scales and
biases.
"""

from __future__ import annotations

from typing import Any, List, Sequence, Tuple

import jax
import jax.numpy as jnp

from kernel_weave._math import ops
from kernel_weave.core import jitted
from kernel_weave.core.array import as_input
from kernel_weave.core.meta import QuantMeta, make_quant_meta
from kernel_weave.core.policy import fused_eligible
from kernel_weave.core.primitive import Primitive, apply
from kernel_weave.core.target import TargetLike, to_target
from kernel_weave.errors import InvalidArgumentError, UnsupportedOperationError

SUPPORTED_GROUP_SIZES = (32, 64, 128)
SUPPORTED_BITS = (2, 4, 8)
WORD_BITS = 32

pack_codes = ops.pack_codes
unpack_codes = ops.unpack_codes


class AffineQuantize(Primitive):
    """
    Covers calibration + packing (one input), packing against given
    scales/biases (three inputs) and unpacking (``meta.dequantize``).
    """

    __slots__ = ()

    def kernel(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        meta: QuantMeta = self.meta
        if meta.dequantize:
            return [jitted.affine_dequantize(meta, *inputs)]
        if len(inputs) == 1:
            return list(jitted.affine_quantize(meta, inputs[0]))
        return [jitted.affine_quantize_with(meta, *inputs)]


def _validate_quantize(w: Any, group_size: int, bits: int) -> None:
    if group_size not in SUPPORTED_GROUP_SIZES:
        raise InvalidArgumentError(
            f"[quantize] The requested group size {group_size} is not supported. "
            "The supported group sizes are 32, 64 and 128."
        )
    if bits not in SUPPORTED_BITS:
        raise InvalidArgumentError(
            f"[quantize] The requested number of bits {bits} is not supported. "
            "The supported bits are 2, 4 and 8."
        )
    if w.ndim < 2:
        raise InvalidArgumentError(
            "[quantize] The matrix to be quantized must have at least 2 dimensions "
            f"but it has only {w.ndim}."
        )
    if w.shape[-1] % group_size != 0:
        raise InvalidArgumentError(
            "[quantize] The last dimension of the matrix needs to be divisible by "
            f"the quantization group size {group_size}. However the provided "
            f"matrix has shape {w.shape}."
        )
    el_per_int = WORD_BITS // bits
    if w.shape[-1] < 32 * el_per_int:
        raise InvalidArgumentError(
            "[quantize] The feature dimension (last dimension of the matrix) is "
            "too small for quantization. We support >= 512 for 2 bits, >= 256 for "
            f"4 bits and >= 128 for 8 bits. The provided matrix has shape {w.shape}."
        )
    if not jnp.issubdtype(w.dtype, jnp.floating):
        raise InvalidArgumentError(f"[quantize] Received unsupported type {w.dtype}.")


def _group_shape(w: Any, group_size: int) -> Tuple[int, ...]:
    return tuple(w.shape[:-1]) + (w.shape[-1] // group_size,)


def affine_quantize(
    w: Any,
    group_size: int = 64,
    bits: int = 4,
    target: TargetLike = None,
) -> Tuple[Any, Any, Any]:
    """
    Quantize ``w`` group-wise and pack the codes into uint32 words.

    Parameters
    ----------
    w: array-like
        Floating matrix of rank >= 2 whose last axis is divisible by
        ``group_size`` and at least ``32 * 32 / bits`` wide
    group_size: int
        One of 32, 64, 128
    bits: int
        One of 2, 4, 8
    target: None | str | jax.Device | ExecutionTarget
        Execution target, the configured default when None

    Returns
    -------
    Tuple
        (packed uint32 weights, scales, biases)
    """
    w = as_input(w)
    _validate_quantize(w, group_size, bits)

    tgt = to_target(target)
    meta = make_quant_meta(group_size, bits)

    def fallback(inputs):
        return list(
            ops.affine_quantize(inputs[0], group_size=meta.group_size, bits=meta.bits)
        )

    packed_shape = tuple(w.shape[:-1]) + (w.shape[-1] // meta.elements_per_word,)
    group_shape = _group_shape(w, group_size)
    primitive = AffineQuantize(tgt, fallback, meta)
    packed, scales, biases = apply(
        primitive,
        [w],
        [packed_shape, group_shape, group_shape],
        [jnp.uint32, w.dtype, w.dtype],
        fused_eligible(tgt),
    )
    return packed, scales, biases


def affine_quantize_with(
    w: Any,
    scales: Any,
    biases: Any,
    group_size: int = 64,
    bits: int = 4,
    target: TargetLike = None,
) -> Any:
    """
    Pack ``w`` against externally supplied per-group ``scales`` and
    ``biases`` (e.g. from a previously calibrated model), skipping
    calibration.
    """
    w = as_input(w)
    scales = as_input(scales)
    biases = as_input(biases)
    _validate_quantize(w, group_size, bits)
    group_shape = _group_shape(w, group_size)
    if tuple(scales.shape) != group_shape or tuple(biases.shape) != group_shape:
        raise InvalidArgumentError(
            f"[quantize] Expected scales and biases of shape {group_shape} for "
            f"matrix of shape {w.shape} with group_size={group_size}, got "
            f"{scales.shape} and {biases.shape}."
        )

    tgt = to_target(target)
    meta = make_quant_meta(group_size, bits)

    def fallback(inputs):
        return [
            ops.affine_quantize_with(
                *inputs, group_size=meta.group_size, bits=meta.bits
            )
        ]

    packed_shape = tuple(w.shape[:-1]) + (w.shape[-1] // meta.elements_per_word,)
    primitive = AffineQuantize(tgt, fallback, meta)
    return apply(
        primitive,
        [w, scales, biases],
        [packed_shape],
        [jnp.uint32],
        fused_eligible(tgt),
    )[0]


def affine_dequantize(
    w: Any,
    scales: Any,
    biases: Any,
    group_size: int = 64,
    bits: int = 4,
    target: TargetLike = None,
) -> Any:
    """
    Unpack uint32 words into codes and map them back through the per-group
    affine transform ``code * scale + bias``.

    Raises
    ------
    InvalidArgumentError
        On non-positive bits/group_size, non-uint32 packed weights or
        scales/biases whose shape does not match the packed matrix
    UnsupportedOperationError
        When ``bits`` does not divide the 32-bit word
    """
    w = as_input(w)
    scales = as_input(scales)
    biases = as_input(biases)
    if bits <= 0:
        raise InvalidArgumentError(f"[dequantize] Invalid value for bits: {bits}")
    if group_size <= 0:
        raise InvalidArgumentError(
            f"[dequantize] Invalid value for group_size: {group_size}"
        )
    if WORD_BITS % bits != 0:
        raise UnsupportedOperationError(
            f"[dequantize] {bits}-bit codes cannot be packed into 32-bit words."
        )
    if w.ndim < 2 or scales.ndim < 2 or biases.ndim < 2:
        raise InvalidArgumentError(
            "[dequantize] The matrix to be dequantized must have at least 2 "
            f"dimensions but it has only {w.ndim}."
        )
    if (
        w.shape[:-1] != scales.shape[:-1]
        or tuple(scales.shape) != tuple(biases.shape)
    ):
        raise InvalidArgumentError(
            "[dequantize] Shape of scales and biases does not match the matrix"
        )
    if w.dtype != jnp.uint32:
        raise InvalidArgumentError(
            "[dequantize] The matrix should be given as a uint32"
        )

    el_per_int = WORD_BITS // bits
    if w.shape[-1] * el_per_int != scales.shape[-1] * group_size:
        raise InvalidArgumentError(
            "[dequantize] Shape of scales and biases does not match the matrix "
            f"given the quantization parameters. Provided matrix of shape {w.shape} "
            f"and scales/biases of shape {scales.shape} with "
            f"group_size={group_size} and bits={bits}."
        )

    tgt = to_target(target)
    meta = make_quant_meta(group_size, bits, dequantize=True)

    def fallback(inputs):
        return [
            ops.affine_dequantize(*inputs, group_size=meta.group_size, bits=meta.bits)
        ]

    out_shape = tuple(w.shape[:-1]) + (w.shape[-1] * el_per_int,)
    primitive = AffineQuantize(tgt, fallback, meta)
    return apply(
        primitive,
        [w, scales, biases],
        [out_shape],
        [scales.dtype],
        fused_eligible(tgt),
    )[0]
