"""
Accelerated-path eligibility gates.

Each operator asks its gate whether to build a fused node; the gates never
touch the math, so tightening or disabling one cannot change results, only
which implementation produces them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import jax.numpy as jnp

from kernel_weave.core.target import ExecutionTarget
from kernel_weave.kernel_weave import Config

logger = logging.getLogger(__name__)

SDPA_HEAD_DIMS = frozenset({64, 80, 128})
SDPA_SELF_ATTENTION_HEAD_DIMS = frozenset({64, 128})
SDPA_MIN_SELF_ATTENTION_LENGTH = 16


def fused_eligible(target: ExecutionTarget) -> bool:
    """
    Gate shared by the normalization, RoPE and quantization operators:
    GPU-class target and fused kernels globally enabled.
    """
    return target.is_gpu and Config().fused_kernels


@dataclass(frozen=True)
class AttentionEligibility:
    """
    Verdicts for the two attention kernels.

    Attributes
    ----------
    decode : bool
        Single-query decoding kernel (batch 1, query length 1).
    full_self_attention : bool
        Self-attention kernel for longer query sequences.
    """

    decode: bool
    full_self_attention: bool

    @property
    def supported(self) -> bool:
        return self.decode or self.full_self_attention


def sdpa_eligibility(
    query_shape: Sequence[int],
    n_kv_heads: int,
    has_mask: bool,
    dtype,
    target: ExecutionTarget,
) -> AttentionEligibility:
    batch, n_q_heads, q_len, head_dim = query_shape
    common = not has_mask and dtype != jnp.bfloat16 and target.is_gpu
    full_self_attention = (
        common
        and q_len >= SDPA_MIN_SELF_ATTENTION_LENGTH
        and head_dim in SDPA_SELF_ATTENTION_HEAD_DIMS
        and n_q_heads == n_kv_heads
    )
    decode = common and batch == 1 and q_len == 1 and head_dim in SDPA_HEAD_DIMS
    return AttentionEligibility(decode=decode, full_self_attention=full_self_attention)


def sdpa_use_fused(eligibility: AttentionEligibility) -> bool:
    cfg = Config()
    if eligibility.supported and not cfg.sdpa_fused_kernels:
        logger.debug("Attention is fused-eligible but sdpa_fused_kernels is off")
    return eligibility.supported and cfg.fused_kernels and cfg.sdpa_fused_kernels
