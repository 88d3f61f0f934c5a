import logging

import jax.numpy as jnp
import pytest

from kernel_weave.core.policy import (
    AttentionEligibility,
    fused_eligible,
    sdpa_eligibility,
    sdpa_use_fused,
)
from kernel_weave.core.target import ExecutionTarget
from kernel_weave.kernel_weave import Config, Session

CPU = ExecutionTarget("cpu")
GPU = ExecutionTarget("gpu")


def test_fused_eligible_needs_gpu_and_flag():
    assert fused_eligible(GPU)
    assert not fused_eligible(CPU)
    with Session(fused_kernels=False):
        assert not fused_eligible(GPU)


def test_decode_shape_is_eligible():
    elig = sdpa_eligibility((1, 8, 1, 128), 2, False, jnp.float16, GPU)
    assert elig.decode
    assert not elig.full_self_attention
    assert elig.supported


@pytest.mark.parametrize("head_dim", [64, 128])
def test_full_self_attention_is_eligible(head_dim):
    elig = sdpa_eligibility((2, 4, 16, head_dim), 4, False, jnp.float32, GPU)
    assert elig.full_self_attention
    assert not elig.decode


@pytest.mark.parametrize(
    "query_shape, n_kv_heads, has_mask, dtype, target",
    [
        # grouped heads exclude the self-attention kernel
        ((2, 8, 32, 64), 2, False, jnp.float32, GPU),
        # too short for self-attention, too long for decode
        ((1, 4, 8, 64), 4, False, jnp.float32, GPU),
        # head dim 80 only supported by decode
        ((2, 4, 32, 80), 4, False, jnp.float32, GPU),
        ((1, 4, 1, 96), 4, False, jnp.float32, GPU),
        ((1, 4, 1, 64), 4, True, jnp.float32, GPU),
        ((1, 4, 1, 64), 4, False, jnp.bfloat16, GPU),
        ((1, 4, 1, 64), 4, False, jnp.float32, CPU),
        ((2, 4, 1, 64), 4, False, jnp.float32, GPU),
    ],
)
def test_ineligible_shapes(query_shape, n_kv_heads, has_mask, dtype, target):
    elig = sdpa_eligibility(query_shape, n_kv_heads, has_mask, dtype, target)
    assert not elig.supported


def test_sdpa_fused_path_needs_both_flags():
    elig = AttentionEligibility(decode=True, full_self_attention=False)
    Config().set_fused_kernels(True)
    Config().set_sdpa_fused_kernels(False)
    assert not sdpa_use_fused(elig)

    Config().set_sdpa_fused_kernels(True)
    assert sdpa_use_fused(elig)

    Config().set_fused_kernels(False)
    assert not sdpa_use_fused(elig)


def test_sdpa_never_fused_when_ineligible():
    elig = AttentionEligibility(decode=False, full_self_attention=False)
    with Session(fused_kernels=True, sdpa_fused_kernels=True):
        assert not sdpa_use_fused(elig)


def test_disabled_sdpa_flag_is_logged(caplog):
    elig = AttentionEligibility(decode=True, full_self_attention=True)
    with Session(sdpa_fused_kernels=False):
        with caplog.at_level(logging.DEBUG, logger="kernel_weave.core.policy"):
            sdpa_use_fused(elig)
    assert "sdpa_fused_kernels is off" in caplog.text
