import logging

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from kernel_weave._math import ops
from kernel_weave.core.array import FusedArray
from kernel_weave.errors import InvalidArgumentError
from kernel_weave.fast.attention import (
    ScaledDotProductAttention,
    scaled_dot_product_attention,
)
from kernel_weave.kernel_weave import Session


def _np_sdpa(q, k, v, scale, mask=None):
    q, k, v = (np.asarray(t, dtype=np.float64) for t in (q, k, v))
    n_rep = q.shape[1] // k.shape[1]
    k = np.repeat(k, n_rep, axis=1)
    v = np.repeat(v, n_rep, axis=1)
    scores = scale * q @ np.swapaxes(k, -1, -2)
    if mask is not None:
        scores = scores + mask
    scores = scores - scores.max(axis=-1, keepdims=True)
    probs = np.exp(scores)
    probs /= probs.sum(axis=-1, keepdims=True)
    return probs @ v


def _qkv(batch=2, n_q=8, n_kv=2, q_len=5, kv_len=7, dim=16, value_dim=16, seed=0):
    rng = np.random.default_rng(seed)
    q = rng.standard_normal((batch, n_q, q_len, dim))
    k = rng.standard_normal((batch, n_kv, kv_len, dim))
    v = rng.standard_normal((batch, n_kv, kv_len, value_dim))
    return q, k, v


@pytest.mark.parametrize("n_kv", [8, 2, 1])
def test_grouped_query_attention_matches_reference(n_kv):
    q, k, v = _qkv(n_kv=n_kv)
    out = scaled_dot_product_attention(q, k, v, 0.25, target="cpu")
    assert out.shape == (2, 8, 5, 16)
    assert np.allclose(out, _np_sdpa(q, k, v, 0.25))


def test_value_dim_may_differ_from_head_dim():
    q, k, v = _qkv(value_dim=4)
    out = scaled_dot_product_attention(q, k, v, 0.25, target="cpu")
    assert out.shape == (2, 8, 5, 4)
    assert np.allclose(out, _np_sdpa(q, k, v, 0.25))


def test_additive_mask_is_broadcast():
    q, k, v = _qkv()
    causal = np.triu(np.full((5, 7), -np.inf), k=3)
    out = scaled_dot_product_attention(q, k, v, 0.25, mask=causal, target="cpu")
    assert np.allclose(out, _np_sdpa(q, k, v, 0.25, causal))

    per_head = np.random.default_rng(3).standard_normal((1, 8, 5, 7))
    out = scaled_dot_product_attention(q, k, v, 0.25, mask=per_head, target="cpu")
    assert np.allclose(out, _np_sdpa(q, k, v, 0.25, per_head))


def test_half_precision_softmax_runs_wide():
    q, k, v = _qkv()
    out = scaled_dot_product_attention(
        q.astype(np.float16),
        k.astype(np.float16),
        v.astype(np.float16),
        0.25,
        target="cpu",
    )
    assert out.dtype == jnp.float16
    assert jnp.all(jnp.isfinite(out))
    assert np.allclose(np.asarray(out, dtype=np.float64), _np_sdpa(q, k, v, 0.25), atol=5e-2)


def test_mixed_input_dtypes_promote():
    q, k, v = _qkv()
    out = scaled_dot_product_attention(
        q.astype(np.float32), k.astype(np.float16), v.astype(np.float16), 0.25, target="cpu"
    )
    assert out.dtype == jnp.float32


def test_eligible_shape_stays_unfused_by_default():
    q, k, v = _qkv(batch=1, n_q=4, n_kv=4, q_len=1, dim=64, value_dim=64)
    out = scaled_dot_product_attention(q, k, v, 0.125, target="gpu")
    assert not isinstance(out, FusedArray)


def test_eligible_shape_builds_node_with_flag():
    q, k, v = _qkv(batch=1, n_q=4, n_kv=4, q_len=1, dim=64, value_dim=64)
    with Session(sdpa_fused_kernels=True):
        node = scaled_dot_product_attention(q, k, v, 0.125, target="gpu")
        masked = scaled_dot_product_attention(
            q, k, v, 0.125, mask=np.zeros((1, 7)), target="gpu"
        )
    assert isinstance(node, FusedArray)
    assert isinstance(node.primitive, ScaledDotProductAttention)
    assert node.shape == (1, 4, 1, 64)
    assert np.allclose(node.eval(), _np_sdpa(q, k, v, 0.125))
    # masks are never fused
    assert not isinstance(masked, FusedArray)


def test_full_self_attention_node_with_flag():
    q, k, v = _qkv(batch=2, n_q=2, n_kv=2, q_len=16, kv_len=16, dim=128, value_dim=128)
    with Session(sdpa_fused_kernels=True):
        node = scaled_dot_product_attention(q, k, v, 0.1, target="gpu")
    assert isinstance(node, FusedArray)
    assert np.allclose(node.eval(), _np_sdpa(q, k, v, 0.1))


def test_eligible_shape_logs_disabled_flag(caplog):
    q, k, v = _qkv(batch=1, n_q=4, n_kv=4, q_len=1, dim=64, value_dim=64)
    with caplog.at_level(logging.DEBUG, logger="kernel_weave"):
        scaled_dot_product_attention(q, k, v, 0.125, target="gpu")
    assert "sdpa_fused_kernels is off" in caplog.text


def test_sdpa_vjp_through_decomposition():
    q, k, v = _qkv(batch=1, n_q=4, n_kv=4, q_len=1, dim=64, value_dim=64)
    g = np.random.default_rng(5).standard_normal((1, 4, 1, 64))
    with Session(sdpa_fused_kernels=True):
        node = scaled_dot_product_attention(q, k, v, 0.125, target="gpu")
    dq, dv = node.vjp([g], argnums=[2, 0])

    _, vjp_fn = jax.vjp(
        lambda a, b, c: ops.scaled_dot_product_attention(a, b, c, scale=0.125),
        jnp.asarray(q),
        jnp.asarray(k),
        jnp.asarray(v),
    )
    ref_dq, _, ref_dv = vjp_fn(jnp.asarray(g))
    assert jnp.allclose(dq, ref_dq)
    assert jnp.allclose(dv, ref_dv)


def test_equivalence_uses_scale_and_mask_presence():
    q, k, v = _qkv(batch=1, n_q=4, n_kv=4, q_len=1, dim=64, value_dim=64)
    with Session(sdpa_fused_kernels=True):
        a = scaled_dot_product_attention(q, k, v, 0.125, target="gpu").primitive
        b = scaled_dot_product_attention(q * 2, k, v, 0.125, target="gpu").primitive
        c = scaled_dot_product_attention(q, k, v, 0.5, target="gpu").primitive
    assert a.is_equivalent(b)
    assert not a.is_equivalent(c)


@pytest.mark.parametrize(
    "q_shape, k_shape, v_shape, mask_shape, message",
    [
        ((2, 4, 5), (2, 4, 7, 8), (2, 4, 7, 8), None, "rank 4"),
        ((2, 4, 5, 8), (1, 4, 7, 8), (1, 4, 7, 8), None, "batch"),
        ((2, 4, 5, 8), (2, 4, 7, 6), (2, 4, 7, 8), None, "last dimension"),
        ((2, 4, 5, 8), (2, 4, 7, 8), (2, 2, 7, 8), None, "n_kv_heads"),
        ((2, 4, 5, 8), (2, 4, 7, 8), (2, 4, 6, 8), None, "sequence length"),
        ((2, 6, 5, 8), (2, 4, 7, 8), (2, 4, 7, 8), None, "multiple"),
        ((2, 4, 5, 8), (2, 4, 7, 8), (2, 4, 7, 8), (5, 6), "mask"),
        ((2, 4, 5, 8), (2, 4, 7, 8), (2, 4, 7, 8), (3, 2, 4, 5, 7), "mask"),
    ],
)
def test_attention_argument_errors(q_shape, k_shape, v_shape, mask_shape, message):
    mask = None if mask_shape is None else jnp.zeros(mask_shape)
    with pytest.raises(InvalidArgumentError, match=message):
        scaled_dot_product_attention(
            jnp.zeros(q_shape), jnp.zeros(k_shape), jnp.zeros(v_shape), 1.0, mask=mask
        )


def test_attention_rejects_integer_inputs():
    q = jnp.zeros((1, 2, 3, 4), dtype=jnp.int32)
    with pytest.raises(InvalidArgumentError, match="unsupported type"):
        scaled_dot_product_attention(q, q, q, 1.0)


def test_empty_query_sequence():
    q, k, v = _qkv(q_len=0, kv_len=3, value_dim=4)
    out = scaled_dot_product_attention(q, k, v, 1.0, target="cpu")
    assert out.shape == (2, 8, 0, 4)
