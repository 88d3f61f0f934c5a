"""
An example, running one attention block of a decoder with kernel_weave:
RMSNorm, 4-bit quantized projections, rotary encoding and grouped-query
attention. The block is built once on a gpu target (lazy fused nodes) and
once on the cpu target (eager decompositions); the outputs are compared and
the quantization error of the projection weights is plotted.
"""

import os

os.environ.setdefault("JAX_PLATFORMS", "cpu")

import jax
import jax.numpy as jnp
import matplotlib.pyplot as plt

from kernel_weave import FusedArray, Session
from kernel_weave.core.array import materialize
from kernel_weave.logging.logging import setup_logging
from kernel_weave.fast import (
    affine_dequantize,
    affine_quantize,
    rms_norm,
    rope,
    scaled_dot_product_attention,
)

HIDDEN = 512
N_HEADS = 8
N_KV_HEADS = 2
HEAD_DIM = HIDDEN // N_HEADS
SEQ_LEN = 16
GROUP_SIZE = 64
BITS = 4


def _quantized_weights(key, out_features: int, target: str):
    w = jax.random.normal(key, (out_features, HIDDEN), dtype=jnp.float32) * 0.02
    packed, scales, biases = affine_quantize(w, GROUP_SIZE, BITS, target=target)
    restored = affine_dequantize(packed, scales, biases, GROUP_SIZE, BITS, target=target)
    return w, materialize(restored)


def attention_block(x: jnp.ndarray, target: str):
    kq, kk, kv = jax.random.split(jax.random.PRNGKey(42), 3)
    _, wq = _quantized_weights(kq, N_HEADS * HEAD_DIM, target)
    _, wk = _quantized_weights(kk, N_KV_HEADS * HEAD_DIM, target)
    _, wv = _quantized_weights(kv, N_KV_HEADS * HEAD_DIM, target)

    h = materialize(rms_norm(x, jnp.ones((HIDDEN,), x.dtype), 1e-5, target=target))

    def heads(w, n):
        y = h @ w.T
        return y.reshape(1, SEQ_LEN, n, HEAD_DIM).transpose(0, 2, 1, 3)

    q = rope(heads(wq, N_HEADS), HEAD_DIM, False, 10000.0, 1.0, 0, target=target)
    k = rope(heads(wk, N_KV_HEADS), HEAD_DIM, False, 10000.0, 1.0, 0, target=target)
    v = heads(wv, N_KV_HEADS)

    causal = jnp.triu(jnp.full((SEQ_LEN, SEQ_LEN), -jnp.inf), k=1)
    out = scaled_dot_product_attention(
        q, k, v, HEAD_DIM**-0.5, mask=causal, target=target
    )
    return out


def main() -> None:
    setup_logging()
    x = jax.random.normal(jax.random.PRNGKey(0), (1, SEQ_LEN, HIDDEN))

    with Session(fused_kernels=True):
        fused = attention_block(x, "gpu")
    eager = attention_block(x, "cpu")

    if isinstance(fused, FusedArray):
        print(f"Built {fused!r}")
        fused = fused.eval()
    print("Output shape:", fused.shape)
    print("Max |fused - eager|:", float(jnp.max(jnp.abs(fused - eager))))

    w, restored = _quantized_weights(jax.random.PRNGKey(7), HIDDEN, "cpu")
    err = (restored - w).ravel()
    plt.hist(err, bins=100)
    plt.xlabel("Dequantized - source weights")
    plt.ylabel("Count")
    plt.title(f"{BITS}-bit affine quantization, group size {GROUP_SIZE}")
    plt.tight_layout()
    plt.savefig("quantization_error.png", dpi=150)
    print("Saved plot to quantization_error.png")


if __name__ == "__main__":
    main()
