"""
Benchmarks: eager decomposition vs jitted kernels vs fused nodes.

Scenarios:
1) RMSNorm over a (batch, seq, hidden) activation.
2) RoPE on (batch, heads, seq, head_dim) queries.
3) Grouped-query attention in the single-query decoding shape.
4) 4-bit affine quantization followed by dequantization.

Each scenario runs three ways: the decomposition evaluated op by op
(use_jit=False, cpu target), the jitted kernel (use_jit=True, cpu target)
and a fused node built on a gpu target and evaluated afterwards. Timings are
averaged over RUNS runs and plotted.
"""

from __future__ import annotations

import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Tuple

os.environ.setdefault("JAX_PLATFORMS", "cpu")

import jax
import jax.numpy as jnp
import matplotlib.pyplot as plt

# Ensure we import the in-repo version
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from kernel_weave.core.array import materialize
from kernel_weave.fast import (
    affine_dequantize,
    affine_quantize,
    rms_norm,
    rope,
    scaled_dot_product_attention,
)
from kernel_weave.kernel_weave import Session

RUNS = 20
SAVE_DIR = Path("benchmarks")


def _time_runs(fn: Callable[[], object], runs: int = RUNS) -> float:
    """Run fn `runs` times and return average duration in seconds."""
    # Warm-up
    jax.block_until_ready(materialize(fn()))
    start = time.perf_counter()
    for _ in range(runs):
        jax.block_until_ready(materialize(fn()))
    duration = time.perf_counter() - start
    return duration / runs


def _three_ways(op: Callable[[str], object]) -> Tuple[float, float, float]:
    with Session(use_jit=False):
        eager = _time_runs(lambda: op("cpu"))
    with Session(use_jit=True):
        jitted = _time_runs(lambda: op("cpu"))
    with Session(fused_kernels=True, sdpa_fused_kernels=True):
        fused = _time_runs(lambda: op("gpu"))
    return eager, jitted, fused


def bench_rms_norm() -> Tuple[float, float, float]:
    key = jax.random.PRNGKey(0)
    x = jax.random.normal(key, (8, 256, 1024), dtype=jnp.float32)
    w = jnp.ones((1024,), dtype=jnp.float32)
    return _three_ways(lambda target: rms_norm(x, w, 1e-5, target=target))


def bench_rope() -> Tuple[float, float, float]:
    key = jax.random.PRNGKey(1)
    x = jax.random.normal(key, (4, 16, 256, 128), dtype=jnp.float32)
    return _three_ways(
        lambda target: rope(x, 128, False, 10000.0, 1.0, 32, target=target)
    )


def bench_decode_attention() -> Tuple[float, float, float]:
    kq, kk, kv = jax.random.split(jax.random.PRNGKey(2), 3)
    q = jax.random.normal(kq, (1, 32, 1, 128), dtype=jnp.float16)
    k = jax.random.normal(kk, (1, 8, 2048, 128), dtype=jnp.float16)
    v = jax.random.normal(kv, (1, 8, 2048, 128), dtype=jnp.float16)
    scale = 128**-0.5
    return _three_ways(
        lambda target: scaled_dot_product_attention(q, k, v, scale, target=target)
    )


def bench_quantization() -> Tuple[float, float, float]:
    key = jax.random.PRNGKey(3)
    w = jax.random.normal(key, (1024, 1024), dtype=jnp.float32)

    def round_trip(target: str):
        packed, scales, biases = affine_quantize(w, 64, 4, target=target)
        return affine_dequantize(packed, scales, biases, 64, 4, target=target)

    return _three_ways(round_trip)


@dataclass
class BenchmarkResult:
    label: str
    eager_avg: float
    jit_avg: float
    fused_avg: float

    @property
    def speedup(self) -> float:
        return self.eager_avg / self.fused_avg if self.fused_avg > 0 else 0.0


def plot_results(results: Tuple[BenchmarkResult, ...]) -> None:
    labels = [r.label for r in results]
    eager = [r.eager_avg for r in results]
    jitted = [r.jit_avg for r in results]
    fused = [r.fused_avg for r in results]
    speedups = [r.speedup for r in results]

    x = jnp.arange(len(labels))
    width = 0.25

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    ax0 = axes[0]
    ax0.bar(x - width, eager, width, label="decomposition")
    ax0.bar(x, jitted, width, label="jitted")
    ax0.bar(x + width, fused, width, label="fused node")
    ax0.set_ylabel("Avg runtime (s)")
    ax0.set_xticks(x)
    ax0.set_xticklabels(labels, rotation=10)
    ax0.legend()
    ax0.set_title(f"Average of {RUNS} runs")

    ax1 = axes[1]
    ax1.bar(labels, speedups, color="#4caf50")
    ax1.set_ylabel("Speedup (decomposition / fused)")
    ax1.set_title("Speedup")
    for idx, val in enumerate(speedups):
        ax1.text(idx, val + 0.02, f"{val:.2f}x", ha="center", va="bottom")

    fig.tight_layout()
    SAVE_DIR.mkdir(parents=True, exist_ok=True)
    out_path = SAVE_DIR / "fused_vs_decomposition.png"
    plt.savefig(out_path, dpi=180)
    print(f"Saved plot to {out_path}")


def main() -> None:
    results = (
        BenchmarkResult("rms_norm", *bench_rms_norm()),
        BenchmarkResult("rope", *bench_rope()),
        BenchmarkResult("decode attention", *bench_decode_attention()),
        BenchmarkResult("quantize 4-bit", *bench_quantization()),
    )

    for r in results:
        print(
            f"{r.label:>18}: decomposition {r.eager_avg:.4f}s, "
            f"jitted {r.jit_avg:.4f}s, fused {r.fused_avg:.4f}s, "
            f"speedup {r.speedup:.2f}x"
        )

    plot_results(results)


if __name__ == "__main__":
    main()
