import jax.numpy as jnp
import pytest

from kernel_weave.core.array import FusedArray
from kernel_weave.core.primitive import Decomposable, Primitive, apply
from kernel_weave.core.target import ExecutionTarget
from kernel_weave.errors import UnsupportedOperationError
from kernel_weave.kernel_weave import Config

CPU = ExecutionTarget("cpu")
GPU = ExecutionTarget("gpu")


def _mul(inputs):
    x, y = inputs
    return [x * y]


class Mul(Primitive):
    pass


class Other(Primitive):
    pass


def test_fallback_runs_decomposition():
    prim = Mul(CPU, _mul, meta=None)
    (out,) = prim.fallback([jnp.array(2.0), jnp.array(3.0)])
    assert jnp.allclose(out, 6.0)
    assert prim.has_decomposition
    assert isinstance(prim, Decomposable)


def test_missing_fallback_raises():
    prim = Mul(CPU, None, meta=None)
    with pytest.raises(UnsupportedOperationError, match=r"\[Mul\]"):
        prim.fallback([jnp.ones(2), jnp.ones(2)])


def test_vjp_returns_requested_arguments_in_order():
    prim = Mul(CPU, _mul, meta=None)
    x = jnp.array([1.0, 2.0])
    y = jnp.array([3.0, 4.0])
    g = jnp.array([1.0, 10.0])
    gy, = prim.vjp([x, y], [g], argnums=[1], outputs=[])
    assert jnp.allclose(gy, g * x)

    gx, gy = prim.vjp([x, y], [g], argnums=[1, 0], outputs=[])
    assert jnp.allclose(gx, g * y)
    assert jnp.allclose(gy, g * x)


def test_jvp_zero_fills_missing_tangents():
    prim = Mul(CPU, _mul, meta=None)
    x = jnp.array([1.0, 2.0])
    y = jnp.array([3.0, 4.0])
    (t,) = prim.jvp([x, y], [jnp.ones(2)], argnums=[0])
    assert jnp.allclose(t, y)


def test_vmap_treats_minus_one_as_unbatched():
    prim = Mul(CPU, _mul, meta=None)
    xs = jnp.arange(6.0).reshape(3, 2)
    y = jnp.array([10.0, 100.0])
    outs, axes = prim.vmap([xs, y], [0, -1])
    assert axes == [0]
    assert outs[0].shape == (3, 2)
    assert jnp.allclose(outs[0], xs * y)


def test_vmap_along_other_axis():
    prim = Mul(CPU, _mul, meta=None)
    xs = jnp.arange(6.0).reshape(2, 3)
    ys = jnp.ones((3, 2))
    outs, _ = prim.vmap([xs, ys], [1, 0])
    assert outs[0].shape == (3, 2)
    assert jnp.allclose(outs[0], xs.T)


def test_equivalence_is_kind_and_meta():
    a = Mul(CPU, _mul, meta=(1, 2))
    b = Mul(GPU, None, meta=(1, 2))
    c = Mul(CPU, _mul, meta=(1, 3))
    d = Other(CPU, _mul, meta=(1, 2))
    assert a.is_equivalent(b)
    assert not a.is_equivalent(c)
    assert not a.is_equivalent(d)


def test_eval_cpu_uses_kernel_only_with_jit(monkeypatch):
    prim = Mul(CPU, _mul, meta=None)
    calls = []
    monkeypatch.setattr(
        Mul, "kernel", lambda self, inputs: calls.append(1) or _mul(inputs)
    )
    inputs = [jnp.array(2.0), jnp.array(5.0)]

    Config().set_use_jit(False)
    assert jnp.allclose(prim.eval_cpu(inputs)[0], 10.0)
    assert calls == []

    Config().set_use_jit(True)
    assert jnp.allclose(prim.eval_cpu(inputs)[0], 10.0)
    assert calls == [1]


def test_default_kernel_compiles_decomposition():
    prim = Mul(GPU, _mul, meta=None)
    (out,) = prim.eval_gpu([jnp.array([2.0]), jnp.array([4.0])])
    assert jnp.allclose(out, jnp.array([8.0]))


def test_apply_builds_nodes_or_evaluates():
    prim = Mul(GPU, _mul, meta=None)
    inputs = [jnp.array([2.0]), jnp.array([4.0])]

    (node,) = apply(prim, inputs, [(1,)], [jnp.float64], fused=True)
    assert isinstance(node, FusedArray)
    assert node.primitive is prim
    assert jnp.allclose(node.eval(), jnp.array([8.0]))

    (value,) = apply(prim, inputs, [(1,)], [jnp.float64], fused=False)
    assert not isinstance(value, FusedArray)
    assert jnp.allclose(value, jnp.array([8.0]))


def test_repr_names_kind_and_target():
    assert repr(Mul(GPU, _mul, meta=None)) == "Mul(None, target=gpu:0)"
