"""
Fused-operator primitives.

A primitive pairs an accelerated kernel with the decomposition that defines
its semantics. Differentiation and batching never look at the kernel: they
run ``jax.vjp`` / ``jax.jvp`` / ``jax.vmap`` over the decomposition, so
every fused operator is differentiable and batchable as long as its
decomposition is. The kernel is wrapped in ``jax.custom_vjp`` and
``custom_vmap`` so ``jax.grad`` and ``jax.vmap`` reach those rules too.
"""

from __future__ import annotations

import logging
from typing import (
    Any,
    Callable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

import jax
import jax.numpy as jnp
import numpy as np
from jax.custom_batching import custom_vmap

from kernel_weave.core.array import FusedArray, make_arrays, materialize
from kernel_weave.core.target import ExecutionTarget
from kernel_weave.errors import UnsupportedOperationError
from kernel_weave.kernel_weave import Config

logger = logging.getLogger(__name__)

Fallback = Callable[[Sequence[jax.Array]], Sequence[jax.Array]]


@runtime_checkable
class Decomposable(Protocol):
    def fallback(self, inputs: Sequence[jax.Array]) -> List[jax.Array]: ...


def _is_float(dtype: Any) -> bool:
    return jnp.issubdtype(dtype, jnp.inexact)


def _zero_tangent(primal: jax.Array) -> Any:
    if _is_float(primal.dtype):
        return jnp.zeros_like(primal)
    return np.zeros(primal.shape, dtype=jax.dtypes.float0)


def _cotangent_like(cotangent: Any, output: jax.Array) -> Any:
    if _is_float(output.dtype):
        return jnp.asarray(cotangent, output.dtype)
    return np.zeros(output.shape, dtype=jax.dtypes.float0)


def _gradient_like(gradient: Any, primal: jax.Array) -> Any:
    if not _is_float(primal.dtype):
        return None
    return jnp.asarray(materialize(gradient), primal.dtype)


def _with_rules(primitive: "Primitive") -> Callable[..., Tuple[jax.Array, ...]]:
    """
    ``primitive.kernel`` as a function of its inputs whose reverse-mode and
    batching rules are ``primitive.vjp`` and ``primitive.vmap``.

    Forward-mode autodiff does not pass through ``jax.custom_vjp``; use
    ``FusedArray.jvp`` or ``Primitive.jvp`` for tangents.
    """

    @custom_vmap
    def batchable(*inputs):
        return tuple(primitive.kernel(list(inputs)))

    @batchable.def_vmap
    def batched(axis_size, in_batched, *inputs):
        axes = [0 if b else None for b in in_batched]
        outputs, _ = primitive.vmap(list(inputs), axes)
        return tuple(outputs), tuple(True for _ in outputs)

    @jax.custom_vjp
    def run(*inputs):
        return batchable(*inputs)

    def run_fwd(*inputs):
        outputs = run(*inputs)
        return outputs, (inputs, outputs)

    def run_bwd(residuals, cotangents):
        inputs, outputs = residuals
        grads = primitive.vjp(
            list(inputs), list(cotangents), range(len(inputs)), list(outputs)
        )
        return tuple(_gradient_like(g, x) for g, x in zip(grads, inputs))

    run.defvjp(run_fwd, run_bwd)
    return run


class Primitive:
    """
    Base class of all fused-operator kinds.

    Parameters
    ----------
    target: ExecutionTarget
        Where nodes built from this primitive evaluate
    fallback: Optional[Fallback]
        Decomposition closure mapping the input list to the output list;
        None for primitives that only exist on the accelerated path
    meta: Any
        Frozen record of the scalar parameters; equality of this record
        is the equivalence relation between primitives of the same kind
    """

    __slots__ = ("_target", "_fallback", "_meta", "_compiled", "_transformable")

    def __init__(
        self,
        target: ExecutionTarget,
        fallback: Optional[Fallback],
        meta: Any,
    ) -> None:
        self._target = target
        self._fallback = fallback
        self._meta = meta
        self._compiled: Optional[Callable[..., Tuple[jax.Array, ...]]] = None
        self._transformable: Optional[Callable[..., Tuple[jax.Array, ...]]] = None

    @property
    def target(self) -> ExecutionTarget:
        return self._target

    @property
    def meta(self) -> Any:
        return self._meta

    @property
    def has_decomposition(self) -> bool:
        return self._fallback is not None

    def fallback(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        if self._fallback is None:
            raise UnsupportedOperationError(
                f"[{self.name}] Primitive has no decomposition."
            )
        return list(self._fallback(list(inputs)))

    @property
    def name(self) -> str:
        return type(self).__name__

    def _as_function(self) -> Callable[..., Tuple[jax.Array, ...]]:
        def fn(*inputs: jax.Array) -> Tuple[jax.Array, ...]:
            return tuple(self.fallback(inputs))

        return fn

    def vjp(
        self,
        primals: Sequence[jax.Array],
        cotangents: Sequence[jax.Array],
        argnums: Sequence[int],
        outputs: Sequence[Any],
    ) -> List[jax.Array]:
        """
        Reverse-mode rule: ``jax.vjp`` over the decomposition, keeping the
        gradients of ``argnums`` in ascending order.
        """
        out, vjp_fn = jax.vjp(self._as_function(), *primals)
        cots = tuple(_cotangent_like(c, o) for c, o in zip(cotangents, out))
        grads = vjp_fn(cots)
        wanted = sorted(argnums)
        return [grads[i] for i in wanted]

    def jvp(
        self,
        primals: Sequence[jax.Array],
        tangents: Sequence[jax.Array],
        argnums: Sequence[int],
    ) -> List[jax.Array]:
        """
        Forward-mode rule: inputs outside ``argnums`` get zero tangents, then
        ``jax.jvp`` runs over the decomposition.
        """
        by_arg = dict(zip(argnums, tangents))
        all_tangents = tuple(
            jnp.asarray(by_arg[i], p.dtype) if i in by_arg else _zero_tangent(p)
            for i, p in enumerate(primals)
        )
        _, jvps = jax.jvp(self._as_function(), tuple(primals), all_tangents)
        return list(jvps)

    def vmap(
        self,
        inputs: Sequence[jax.Array],
        axes: Sequence[Optional[int]],
    ) -> Tuple[List[jax.Array], List[int]]:
        """
        Batching rule: ``jax.vmap`` over the decomposition. An axis of None
        or -1 marks an unbatched input. Outputs are always batched along
        axis 0.
        """
        in_axes = tuple(None if a is None or a == -1 else a for a in axes)
        outputs = jax.vmap(self._as_function(), in_axes=in_axes)(*inputs)
        return list(outputs), [0] * len(outputs)

    def is_equivalent(self, other: "Primitive") -> bool:
        return type(self) is type(other) and self._meta == other._meta

    def kernel(self, inputs: Sequence[jax.Array]) -> Sequence[jax.Array]:
        """
        Accelerated implementation. Kinds override this with their entry
        point in `kernel_weave.core.jitted`; the default compiles the
        decomposition.
        """
        if self._compiled is None:
            self._compiled = jax.jit(self._as_function())
        return self._compiled(*inputs)

    def _kernel_with_rules(self) -> Callable[..., Tuple[jax.Array, ...]]:
        if self._transformable is None:
            self._transformable = _with_rules(self)
        return self._transformable

    def eval_gpu(self, inputs: Sequence[jax.Array]) -> Sequence[jax.Array]:
        device = self._target.device()
        if device is not None:
            inputs = [jax.device_put(x, device) for x in inputs]
        return list(self._kernel_with_rules()(*inputs))

    def eval_cpu(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        if Config().use_jit and self.has_decomposition:
            return list(self._kernel_with_rules()(*inputs))
        return self.fallback(inputs)

    def __repr__(self) -> str:
        return f"{self.name}({self._meta}, target={self._target})"


def apply(
    primitive: Primitive,
    inputs: Sequence[Any],
    shapes: Sequence[Sequence[int]],
    dtypes: Sequence[Any],
    fused: bool,
) -> List[Any]:
    """
    Build fused nodes for ``primitive`` when ``fused`` is set, otherwise
    evaluate its decomposition on the spot.
    """
    if fused:
        logger.debug("Building fused %s node on %s", primitive.name, primitive.target)
        return make_arrays(shapes, dtypes, primitive, inputs)
    logger.debug("Evaluating %s decomposition on %s", primitive.name, primitive.target)
    return primitive.eval_cpu([materialize(x) for x in inputs])


__all__ = ["Decomposable", "FusedArray", "Primitive", "apply"]
