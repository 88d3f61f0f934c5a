"""
Lazy graph nodes produced by fused operators on accelerated targets.

A `FusedArray` records the primitive that produces it, the inputs it was
built from and its declared shape/dtype. Nothing runs until `eval()` or
`materialize()`; sibling outputs of a multi-output primitive share one
evaluation. Values computed under a JAX trace are never cached on the node.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, List, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from jax.core import Tracer

if TYPE_CHECKING:
    from kernel_weave.core.primitive import Primitive

logger = logging.getLogger(__name__)


class _Node:
    __slots__ = ("primitive", "inputs", "outputs", "values")

    def __init__(self, primitive: "Primitive", inputs: Tuple[Any, ...]) -> None:
        self.primitive = primitive
        self.inputs = inputs
        self.outputs: Tuple["FusedArray", ...] = ()
        self.values: Optional[Tuple[jax.Array, ...]] = None

    def evaluate(self) -> Tuple[jax.Array, ...]:
        if self.values is None:
            inputs = [materialize(x) for x in self.inputs]
            logger.debug(
                "Evaluating %s on %s",
                type(self.primitive).__name__,
                self.primitive.target,
            )
            values = tuple(self.primitive.eval_gpu(inputs))
            if len(values) != len(self.outputs):
                raise RuntimeError(
                    f"{type(self.primitive).__name__} produced {len(values)} "
                    f"outputs, expected {len(self.outputs)}"
                )
            if any(isinstance(v, Tracer) for v in values):
                return values
            self.values = values
        return self.values


class FusedArray:
    __slots__ = ("_node", "_index", "_shape", "_dtype")

    def __init__(
        self,
        node: _Node,
        index: int,
        shape: Sequence[int],
        dtype: Any,
    ) -> None:
        self._node = node
        self._index = index
        self._shape = tuple(int(d) for d in shape)
        self._dtype = np.dtype(dtype)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def ndim(self) -> int:
        return len(self._shape)

    @property
    def size(self) -> int:
        return int(np.prod(self._shape, dtype=np.int64))

    @property
    def primitive(self) -> "Primitive":
        return self._node.primitive

    @property
    def inputs(self) -> Tuple[Any, ...]:
        return self._node.inputs

    @property
    def siblings(self) -> Tuple["FusedArray", ...]:
        return tuple(o for o in self._node.outputs if o is not self)

    @property
    def is_evaluated(self) -> bool:
        return self._node.values is not None

    def eval(self) -> jax.Array:
        value = self._node.evaluate()[self._index]
        if value.shape != self._shape:
            raise RuntimeError(
                f"{type(self.primitive).__name__} output {self._index} has shape "
                f"{value.shape}, declared {self._shape}"
            )
        return value

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        return np.asarray(self.eval(), dtype=dtype)

    def vjp(
        self, cotangents: Sequence[Any], argnums: Sequence[int]
    ) -> List[jax.Array]:
        """
        Gradients of this node's primitive for the inputs in ``argnums``,
        given one cotangent per output (this node and its siblings, in
        output order).
        """
        primals = [materialize(x) for x in self.inputs]
        cots = [materialize(c) for c in cotangents]
        outputs = list(self._node.outputs)
        return [materialize(g) for g in self.primitive.vjp(primals, cots, argnums, outputs)]

    def jvp(
        self, tangents: Sequence[Any], argnums: Sequence[int]
    ) -> List[jax.Array]:
        primals = [materialize(x) for x in self.inputs]
        tans = [materialize(t) for t in tangents]
        return [materialize(t) for t in self.primitive.jvp(primals, tans, argnums)]

    def __repr__(self) -> str:
        state = "evaluated" if self.is_evaluated else "pending"
        return (
            f"FusedArray({type(self.primitive).__name__}, shape={self._shape}, "
            f"dtype={self._dtype}, {state})"
        )


def make_arrays(
    shapes: Sequence[Sequence[int]],
    dtypes: Sequence[Any],
    primitive: "Primitive",
    inputs: Sequence[Any],
) -> List[FusedArray]:
    """
    Build sibling output nodes for one primitive application.
    """
    if len(shapes) != len(dtypes):
        raise ValueError(
            f"Got {len(shapes)} output shapes but {len(dtypes)} output dtypes"
        )
    node = _Node(primitive, tuple(inputs))
    outputs = tuple(
        FusedArray(node, i, shape, dtype)
        for i, (shape, dtype) in enumerate(zip(shapes, dtypes))
    )
    node.outputs = outputs
    return list(outputs)


def as_input(x: Any) -> Any:
    """
    Operator inputs: nodes stay lazy, everything else becomes a jax.Array.
    """
    if isinstance(x, FusedArray):
        return x
    return jnp.asarray(x)


def materialize(x: Any) -> jax.Array:
    """
    Concrete ``jax.Array`` for a node, an array or anything array-like.
    """
    if isinstance(x, FusedArray):
        return x.eval()
    return jnp.asarray(x)


def as_dtype(x: Any, dtype: Any) -> Any:
    """
    ``x`` cast to ``dtype``; a node already of that type stays lazy.
    """
    if isinstance(x, FusedArray):
        if x.dtype == np.dtype(dtype):
            return x
        x = x.eval()
    return jnp.asarray(x).astype(dtype)
