"""
User-defined compute kernels.

A `CustomKernel` carries caller-written kernel source plus the launch
description (output shapes/dtypes, grid, threadgroup, template arguments).
It has no decomposition: calling it builds fused nodes on a GPU-class
target, and evaluating those nodes hands everything to the kernel compiler
registered with `register_kernel_compiler`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import jax
import numpy as np

from kernel_weave.core.array import FusedArray, as_input, make_arrays
from kernel_weave.core.primitive import Primitive
from kernel_weave.core.target import ExecutionTarget, TargetLike, to_target
from kernel_weave.errors import InvalidArgumentError, UnsupportedOperationError

logger = logging.getLogger(__name__)


class TemplateKind(Enum):
    BOOL = "bool"
    INT = "int"
    DTYPE = "dtype"


def _as_dtype(value: Any) -> Optional[np.dtype]:
    if isinstance(value, np.dtype):
        return value
    if isinstance(value, type):
        # numpy scalar types (np.float32) and jax.numpy ones (jnp.float32)
        if issubclass(value, np.generic):
            return np.dtype(value)
        dtype = getattr(value, "dtype", None)
        if isinstance(dtype, np.dtype):
            return dtype
    return None


@dataclass(frozen=True)
class TemplateArg:
    """
    One template parameter, tagged with its kind.
    """

    name: str
    kind: TemplateKind
    value: Union[bool, int, np.dtype]

    @classmethod
    def classify(cls, name: str, value: Any) -> "TemplateArg":
        # bool before int: bool is an int subclass
        if isinstance(value, (bool, np.bool_)):
            return cls(name, TemplateKind.BOOL, bool(value))
        if isinstance(value, (int, np.integer)):
            return cls(name, TemplateKind.INT, int(value))
        dtype = _as_dtype(value)
        if dtype is not None:
            return cls(name, TemplateKind.DTYPE, dtype)
        raise InvalidArgumentError(
            f"[custom_kernel] Invalid template argument {name}={value!r}. "
            "Must be a dtype, `int` or `bool`."
        )


def _launch_dims(label: str, dims: Sequence[int]) -> Tuple[int, int, int]:
    dims = tuple(dims)
    if len(dims) != 3 or any(
        not isinstance(d, (int, np.integer)) or isinstance(d, bool) or d <= 0
        for d in dims
    ):
        raise InvalidArgumentError(
            f"[custom_kernel] {label} must be three positive integers, got {dims}."
        )
    return tuple(int(d) for d in dims)


@dataclass(frozen=True)
class KernelSpec:
    """
    Everything a kernel compiler needs besides inputs and template values.
    ``outputs`` keeps (name, shape, dtype) in declaration order.
    """

    name: str
    source: str
    outputs: Tuple[Tuple[str, Tuple[int, ...], np.dtype], ...]
    grid: Tuple[int, int, int]
    threadgroup: Tuple[int, int, int]
    ensure_row_contiguous: bool = True

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _, _ in self.outputs)


@dataclass(frozen=True)
class CustomKernelMeta:
    spec: KernelSpec
    template_args: Tuple[TemplateArg, ...]
    input_names: Tuple[str, ...]


KernelCompiler = Callable[
    [KernelSpec, Mapping[str, TemplateArg], Mapping[str, jax.Array]],
    Union[Mapping[str, jax.Array], Sequence[jax.Array]],
]

_kernel_compiler: Optional[KernelCompiler] = None


def register_kernel_compiler(
    compiler: Optional[KernelCompiler],
) -> Optional[KernelCompiler]:
    """
    Install the callable that compiles and launches custom kernels; returns
    the previously registered one. Pass None to unregister.
    """
    global _kernel_compiler
    previous = _kernel_compiler
    _kernel_compiler = compiler
    return previous


class CustomKernelPrimitive(Primitive):
    __slots__ = ()

    def kernel(self, inputs: Sequence[jax.Array]) -> List[jax.Array]:
        meta: CustomKernelMeta = self.meta
        if _kernel_compiler is None:
            raise UnsupportedOperationError(
                f"[custom_kernel] No kernel compiler registered to run "
                f"{meta.spec.name!r}."
            )
        template = {arg.name: arg for arg in meta.template_args}
        named = dict(zip(meta.input_names, inputs))
        logger.debug("Launching custom kernel %s", meta.spec.name)
        outputs = _kernel_compiler(meta.spec, template, named)
        if isinstance(outputs, Mapping):
            return [outputs[name] for name in meta.spec.output_names]
        return list(outputs)

    def _no_decomposition(self, rule: str):
        raise UnsupportedOperationError(
            f"[custom_kernel] {rule} is not available for custom kernel "
            f"{self.meta.spec.name!r}: it has no decomposition."
        )

    def vjp(self, primals, cotangents, argnums, outputs):
        self._no_decomposition("vjp")

    def jvp(self, primals, tangents, argnums):
        self._no_decomposition("jvp")

    def vmap(self, inputs, axes):
        self._no_decomposition("vmap")


class CustomKernel:
    """
    A kernel defined from a source string.

    Parameters
    ----------
    name: str
        Kernel name
    source: str
        Kernel body source text
    output_shapes: Mapping[str, Sequence[int]]
        Output name -> shape
    output_dtypes: Mapping[str, dtype-like]
        Output name -> element type; must name the same outputs
    grid: Sequence[int]
        Three-dimensional launch grid
    threadgroup: Sequence[int]
        Three-dimensional threadgroup size
    ensure_row_contiguous: bool
        Ask the compiler to make inputs row-contiguous before launch
    """

    def __init__(
        self,
        name: str,
        source: str,
        output_shapes: Mapping[str, Sequence[int]],
        output_dtypes: Mapping[str, Any],
        grid: Sequence[int],
        threadgroup: Sequence[int],
        ensure_row_contiguous: bool = True,
    ) -> None:
        if not name:
            raise InvalidArgumentError("[custom_kernel] Kernel name must not be empty.")
        if set(output_shapes) != set(output_dtypes):
            raise InvalidArgumentError(
                "[custom_kernel] output_shapes and output_dtypes must name the same "
                f"outputs, got {sorted(output_shapes)} and {sorted(output_dtypes)}."
            )
        outputs = []
        for out_name, shape in output_shapes.items():
            dtype = _as_dtype(output_dtypes[out_name])
            if dtype is None:
                raise InvalidArgumentError(
                    f"[custom_kernel] Output {out_name!r} has invalid dtype "
                    f"{output_dtypes[out_name]!r}."
                )
            outputs.append((out_name, tuple(int(d) for d in shape), dtype))
        self._spec = KernelSpec(
            name=name,
            source=source,
            outputs=tuple(outputs),
            grid=_launch_dims("grid", grid),
            threadgroup=_launch_dims("threadgroup", threadgroup),
            ensure_row_contiguous=bool(ensure_row_contiguous),
        )
        self._template_args: Dict[str, TemplateArg] = {}

    @property
    def spec(self) -> KernelSpec:
        return self._spec

    @property
    def template_args(self) -> Dict[str, TemplateArg]:
        return dict(self._template_args)

    def template(self, **kwargs: Any) -> "CustomKernel":
        """
        Replace the template arguments. Every value must be a bool, an int
        or a dtype; the previous arguments are kept if any value is invalid.
        """
        args = {name: TemplateArg.classify(name, value) for name, value in kwargs.items()}
        self._template_args = args
        return self

    def __call__(self, target: TargetLike = None, **inputs: Any) -> List[FusedArray]:
        tgt: ExecutionTarget = to_target(target)
        if not tgt.is_gpu:
            raise UnsupportedOperationError(
                f"[custom_kernel] Kernel {self._spec.name!r} can only run on a "
                f"GPU-class target, got {tgt}."
            )
        names = tuple(inputs)
        arrays = [as_input(inputs[n]) for n in names]
        meta = CustomKernelMeta(
            spec=self._spec,
            template_args=tuple(self._template_args.values()),
            input_names=names,
        )
        primitive = CustomKernelPrimitive(tgt, None, meta)
        return make_arrays(
            [shape for _, shape, _ in self._spec.outputs],
            [dtype for _, _, dtype in self._spec.outputs],
            primitive,
            arrays,
        )
