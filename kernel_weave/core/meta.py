"""
Scalar-parameter records for fused operators.

Each operator kind keeps its scalar parameters in a frozen dataclass. Two
primitives of the same kind are equivalent exactly when these records compare
equal, and the records are hashable so they can be passed as static
arguments to jitted entry points.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class NormMeta:
    eps: float


@dataclass(frozen=True)
class RopeMeta:
    dims: int
    traditional: bool
    base: float
    scale: float
    offset: int
    forward: bool = True

    def inverted(self) -> "RopeMeta":
        return RopeMeta(
            dims=self.dims,
            traditional=self.traditional,
            base=self.base,
            scale=self.scale,
            offset=self.offset,
            forward=not self.forward,
        )


@dataclass(frozen=True)
class AttentionMeta:
    scale: float
    needs_mask: bool


@dataclass(frozen=True)
class QuantMeta:
    group_size: int
    bits: int
    dequantize: bool = False

    @property
    def elements_per_word(self) -> int:
        return 32 // self.bits


def make_quant_meta(group_size: int, bits: int, dequantize: bool = False) -> QuantMeta:
    return QuantMeta(group_size=int(group_size), bits=int(bits), dequantize=dequantize)
