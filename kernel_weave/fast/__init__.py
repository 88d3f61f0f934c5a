"""
Fused operators: normalization, rotary encoding, attention, affine
quantization and user-defined kernels.
"""

from kernel_weave.fast.attention import (
    ScaledDotProductAttention,
    scaled_dot_product_attention,
)
from kernel_weave.fast.custom_kernel import (
    CustomKernel,
    KernelSpec,
    TemplateArg,
    TemplateKind,
    register_kernel_compiler,
)
from kernel_weave.fast.normalization import (
    LayerNorm,
    LayerNormVJP,
    RMSNorm,
    RMSNormVJP,
    layer_norm,
    rms_norm,
)
from kernel_weave.fast.quantization import (
    AffineQuantize,
    affine_dequantize,
    affine_quantize,
    affine_quantize_with,
    pack_codes,
    unpack_codes,
)
from kernel_weave.fast.rope import RoPE, rope

__all__ = [
    "AffineQuantize",
    "CustomKernel",
    "KernelSpec",
    "LayerNorm",
    "LayerNormVJP",
    "RMSNorm",
    "RMSNormVJP",
    "RoPE",
    "ScaledDotProductAttention",
    "TemplateArg",
    "TemplateKind",
    "affine_dequantize",
    "affine_quantize",
    "affine_quantize_with",
    "layer_norm",
    "pack_codes",
    "register_kernel_compiler",
    "rms_norm",
    "rope",
    "scaled_dot_product_attention",
    "unpack_codes",
]
