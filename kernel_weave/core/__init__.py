"""
Graph-construction core: execution targets, lazy fused nodes, the primitive
base class and the jitted accelerated entry points.
"""

from kernel_weave.core import array, jitted, meta, policy, primitive, target

__all__ = ["array", "jitted", "meta", "policy", "primitive", "target"]
