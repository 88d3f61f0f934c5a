"""
Exception types raised while building fused-operator graphs.

Both are raised synchronously at graph-construction time (or when a node is
evaluated without the collaborator it needs); nothing is retried internally.
"""


class InvalidArgumentError(ValueError):
    """
    Shape, rank, dtype or parameter-domain violation.

    Messages start with the failing operator in brackets, e.g.
    ``[rms_norm] weight must have 1 dimension but has 2 dimensions.``
    """


class UnsupportedOperationError(NotImplementedError):
    """
    A requested combination the library does not provide, such as running a
    custom kernel on a non-GPU target or differentiating a primitive that has
    no decomposition.
    """
