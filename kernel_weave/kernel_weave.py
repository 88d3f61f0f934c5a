from typing import Any, Optional


class Config:
    _instance = None

    def __new__(cls, *args: Any, **kwargs: Any) -> "Config":
        if cls._instance is None:
            cls._instance = super(Config, cls).__new__(cls, *args, **kwargs)
        return cls._instance

    def __init__(self) -> None:
        if not hasattr(self, "_initialized"):
            self._initialized = True  # Prevents reinitialization
            self._default_target: Optional[str] = None
            self._fused_kernels = True
            self._sdpa_fused_kernels = False
            self._use_jit = False

    @property
    def default_target(self) -> Optional[str]:
        """
        Platform name used when an operator is called without a target.
        None defers to ``jax.default_backend()``.
        """
        return self._default_target

    def set_default_target(self, target: Optional[str]) -> None:
        """
        Parameters
        ----------
        target: Optional[str]
            Platform name such as ``"cpu"`` or ``"gpu:1"``, or None to
            follow the JAX default backend
        """
        self._default_target = target

    @property
    def fused_kernels(self) -> bool:
        return self._fused_kernels

    def set_fused_kernels(self, enabled: bool) -> None:
        self._fused_kernels = bool(enabled)

    @property
    def sdpa_fused_kernels(self) -> bool:
        """
        Attention keeps its fused path off until the kernels are tuned;
        eligibility is still computed so the gate can be flipped here.
        """
        return self._sdpa_fused_kernels

    def set_sdpa_fused_kernels(self, enabled: bool) -> None:
        self._sdpa_fused_kernels = bool(enabled)

    @property
    def use_jit(self) -> bool:
        return self._use_jit

    def set_use_jit(self, use_jit: bool) -> None:
        self._use_jit = bool(use_jit)


class Session:
    """
    Lightweight context manager to scope Config settings per run.

    Example:
        with Session(default_target="gpu", sdpa_fused_kernels=True):
            ...
    Restores previous Config values on exit so tests/runs stay isolated.
    """

    _UNSET = object()

    def __init__(
        self,
        *,
        default_target: Any = _UNSET,
        fused_kernels: bool | None = None,
        sdpa_fused_kernels: bool | None = None,
        use_jit: bool | None = None,
    ) -> None:
        cfg = Config()
        self._prev = {
            "default_target": cfg.default_target,
            "fused_kernels": cfg.fused_kernels,
            "sdpa_fused_kernels": cfg.sdpa_fused_kernels,
            "use_jit": cfg.use_jit,
        }
        self._default_target = default_target
        self._fused_kernels = fused_kernels
        self._sdpa_fused_kernels = sdpa_fused_kernels
        self._use_jit = use_jit
        self._cfg = cfg

    def __enter__(self) -> "Config":
        # None is a meaningful target ("follow JAX"), so a sentinel marks unset
        if self._default_target is not Session._UNSET:
            self._cfg.set_default_target(self._default_target)
        if self._fused_kernels is not None:
            self._cfg.set_fused_kernels(self._fused_kernels)
        if self._sdpa_fused_kernels is not None:
            self._cfg.set_sdpa_fused_kernels(self._sdpa_fused_kernels)
        if self._use_jit is not None:
            self._cfg.set_use_jit(self._use_jit)
        return self._cfg

    def __exit__(self, exc_type, exc, tb) -> None:
        self._cfg.set_default_target(self._prev["default_target"])
        self._cfg.set_fused_kernels(self._prev["fused_kernels"])
        self._cfg.set_sdpa_fused_kernels(self._prev["sdpa_fused_kernels"])
        self._cfg.set_use_jit(self._prev["use_jit"])
