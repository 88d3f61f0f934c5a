import sys
from pathlib import Path

import jax
import pytest

# Ensure local package is imported before any installed version
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# References are computed in double precision
jax.config.update("jax_enable_x64", True)

from kernel_weave.kernel_weave import Config  # noqa: E402


@pytest.fixture(autouse=True)
def restore_config_flags():
    cfg = Config()
    prev_target = cfg.default_target
    prev_fused = cfg.fused_kernels
    prev_sdpa = cfg.sdpa_fused_kernels
    prev_jit = cfg.use_jit
    yield
    cfg.set_default_target(prev_target)
    cfg.set_fused_kernels(prev_fused)
    cfg.set_sdpa_fused_kernels(prev_sdpa)
    cfg.set_use_jit(prev_jit)
