from kernel_weave.kernel_weave import Config, Session


def test_config_is_singleton():
    assert Config() is Config()


def test_config_defaults_keep_sdpa_fused_path_off():
    cfg = Config()
    assert cfg.sdpa_fused_kernels is False


def test_session_sets_and_restores_flags():
    cfg = Config()
    before_target = cfg.default_target
    before_fused = cfg.fused_kernels
    before_sdpa = cfg.sdpa_fused_kernels
    before_use_jit = cfg.use_jit

    with Session(
        default_target="gpu",
        fused_kernels=False,
        sdpa_fused_kernels=True,
        use_jit=True,
    ) as c:
        assert c.default_target == "gpu"
        assert c.fused_kernels is False
        assert c.sdpa_fused_kernels is True
        assert c.use_jit is True

    assert cfg.default_target == before_target
    assert cfg.fused_kernels == before_fused
    assert cfg.sdpa_fused_kernels == before_sdpa
    assert cfg.use_jit == before_use_jit


def test_session_can_override_subset_and_restore():
    cfg = Config()
    cfg.set_default_target("cpu")
    cfg.set_fused_kernels(True)
    cfg.set_use_jit(False)

    with Session(use_jit=True) as c:
        assert c.use_jit is True
        # unspecified flags remain unchanged
        assert c.default_target == "cpu"
        assert c.fused_kernels is True

    assert cfg.use_jit is False
    assert cfg.default_target == "cpu"


def test_session_can_reset_target_to_none():
    cfg = Config()
    cfg.set_default_target("gpu")
    with Session(default_target=None) as c:
        assert c.default_target is None
    assert cfg.default_target == "gpu"


def test_nested_sessions_restore_state():
    cfg = Config()
    cfg.set_default_target("cpu")
    cfg.set_fused_kernels(True)
    cfg.set_sdpa_fused_kernels(False)

    with Session(default_target="gpu", fused_kernels=False) as s1:
        assert s1.default_target == "gpu"
        with Session(sdpa_fused_kernels=True, default_target="cuda:1") as s2:
            assert s2.sdpa_fused_kernels is True
            assert s2.default_target == "cuda:1"
            assert s2.fused_kernels is False
        # after inner session, outer session settings remain
        assert s1.default_target == "gpu"
        assert s1.sdpa_fused_kernels is False
        assert s1.fused_kernels is False

    assert cfg.default_target == "cpu"
    assert cfg.fused_kernels is True
    assert cfg.sdpa_fused_kernels is False
