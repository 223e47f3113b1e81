from blend_rec import config


def test_env_overrides_and_validation(monkeypatch, reload_config):
    monkeypatch.setenv("BLEND_DEFAULT_LIMIT", "20")
    monkeypatch.setenv("BLEND_DIVERSITY_FACTOR", "1.5")  # should clamp to max
    monkeypatch.setenv("BLEND_EMBEDDING_DIM", "2")  # min clamp

    cfg = reload_config()

    assert cfg.DEFAULT_LIMIT == 20
    assert cfg.DEFAULT_DIVERSITY_FACTOR == 1.0
    assert cfg.EMBEDDING_DIM == 8


def test_db_path_respects_env(monkeypatch, tmp_path, reload_config):
    db_path = tmp_path / "custom.db"
    monkeypatch.setenv("BLEND_DB", str(db_path))

    cfg = reload_config()

    assert cfg.DB_PATH == db_path


def test_invalid_env_values_fall_back_to_defaults(monkeypatch, reload_config):
    monkeypatch.setenv("BLEND_DEFAULT_LIMIT", "many")
    monkeypatch.setenv("BLEND_HTTP_TIMEOUT", "slow")
    monkeypatch.setenv("BLEND_DIVERSITY_FACTOR", "lots")

    cfg = reload_config()

    assert cfg.DEFAULT_LIMIT == 12
    assert cfg.HTTP_TIMEOUT == 30.0
    assert cfg.DEFAULT_DIVERSITY_FACTOR == 0.3


def test_default_limit_never_exceeds_max_limit(monkeypatch, reload_config):
    monkeypatch.setenv("BLEND_MAX_LIMIT", "10")

    cfg = reload_config()

    assert cfg.MAX_LIMIT == 10
    assert cfg.DEFAULT_LIMIT == 10


def test_scoring_constants():
    assert config.MAX_BOOST == 0.25
    assert config.NEUTRAL_SIMILARITY == 0.5
    assert config.DEFAULT_STRATEGY in config.STRATEGIES
    for components in config.COMPOSITE_STRATEGIES.values():
        assert abs(sum(components.values()) - 1.0) < 1e-9
        assert all(name in config.STRATEGIES for name in components)
