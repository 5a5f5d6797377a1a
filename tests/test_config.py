import math

import pytest
import yaml

from starindex.config import AppConfig, ConfigManager, load_settings, require, validate_config


@pytest.mark.parametrize(
    "changes, expected",
    [
        ({"batch_size": 0}, AppConfig(batch_size=1)),
        ({"batch_size": 500}, AppConfig(batch_size=50)),
        ({"max_retries": -3}, AppConfig(max_retries=1)),
        ({"max_retries": 11}, AppConfig(max_retries=10)),
        ({"page_size": 0}, AppConfig(page_size=1)),
        ({"page_size": 1000}, AppConfig(page_size=100)),
        ({"page_size": 12.9}, AppConfig(page_size=12)),
        ({"page_size": "42"}, AppConfig(page_size=42)),
        ({"batch_size": float("inf")}, AppConfig(batch_size=50)),
    ],
)
def test_numeric_values_are_clamped(changes, expected):
    assert validate_config(changes, AppConfig()) == expected


@pytest.mark.parametrize("value", ["many", None, True, [3], {"n": 1}, math.nan, ""])
def test_non_numeric_values_keep_previous(value):
    current = AppConfig(batch_size=7, max_retries=3, page_size=20)
    changes = {"batch_size": value, "max_retries": value, "page_size": value}
    assert validate_config(changes, current) == current


def test_unknown_keys_are_ignored():
    assert validate_config({"colour": "blue"}, AppConfig()) == AppConfig()


def test_every_update_stays_in_range(tmp_path):
    manager = ConfigManager(tmp_path / "indexing.yaml")
    for value in (-100, -1, 0, 1, 3.5, 49, 50, 51, 99, 100, 101, 10**9):
        config = manager.update(batch_size=value, max_retries=value, page_size=value)
        assert 1 <= config.batch_size <= 50
        assert 1 <= config.max_retries <= 10
        assert 1 <= config.page_size <= 100


def test_config_is_persisted_and_reloaded(tmp_path):
    path = tmp_path / "indexing.yaml"
    ConfigManager(path).update({"batch_size": 12, "page_size": 80})

    assert yaml.safe_load(path.read_text()) == {"batch_size": 12, "max_retries": 5, "page_size": 80}
    assert ConfigManager(path).config == AppConfig(batch_size=12, max_retries=5, page_size=80)


def test_stored_values_are_clamped_on_load(tmp_path):
    path = tmp_path / "indexing.yaml"
    path.write_text("batch_size: 900\npage_size: nope\n")
    assert ConfigManager(path).config == AppConfig(batch_size=50)


def test_invalid_stored_config_falls_back_to_defaults(tmp_path):
    path = tmp_path / "indexing.yaml"
    path.write_text("- just\n- a list\n")
    assert ConfigManager(path).config == AppConfig()


def test_manager_without_path_keeps_config_in_memory():
    manager = ConfigManager()
    assert manager.update(max_retries=2).max_retries == 2


def test_load_settings_prefers_environment_over_yaml(tmp_path):
    path = tmp_path / "starindex.yaml"
    path.write_text(
        "github_token: from-yaml\n"
        "settings:\n"
        "  store_backend: chroma\n"
        "  embedding_dimension: 768\n"
    )
    settings = load_settings(path, environ={"STARINDEX_GITHUB_TOKEN": "from-env"})

    assert settings.github_token == "from-env"
    assert settings.store_backend == "chroma"
    assert settings.embedding_dimension == 768
    assert settings.embedding_model == "text-embedding-3-large"


def test_load_settings_defaults_without_file(tmp_path):
    settings = load_settings(tmp_path / "missing.yaml", environ={})
    assert settings.embedding_dimension == 3072
    assert settings.store_backend == "sqlite"
    assert settings.token_budget == 6000


def test_ollama_backend_gets_its_own_model_defaults(tmp_path):
    settings = load_settings(tmp_path / "missing.yaml", environ={"STARINDEX_EMBEDDING_BACKEND": "Ollama"})

    assert settings.embedding_backend == "ollama"
    assert settings.embedding_model == "nomic-embed-text"
    assert settings.embedding_dimension == 768


def test_explicit_model_overrides_backend_defaults(tmp_path):
    path = tmp_path / "starindex.yaml"
    path.write_text("embedding_backend: ollama\nembedding_model: mxbai-embed-large\nembedding_dimension: 1024\n")

    settings = load_settings(path, environ={})

    assert settings.embedding_model == "mxbai-embed-large"
    assert settings.embedding_dimension == 1024


def test_load_settings_rejects_non_mapping_yaml(tmp_path):
    path = tmp_path / "starindex.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(RuntimeError, match="must be a mapping"):
        load_settings(path, environ={})


def test_require_names_the_missing_setting():
    with pytest.raises(RuntimeError, match="STARINDEX_GITHUB_TOKEN"):
        require("  ", "STARINDEX_GITHUB_TOKEN", "github_token")
    assert require(" tok ", "STARINDEX_GITHUB_TOKEN", "github_token") == "tok"
