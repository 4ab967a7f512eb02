"""Unit tests for the provider catalog and embedding configuration loading."""
import pytest

from deskchat.errors import ConfigError
from deskchat.providers import (
    EmbeddingConfig,
    complete_config,
    get_available_embedding_models,
    load_embedding_configs,
    load_provider_catalog,
)


def test_packaged_catalog_lists_known_providers():
    catalog = load_provider_catalog()

    assert {"openai", "zhipu", "siliconflow", "ollama"} <= set(catalog)
    assert catalog["openai"].models["text-embedding-3-small"] == 1536
    assert catalog["zhipu"].models["embedding-2"] == 1024


def test_available_models():
    models = get_available_embedding_models()
    assert ("openai", "text-embedding-3-large", 3072) in models
    assert ("siliconflow", "BAAI/bge-m3", 1024) in models


def test_complete_config_fills_from_catalog():
    cfg = complete_config(EmbeddingConfig(id="e", provider="openai", model="text-embedding-3-small"))

    assert cfg.dim == 1536
    assert cfg.adapter == "openai"
    assert cfg.base_url == "https://api.openai.com/v1"
    assert cfg.max_batch_size == 256


def test_complete_config_custom_provider():
    cfg = complete_config(
        EmbeddingConfig(
            id="local", provider="my-server", model="m", base_url="http://localhost:9000/v1", adapter="openai", dim=384
        )
    )
    assert cfg.dim == 384
    assert cfg.max_batch_size == 16


def test_complete_config_errors():
    with pytest.raises(ConfigError):
        complete_config(EmbeddingConfig(id="e", provider="nope", model="m"))
    with pytest.raises(ConfigError):
        complete_config(EmbeddingConfig(id="e", provider="openai", model="unknown-model"))


def test_load_embedding_configs(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_EMBED_KEY", "from-env")
    path = tmp_path / "embedding.yaml"
    path.write_text(
        "embeddings:\n"
        "  - id: small\n"
        "    provider: openai\n"
        "    model: text-embedding-3-small\n"
        "    api_key_env: TEST_EMBED_KEY\n"
        "  - id: local\n"
        "    provider: ollama\n"
        "    model: nomic-embed-text\n",
        encoding="utf-8",
    )

    configs = load_embedding_configs(path)

    assert set(configs) == {"small", "local"}
    assert configs["small"].resolve_api_key() == "from-env"
    assert configs["local"].dim == 768
    assert configs["local"].resolve_api_key() is None


def test_missing_embedding_config_file(tmp_path):
    assert load_embedding_configs(tmp_path / "absent.yaml") == {}


def test_duplicate_ids_rejected(tmp_path):
    path = tmp_path / "embedding.yaml"
    path.write_text(
        "embeddings:\n"
        "  - {id: a, provider: openai, model: text-embedding-3-small}\n"
        "  - {id: a, provider: openai, model: text-embedding-3-large}\n",
        encoding="utf-8",
    )

    with pytest.raises(ConfigError):
        load_embedding_configs(path)


def test_invalid_yaml(tmp_path):
    path = tmp_path / "embedding.yaml"
    path.write_text("embeddings: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_embedding_configs(path)
