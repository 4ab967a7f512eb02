"""Embedding provider catalog and user embedding configurations.

The catalog (providers.yaml) describes what each provider family looks like:
endpoint, adapter, batch limit and the known models with their dimensions.
User configurations (embedding.yaml) pick a provider/model and supply the key:

    embeddings:
      - id: openai-small
        provider: openai
        model: text-embedding-3-small
        api_key_env: OPENAI_API_KEY
"""
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from deskchat import config
from deskchat.errors import ConfigError

logger = structlog.get_logger()


class ProviderSpec(BaseModel):
    """One provider family from the catalog."""

    base_url: str
    adapter: str
    max_batch_size: int = Field(default=16, ge=1)
    models: Dict[str, int] = Field(default_factory=dict)


class EmbeddingConfig(BaseModel):
    """A concrete embedding capability a knowledge base can reference."""

    id: str
    provider: str
    model: str
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None
    adapter: Optional[str] = None
    dim: Optional[int] = Field(default=None, gt=0)
    max_batch_size: Optional[int] = Field(default=None, ge=1)

    def resolve_api_key(self) -> Optional[str]:
        """Return the literal key, or read it from the named env variable."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.getenv(self.api_key_env)
        return None


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return data


_catalog_cache: Dict[Path, Dict[str, ProviderSpec]] = {}


def load_provider_catalog(path: Path = None) -> Dict[str, ProviderSpec]:
    """Load the provider catalog, cached per path.

    Args:
        path: Catalog YAML file (default from config.PROVIDERS_PATH)

    Returns:
        Mapping of provider id to ProviderSpec

    Raises:
        ConfigError: If the file is missing or malformed
    """
    path = Path(path or config.PROVIDERS_PATH)
    if path in _catalog_cache:
        return _catalog_cache[path]

    if not path.exists():
        raise ConfigError(f"Provider catalog not found: {path}")

    raw = _read_yaml(path).get("providers") or {}
    try:
        catalog = {name: ProviderSpec(**spec) for name, spec in raw.items()}
    except (TypeError, ValidationError) as e:
        raise ConfigError(f"Invalid provider catalog {path}: {e}") from e

    _catalog_cache[path] = catalog
    logger.info("provider_catalog_loaded", path=str(path), providers=sorted(catalog))
    return catalog


def complete_config(
    embedding_config: EmbeddingConfig,
    catalog: Optional[Dict[str, ProviderSpec]] = None,
) -> EmbeddingConfig:
    """Fill base_url, adapter, dim and batch size from the catalog.

    Raises:
        ConfigError: If the provider is unknown or the dimension can't be found
    """
    catalog = catalog if catalog is not None else load_provider_catalog()
    spec = catalog.get(embedding_config.provider)

    if spec is None and (embedding_config.base_url is None or embedding_config.adapter is None):
        raise ConfigError(
            f"Unknown provider '{embedding_config.provider}' for embedding config "
            f"'{embedding_config.id}' (set base_url and adapter explicitly)"
        )

    dim = embedding_config.dim
    if dim is None and spec is not None:
        dim = spec.models.get(embedding_config.model)
    if dim is None:
        raise ConfigError(
            f"Unknown dimension for model '{embedding_config.model}' "
            f"in embedding config '{embedding_config.id}'; set dim explicitly"
        )

    if spec is None:
        spec = ProviderSpec(base_url=embedding_config.base_url, adapter=embedding_config.adapter)

    return embedding_config.model_copy(
        update={
            "base_url": embedding_config.base_url or spec.base_url,
            "adapter": embedding_config.adapter or spec.adapter,
            "dim": dim,
            "max_batch_size": embedding_config.max_batch_size or spec.max_batch_size,
        }
    )


def load_embedding_configs(
    path: Path = None,
    catalog: Optional[Dict[str, ProviderSpec]] = None,
) -> Dict[str, EmbeddingConfig]:
    """Load the user's embedding configurations.

    Args:
        path: YAML file (default from config.EMBEDDING_CONFIG_PATH)
        catalog: Provider catalog (loaded if not given)

    Returns:
        Mapping of config id to a fully populated EmbeddingConfig. Empty if
        the file doesn't exist.

    Raises:
        ConfigError: On malformed entries or duplicate ids
    """
    path = Path(path or config.EMBEDDING_CONFIG_PATH)
    if not path.exists():
        logger.warning("embedding_config_missing", path=str(path))
        return {}

    entries = _read_yaml(path).get("embeddings") or []
    configs: Dict[str, EmbeddingConfig] = {}

    for entry in entries:
        try:
            parsed = EmbeddingConfig(**entry)
        except (TypeError, ValidationError) as e:
            raise ConfigError(f"Invalid embedding config in {path}: {e}") from e

        if parsed.id in configs:
            raise ConfigError(f"Duplicate embedding config id '{parsed.id}' in {path}")

        configs[parsed.id] = complete_config(parsed, catalog)

    logger.info("embedding_configs_loaded", path=str(path), count=len(configs))
    return configs


def get_available_embedding_models(
    catalog: Optional[Dict[str, ProviderSpec]] = None,
) -> List[Tuple[str, str, int]]:
    """List (provider, model, dim) for every model in the catalog."""
    catalog = catalog if catalog is not None else load_provider_catalog()
    return [
        (provider, model, dim)
        for provider, spec in catalog.items()
        for model, dim in spec.models.items()
    ]
