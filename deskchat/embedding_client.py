"""Async embedding API client with per-provider response adapters."""
from typing import Any, Callable, Dict, List, Optional, Type

import httpx
import structlog

from deskchat import config
from deskchat.errors import (
    AuthError,
    ConfigError,
    DimensionMismatch,
    EmbeddingError,
    NetworkError,
    RateLimited,
)
from deskchat.providers import EmbeddingConfig, complete_config, load_embedding_configs

logger = structlog.get_logger()


class ResponseAdapter:
    """Maps one provider family's request/response shape to float vectors."""

    path = "/embeddings"

    def endpoint(self, base_url: str) -> str:
        return base_url.rstrip("/") + self.path

    def build_payload(self, model: str, texts: List[str]) -> Dict[str, Any]:
        return {"model": model, "input": texts}

    def parse(self, raw: Dict[str, Any]) -> List[List[float]]:
        raise NotImplementedError


class OpenAIAdapter(ResponseAdapter):
    """OpenAI-compatible: {"data": [{"index": i, "embedding": [...]}, ...]}."""

    def build_payload(self, model: str, texts: List[str]) -> Dict[str, Any]:
        return {"model": model, "input": texts, "encoding_format": "float"}

    def parse(self, raw: Dict[str, Any]) -> List[List[float]]:
        data = raw.get("data") if isinstance(raw, dict) else None
        if not isinstance(data, list):
            raise EmbeddingError("Invalid response format: missing 'data' list")

        # Items carry their input position; providers don't promise ordering
        items = sorted(data, key=lambda item: item.get("index", 0))
        return [_float_list(item.get("embedding")) for item in items]


class ZhipuAdapter(OpenAIAdapter):
    """Zhipu returns the OpenAI shape but rejects encoding_format."""

    def build_payload(self, model: str, texts: List[str]) -> Dict[str, Any]:
        return {"model": model, "input": texts}


class SiliconFlowAdapter(OpenAIAdapter):
    pass


class OllamaAdapter(ResponseAdapter):
    """Ollama /api/embeddings: one prompt in, {"embedding": [...]} out."""

    path = "/api/embeddings"

    def build_payload(self, model: str, texts: List[str]) -> Dict[str, Any]:
        if len(texts) != 1:
            raise EmbeddingError("Ollama embeddings accept one prompt per request")
        return {"model": model, "prompt": texts[0]}

    def parse(self, raw: Dict[str, Any]) -> List[List[float]]:
        embedding = raw.get("embedding") if isinstance(raw, dict) else None
        return [_float_list(embedding)]


ADAPTERS: Dict[str, Type[ResponseAdapter]] = {
    "openai": OpenAIAdapter,
    "zhipu": ZhipuAdapter,
    "siliconflow": SiliconFlowAdapter,
    "ollama": OllamaAdapter,
}


def get_adapter(name: str) -> ResponseAdapter:
    """Instantiate the adapter registered under name."""
    try:
        return ADAPTERS[name]()
    except KeyError:
        raise ConfigError(f"Unknown embedding adapter: {name}") from None


def _float_list(value: Any) -> List[float]:
    if not isinstance(value, list) or not value:
        raise EmbeddingError("Invalid response format: missing embedding vector")
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"Non-numeric value in embedding: {e}") from e


class EmbeddingClient:
    """Async client for a configured embedding provider."""

    def __init__(
        self,
        embedding_config: EmbeddingConfig,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the embedding client.

        Args:
            embedding_config: Provider/model/key to use; missing fields are
                completed from the provider catalog
            timeout: Request timeout in seconds (default from config)
            transport: Optional httpx transport (tests use MockTransport)
        """
        if embedding_config.dim is None or embedding_config.adapter is None:
            embedding_config = complete_config(embedding_config)

        self.config = embedding_config
        self.adapter = get_adapter(embedding_config.adapter)
        self.timeout = timeout or config.EMBEDDING_TIMEOUT
        self.transport = transport

    @property
    def dim(self) -> int:
        return self.config.dim

    @property
    def max_batch_size(self) -> int:
        return self.config.max_batch_size or 1

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed texts, batching up to the provider's limit.

        A failed batch is retried one text at a time. Auth, rate-limit and
        dimension errors are not retried.

        Args:
            texts: Texts to embed

        Returns:
            One vector of length self.dim per input text, in input order

        Raises:
            EmbeddingError: Or one of its subclasses
        """
        if not texts:
            return []

        vectors: List[List[float]] = []
        for i in range(0, len(texts), self.max_batch_size):
            batch = texts[i : i + self.max_batch_size]
            try:
                vectors.extend(await self._request(batch))
            except (AuthError, RateLimited, DimensionMismatch):
                raise
            except EmbeddingError as e:
                if len(batch) == 1:
                    raise
                logger.warning(
                    "embedding_batch_failed_falling_back",
                    provider=self.config.provider,
                    batch_size=len(batch),
                    error=str(e),
                )
                for text in batch:
                    vectors.extend(await self._request([text]))

            logger.debug(
                "embeddings_batch_generated",
                batch_size=len(batch),
                total_so_far=len(vectors),
            )

        return vectors

    async def embed(self, text: str) -> List[float]:
        """Embed a single text (used for queries)."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def _request(self, texts: List[str]) -> List[List[float]]:
        # Providers reject empty strings
        safe_texts = [t if t.strip() else " " for t in texts]
        url = self.adapter.endpoint(self.config.base_url)
        payload = self.adapter.build_payload(self.config.model, safe_texts)

        headers = {"Content-Type": "application/json"}
        api_key = self.config.resolve_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                logger.debug(
                    "embedding_request",
                    provider=self.config.provider,
                    model=self.config.model,
                    text_count=len(texts),
                )
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("embedding_timeout", provider=self.config.provider, error=str(e))
            raise NetworkError(f"Embedding request timed out: {e}") from e
        except httpx.TransportError as e:
            logger.error("embedding_connection_error", provider=self.config.provider, error=str(e))
            raise NetworkError(f"Embedding request failed: {e}") from e

        self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as e:
            raise EmbeddingError(f"Failed to parse embedding response: {e}") from e

        vectors = self.adapter.parse(data)

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} embeddings for {len(texts)} texts"
            )
        for vector in vectors:
            if len(vector) != self.dim:
                raise DimensionMismatch(expected=self.dim, actual=len(vector))

        logger.debug(
            "embedding_response",
            provider=self.config.provider,
            count=len(vectors),
            dimension=self.dim,
        )
        return vectors

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = response.text[:200]
        logger.error(
            "embedding_http_error",
            provider=self.config.provider,
            status_code=status,
            detail=detail,
        )

        if status in (401, 403):
            raise AuthError(f"Embedding provider rejected credentials ({status}): {detail}")
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after is not None else None
            except ValueError:
                retry_after = None
            raise RateLimited(f"Embedding provider rate limit: {detail}", retry_after=retry_after)
        if status >= 500:
            raise NetworkError(f"Embedding provider error ({status}): {detail}")
        raise EmbeddingError(f"Embedding API error ({status}): {detail}")


# Clients keyed by embedding config id
_clients: Dict[str, EmbeddingClient] = {}


def get_embedding_client(config_ref: str) -> EmbeddingClient:
    """Resolve an embedding_config_ref to a (cached) client.

    Raises:
        ConfigError: If no embedding config has that id
    """
    if config_ref not in _clients:
        configs = load_embedding_configs()
        if config_ref not in configs:
            raise ConfigError(f"No embedding config with id '{config_ref}'")
        _clients[config_ref] = EmbeddingClient(configs[config_ref])
    return _clients[config_ref]


EmbedderResolver = Callable[[str], EmbeddingClient]
