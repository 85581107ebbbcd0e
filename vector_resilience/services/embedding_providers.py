"""
Embedding providers.
One implementation per provider behind a common interface; provider
specific failures are normalized to EmbeddingProviderError so the error
classifier sees a uniform status code and Retry-After hint.
"""
import hashlib
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np
import openai

from vector_resilience.core.common import get_service_logger
from vector_resilience.core.config import Settings, settings as default_settings
from vector_resilience.core.exceptions import (
    ConfigurationError,
    EmbeddingProviderError,
    ProviderResponseError,
    ProviderTimeoutError,
)

TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)
MAX_TEXT_CHARS = 8000


class EmbeddingProvider(ABC):
    """Generates fixed-dimension embeddings for batches of texts."""

    name: str = "embedding_provider"

    def __init__(self, dimension: int, max_batch_size: int):
        self._dimension = dimension
        self._max_batch_size = max_batch_size
        self.logger = get_service_logger(f"{self.name}_provider")

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def max_batch_size(self) -> int:
        """Largest batch accepted by one call; callers chunk above this."""
        return self._max_batch_size

    @abstractmethod
    def generate_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        """
        One embedding per input text, in order.

        Raises:
            EmbeddingProviderError: the provider rejected or failed the request
        """

    @abstractmethod
    def is_available(self) -> bool:
        """True when the provider is configured well enough to be called."""

    def _check_response(self, texts: Sequence[str], embeddings: List[List[float]]) -> List[List[float]]:
        if len(embeddings) != len(texts):
            raise ProviderResponseError(
                self.name,
                f"Embedding count mismatch: requested {len(texts)}, received {len(embeddings)}"
            )
        for embedding in embeddings:
            if len(embedding) != self._dimension:
                raise ProviderResponseError(
                    self.name,
                    f"Embedding dimension mismatch: expected {self._dimension}, got {len(embedding)}"
                )
        return embeddings


class _OpenAICompatibleProvider(EmbeddingProvider):
    """Shared request and error mapping for the openai client family."""

    def __init__(self, client, model: str, dimension: int, max_batch_size: int, timeout: float):
        super().__init__(dimension, max_batch_size)
        self.client = client
        self.model = model
        self.timeout = timeout

    def generate_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        if len(texts) > self.max_batch_size:
            raise EmbeddingProviderError(
                self.name,
                f"Batch of {len(texts)} exceeds provider maximum of {self.max_batch_size}",
                provider_status=400
            )

        batch = []
        for text in texts:
            if len(text) > MAX_TEXT_CHARS:
                self.logger.warning("text_too_long_truncating", length=len(text), limit=MAX_TEXT_CHARS)
                text = text[:MAX_TEXT_CHARS]
            batch.append(text)

        try:
            response = self.client.embeddings.create(model=self.model, input=batch, timeout=self.timeout)
        except openai.APIError as e:
            raise self._map_error(e) from e

        embeddings = [item.embedding for item in sorted(response.data, key=lambda item: item.index)]
        self.logger.debug("embeddings_generated", model=self.model, count=len(embeddings))
        return self._check_response(texts, embeddings)

    def _map_error(self, error: openai.APIError) -> EmbeddingProviderError:
        if isinstance(error, openai.APITimeoutError):
            return ProviderTimeoutError(self.name, self.timeout)
        if isinstance(error, openai.APIConnectionError):
            return EmbeddingProviderError(self.name, f"Connection to provider failed: {error}")
        if isinstance(error, openai.APIStatusError):
            retry_after = None
            header = error.response.headers.get("retry-after")
            if header and header.isdigit():
                retry_after = int(header)
            return EmbeddingProviderError(
                self.name,
                error.message,
                provider_status=error.status_code,
                retry_after=retry_after
            )
        return EmbeddingProviderError(self.name, str(error))


class OpenAIEmbeddingProvider(_OpenAICompatibleProvider):
    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        dimension: int,
        max_batch_size: int = 2048,
        timeout: float = 30.0,
        client=None
    ):
        self.api_key = api_key
        if client is None and api_key:
            # Retries are handled by the resilient embedding service.
            client = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        super().__init__(client, model, dimension, max_batch_size, timeout)

    def is_available(self) -> bool:
        return self.client is not None


class AzureOpenAIEmbeddingProvider(_OpenAICompatibleProvider):
    name = "azure_openai"

    def __init__(
        self,
        api_key: Optional[str],
        endpoint: Optional[str],
        deployment: str,
        api_version: str,
        dimension: int,
        max_batch_size: int = 2048,
        timeout: float = 30.0,
        client=None
    ):
        self.endpoint = endpoint
        if client is None and api_key and endpoint:
            client = openai.AzureOpenAI(
                api_key=api_key,
                azure_endpoint=endpoint,
                api_version=api_version,
                timeout=timeout,
                max_retries=0
            )
        super().__init__(client, deployment, dimension, max_batch_size, timeout)

    def is_available(self) -> bool:
        return self.client is not None


class LocalHashingEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic offline embeddings using signed feature hashing over
    lowercased word tokens. Texts sharing words get similar vectors; the
    output is L2-normalized.
    """

    name = "local"

    def __init__(self, dimension: int, max_batch_size: int = 2048):
        super().__init__(dimension, max_batch_size)

    def generate_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        return [self._embed(text) for text in texts]

    def is_available(self) -> bool:
        return True

    def _embed(self, text: str) -> List[float]:
        vector = np.zeros(self._dimension, dtype=np.float64)
        tokens = TOKEN_PATTERN.findall(text.lower()) or [text]
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            position = int.from_bytes(digest[:8], "big") % self._dimension
            vector[position] += 1.0 if digest[8] & 1 else -1.0

        norm = np.linalg.norm(vector)
        if norm == 0:
            vector[0] = 1.0
            norm = 1.0
        return (vector / norm).tolist()


def create_embedding_provider(settings: Optional[Settings] = None) -> EmbeddingProvider:
    """Provider selected by EMBEDDING_PROVIDER."""
    settings = settings or default_settings
    provider = settings.EMBEDDING_PROVIDER

    if provider == "openai":
        if not settings.OPENAI_API_KEY:
            raise ConfigurationError("OpenAI API key is required when using OpenAI provider", field="OPENAI_API_KEY")
        return OpenAIEmbeddingProvider(
            api_key=settings.OPENAI_API_KEY,
            model=settings.EMBEDDING_MODEL,
            dimension=settings.EMBEDDING_DIMENSION,
            max_batch_size=settings.EMBEDDING_PROVIDER_MAX_BATCH,
            timeout=settings.EMBEDDING_TIMEOUT
        )

    if provider == "azure_openai":
        if not settings.AZURE_OPENAI_API_KEY or not settings.AZURE_OPENAI_ENDPOINT:
            raise ConfigurationError(
                "Azure OpenAI requires AZURE_OPENAI_API_KEY and AZURE_OPENAI_ENDPOINT",
                field="AZURE_OPENAI_ENDPOINT"
            )
        return AzureOpenAIEmbeddingProvider(
            api_key=settings.AZURE_OPENAI_API_KEY,
            endpoint=settings.AZURE_OPENAI_ENDPOINT,
            deployment=settings.AZURE_OPENAI_DEPLOYMENT or settings.EMBEDDING_MODEL,
            api_version=settings.AZURE_OPENAI_API_VERSION,
            dimension=settings.EMBEDDING_DIMENSION,
            max_batch_size=settings.EMBEDDING_PROVIDER_MAX_BATCH,
            timeout=settings.EMBEDDING_TIMEOUT
        )

    if provider == "local":
        return LocalHashingEmbeddingProvider(
            dimension=settings.EMBEDDING_DIMENSION,
            max_batch_size=settings.EMBEDDING_PROVIDER_MAX_BATCH
        )

    raise ConfigurationError(f"Unknown embedding provider: {provider}", field="EMBEDDING_PROVIDER")
