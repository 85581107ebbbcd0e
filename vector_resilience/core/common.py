"""
Common utilities shared by cache, index and embedding components.
"""
import hashlib
import math
import re
from numbers import Real
from typing import Optional, Any, List, Sequence

from vector_resilience.core.config import config
from vector_resilience.core.logging import get_logger
from vector_resilience.core.exceptions import (
    InvalidHashError,
    EmptyEmbeddingError,
    EmbeddingTooLargeError,
    NonNumericValueError,
)

HASH_PATTERN = re.compile(r"^[a-f0-9]{64}$")


def get_service_logger(service_name: str):
    """Get a logger for a service with consistent naming."""
    return get_logger(f"vector_resilience.services.{service_name}")


def calculate_content_hash(content: bytes) -> str:
    """Calculate SHA-256 hash of content."""
    return hashlib.sha256(content).hexdigest()


def normalize_text(text: str, remove_extra_spaces: bool = True) -> str:
    """
    Normalize text by removing extra whitespace and control characters.
    Used for cache key generation so cosmetic differences share a key.
    """
    if not text:
        return ""

    # Remove control characters except newlines and tabs
    cleaned = ''.join(char for char in text if ord(char) >= 32 or char in '\n\t')

    if remove_extra_spaces:
        cleaned = re.sub(r'\s+', ' ', cleaned)

    return cleaned.strip()


class CommonValidators:
    """Validation functions used across caches and the index manager."""

    @staticmethod
    def is_valid_hash(text_hash: str) -> bool:
        return isinstance(text_hash, str) and bool(HASH_PATTERN.match(text_hash))

    @staticmethod
    def validate_hash(text_hash: str) -> str:
        """Validate cache key format (lowercase SHA-256 hex digest)."""
        if not CommonValidators.is_valid_hash(text_hash):
            raise InvalidHashError(
                "Cache key must be a 64 character lowercase hex digest",
                field="hash",
                value=text_hash
            )
        return text_hash

    @staticmethod
    def validate_embedding(
        embedding: Sequence[Any],
        max_dimensions: Optional[int] = None
    ) -> List[float]:
        """
        Validate an embedding and return it as a list of floats.

        Raises:
            EmptyEmbeddingError: zero-length embedding
            EmbeddingTooLargeError: more elements than the configured cap
            NonNumericValueError: any element that is not a finite real number
        """
        cap = max_dimensions or config.cache_config["max_dimensions"]

        if embedding is None or len(embedding) == 0:
            raise EmptyEmbeddingError("Embedding cannot be empty", field="embedding")

        if len(embedding) > cap:
            raise EmbeddingTooLargeError(
                f"Embedding has {len(embedding)} dimensions, maximum is {cap}",
                field="embedding",
                value=len(embedding)
            )

        values = []
        for position, value in enumerate(embedding):
            # bool is a Real subclass but never a meaningful component
            if isinstance(value, bool) or not isinstance(value, Real):
                raise NonNumericValueError(
                    f"Embedding element {position} is not numeric",
                    field="embedding",
                    value=repr(value)
                )
            value = float(value)
            if not math.isfinite(value):
                raise NonNumericValueError(
                    f"Embedding element {position} is not finite",
                    field="embedding",
                    value=value
                )
            values.append(value)

        return values


class BaseService:
    """
    Base for components that share a named logger and the config accessor.
    """

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.logger = get_service_logger(service_name)
        self.config = config
