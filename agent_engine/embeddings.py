"""
Agent Engine — Embedding Provider
==================================
Turns text into a fixed-length, unit-normalised vector.

Empty text yields no vector (None). Every vector that leaves this module has
exactly EMBEDDING_DIM floats; anything else is rejected at the write boundary.
"""

import json
import logging
import math
import threading
from typing import List, Optional

from cache import get_cached_embedding
from config import Config
from agent_engine.llm import get_openai_client
from agent_engine.retry import call_with_retry

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """The embedding provider could not produce a vector."""


class EmbeddingDimensionError(EmbeddingError):
    """A vector of the wrong dimensionality reached a write path."""


def embedding_dim() -> int:
    return Config.EMBEDDING_DIM


def _normalise(vector: List[float]) -> List[float]:
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        return [0.0] * len(vector)
    return [x / norm for x in vector]


def validate_vector(vector) -> List[float]:
    """Return the vector as a list of floats, or raise if it is not exactly D long."""
    if vector is None:
        raise EmbeddingDimensionError("embedding is required but missing")
    values = [float(x) for x in vector]
    if len(values) != embedding_dim():
        raise EmbeddingDimensionError(
            f"embedding has {len(values)} dimensions, expected {embedding_dim()}"
        )
    return values


def serialize_vector(vector) -> Optional[str]:
    """JSON text for storage. None stays None (no memory contribution)."""
    if vector is None:
        return None
    return json.dumps([round(x, 7) for x in validate_vector(vector)])


def deserialize_vector(text) -> Optional[List[float]]:
    if not text:
        return None
    try:
        values = json.loads(text) if isinstance(text, str) else list(text)
    except ValueError:
        logger.warning("Discarding unparseable stored embedding")
        return None
    return values if len(values) == embedding_dim() else None


class EmbeddingProvider:
    """Deterministic text → vector contract used by the knowledge store."""

    def _embed_raw(self, text: str) -> List[float]:
        raise NotImplementedError

    def embed(self, text: str) -> Optional[List[float]]:
        """
        Embed text. Returns None for empty/whitespace input.
        Raises EmbeddingError when the provider fails.
        """
        cleaned = ' '.join((text or '').split())[:Config.EMBEDDING_MAX_CHARS]
        if not cleaned:
            return None
        try:
            raw = self._embed_raw(cleaned)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"embedding provider failed: {e}") from e
        return validate_vector(_normalise(list(raw)))

    def embed_required(self, text: str) -> List[float]:
        """Embed text for a write that must carry a vector."""
        vector = self.embed(text)
        if vector is None:
            raise ValueError("text to embed is empty")
        return vector


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings (text-embedding-3-*) shortened to EMBEDDING_DIM, cached."""

    def __init__(self, client=None, model: str = None, dim: int = None):
        self.client = client or get_openai_client()
        self.model = model or Config.EMBEDDING_MODEL
        self.dim = dim or Config.EMBEDDING_DIM

    def _embed_raw(self, text: str) -> List[float]:
        return call_with_retry(
            get_cached_embedding, self.client, text, self.model, self.dim,
            operation='embedding'
        )


_provider = None
_provider_lock = threading.Lock()


def get_embedding_provider() -> EmbeddingProvider:
    """Get or create the process-wide embedding provider."""
    global _provider
    with _provider_lock:
        if _provider is None:
            _provider = OpenAIEmbeddingProvider()
    return _provider


def set_embedding_provider(provider: Optional[EmbeddingProvider]):
    """Swap the provider (tests, alternative models)."""
    global _provider
    with _provider_lock:
        _provider = provider


# ---------------------------------------------------------------------------
# Canonical texts embedded for each record kind
# ---------------------------------------------------------------------------

def decision_text(tool_name: str, reasoning: str = None, input_summary: str = None) -> str:
    parts = [f"tool: {tool_name}"]
    if reasoning:
        parts.append(reasoning)
    if input_summary:
        parts.append(f"input: {input_summary[:300]}")
    return ' | '.join(parts)


def preference_text(category: str, key: str, value) -> str:
    if not isinstance(value, str):
        value = json.dumps(value, default=str)
    return f"{category}: {key} = {value}"[:500]


def correction_text(original_action: str, correction: str) -> str:
    return f"{original_action} -> {correction}"[:1000]
