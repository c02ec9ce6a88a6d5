"""
Embedding cache for the agent engine.
Uses Redis when REDIS_URL is reachable, otherwise falls back to a
disk-backed cache (diskcache) shared across Gunicorn workers.
"""
import hashlib
import os
import pickle
import logging
from threading import Lock

import diskcache
import redis as redis_lib

logger = logging.getLogger(__name__)

_redis_client = None
_redis_checked = False


def _get_redis():
    """Return a connected Redis client, or None if Redis is not configured or down."""
    global _redis_client, _redis_checked
    redis_url = os.environ.get('REDIS_URL')
    if not redis_url:
        return None
    if _redis_client is None and not _redis_checked:
        _redis_checked = True
        try:
            client = redis_lib.Redis.from_url(redis_url, decode_responses=False)
            client.ping()
            _redis_client = client
            logger.info("Redis cache backend connected")
        except redis_lib.RedisError as e:
            logger.info(f"Redis unavailable ({e}), falling back to diskcache")
    return _redis_client


def _cache_dir():
    data_dir = os.environ.get('DATA_DIR', 'data' if os.path.exists('data') else '.')
    return os.path.join(data_dir, 'cache')


class EmbeddingCache:
    """
    Cache for embedding vectors, keyed by model, dimensionality and text.
    Avoids re-embedding identical rule/preference/decision text.
    """

    _PREFIX = 'agentemb:'

    def __init__(self, max_size=5000, ttl_seconds=86400):
        """
        Args:
            max_size: Approximate number of vectors to keep on disk
            ttl_seconds: Time-to-live for cache entries (default 1 day)
        """
        cache_path = os.path.join(_cache_dir(), 'embeddings')
        os.makedirs(cache_path, exist_ok=True)
        # ~4KB per 384-dim pickled vector
        self._cache = diskcache.Cache(cache_path, size_limit=max_size * 4 * 1024)
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _hash_key(text, model, dim):
        return hashlib.sha256(f"{model}:{dim}:{text}".encode()).hexdigest()[:24]

    def get(self, text, model, dim):
        """Return the cached vector or None."""
        key = self._hash_key(text, model, dim)
        value = None
        r = _get_redis()
        if r:
            try:
                data = r.get(f'{self._PREFIX}{key}')
                value = pickle.loads(data) if data is not None else None
            except redis_lib.RedisError:
                logger.debug("Redis get failed for embedding, falling back to diskcache")
                value = self._cache.get(key, default=None)
        else:
            value = self._cache.get(key, default=None)

        with self._lock:
            if value is not None:
                self._hits += 1
            else:
                self._misses += 1
        return value

    def set(self, text, model, dim, embedding):
        """Store a vector."""
        key = self._hash_key(text, model, dim)
        r = _get_redis()
        if r:
            try:
                r.setex(f'{self._PREFIX}{key}', self._ttl, pickle.dumps(list(embedding)))
                return
            except redis_lib.RedisError:
                logger.debug("Redis set failed for embedding, falling back to diskcache")
        self._cache.set(key, list(embedding), expire=self._ttl)

    def stats(self):
        """Return cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            hit_rate = (self._hits / total * 100) if total > 0 else 0
            return {
                'size': len(self._cache),
                'max_size': self._max_size,
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': f"{hit_rate:.1f}%",
                'backend': 'redis' if _get_redis() else 'diskcache',
            }


_embedding_cache = None
_cache_lock = Lock()


def get_embedding_cache():
    """Get or create the global embedding cache."""
    global _embedding_cache
    with _cache_lock:
        if _embedding_cache is None:
            _embedding_cache = EmbeddingCache()
    return _embedding_cache


def reset_embedding_cache():
    """Drop the global cache instance (tests point DATA_DIR at a fresh directory)."""
    global _embedding_cache, _redis_client, _redis_checked
    with _cache_lock:
        _embedding_cache = None
    _redis_client = None
    _redis_checked = False


def get_cached_embedding(openai_client, text, model, dim):
    """
    Get an embedding, using cache when available.

    Args:
        openai_client: OpenAI client instance
        text: Text to embed (already normalised/truncated by the caller)
        model: Embedding model name
        dim: Requested output dimensionality

    Returns:
        Embedding vector (list of floats)
    """
    cache = get_embedding_cache()
    embedding = cache.get(text, model, dim)
    if embedding is not None:
        return embedding

    try:
        response = openai_client.embeddings.create(input=text, model=model, dimensions=dim)
        embedding = list(response.data[0].embedding)
    except Exception as e:
        logger.error(f"Embedding API call failed: {e}")
        raise

    cache.set(text, model, dim, embedding)
    return embedding
