"""
Agent Engine — Vector Store
============================
Nearest-neighbour search over knowledge-store embeddings, scoped to one user.

VectorStore.search(kind, vector, user_id, threshold, k) returns
[(record_id, similarity)] ordered by descending similarity, keeping only
matches strictly above threshold. Two backends:

- SqlVectorStore: brute-force cosine over the JSON embeddings stored beside
  each row (default; works on SQLite and PostgreSQL alike).
- PineconeVectorStore: one namespace per record kind in a cosine index,
  filtered on user_id metadata.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from config import Config
from agent_engine.db import _get_conn
from agent_engine.embeddings import deserialize_vector, validate_vector
from agent_engine.helpers import _cosine_similarity

logger = logging.getLogger(__name__)

# kind -> (table, row filter that makes a record searchable)
KIND_TABLES = {
    'decisions': ('agent_decisions', 'owner_feedback IS NOT NULL'),
    'rules': ('agent_rules', 'active = 1'),
    'preferences': ('agent_preferences', '1 = 1'),
    'corrections': ('agent_corrections', '1 = 1'),
}


class VectorStore:
    """Interface: upsert/delete vectors and search them per user."""

    def upsert(self, kind: str, record_id: int, user_id: str, vector: List[float],
               metadata: Optional[Dict] = None):
        raise NotImplementedError

    def delete(self, kind: str, record_ids: List[int]):
        raise NotImplementedError

    def search(self, kind: str, vector: List[float], user_id: str,
               threshold: float, k: int) -> List[Tuple[int, float]]:
        raise NotImplementedError


def scan_similar(conn, kind: str, vector: List[float], user_id: str,
                 threshold: float, k: int) -> List[Tuple[int, float]]:
    """Brute-force cosine scan of one user's searchable rows on an open connection."""
    if kind not in KIND_TABLES:
        raise ValueError(f"Unknown vector kind: {kind}")
    table, row_filter = KIND_TABLES[kind]
    rows = conn.execute(f'''
        SELECT id, embedding FROM {table}
        WHERE user_id = ? AND embedding IS NOT NULL AND {row_filter}
    ''', (user_id,)).fetchall()

    scored = []
    for row in rows:
        stored = deserialize_vector(row['embedding'])
        if stored is None:
            continue
        similarity = _cosine_similarity(vector, stored)
        if similarity > threshold:
            scored.append((row['id'], similarity))
    scored.sort(key=lambda item: item[1], reverse=True)
    return scored[:k]


class SqlVectorStore(VectorStore):
    """Vectors live in each row's embedding column; search scans the user's rows."""

    def upsert(self, kind, record_id, user_id, vector, metadata=None):
        # The owning row already carries the serialized vector
        validate_vector(vector)

    def delete(self, kind, record_ids):
        return None

    def search(self, kind, vector, user_id, threshold, k):
        if vector is None or k <= 0:
            return []
        conn = _get_conn()
        try:
            return scan_similar(conn, kind, vector, user_id, threshold, k)
        finally:
            conn.close()


class PineconeVectorStore(VectorStore):
    """Pinecone index (metric=cosine, dimension=EMBEDDING_DIM), namespace per kind."""

    def __init__(self, index=None):
        if index is None:
            from pinecone import Pinecone
            pc = Pinecone(api_key=Config.PINECONE_API_KEY)
            index = pc.Index(Config.PINECONE_INDEX)
        self.index = index

    @staticmethod
    def _vector_id(kind, record_id):
        return f"{kind}:{record_id}"

    def upsert(self, kind, record_id, user_id, vector, metadata=None):
        values = validate_vector(vector)
        meta = {'user_id': str(user_id), 'kind': kind, 'record_id': int(record_id)}
        for key, value in (metadata or {}).items():
            if isinstance(value, (str, int, float, bool)):
                meta[key] = value
        self.index.upsert(
            vectors=[{'id': self._vector_id(kind, record_id), 'values': values, 'metadata': meta}],
            namespace=kind,
        )

    def delete(self, kind, record_ids):
        if record_ids:
            self.index.delete(ids=[self._vector_id(kind, rid) for rid in record_ids], namespace=kind)

    def search(self, kind, vector, user_id, threshold, k):
        if vector is None or k <= 0:
            return []
        # Over-fetch: the knowledge store drops rows that are no longer searchable
        results = self.index.query(
            vector=list(vector),
            top_k=k * 3,
            include_metadata=True,
            filter={'user_id': {'$eq': str(user_id)}},
            namespace=kind,
        )
        matches = results.get('matches', []) if isinstance(results, dict) else results.matches
        hits = []
        for match in matches:
            score = match['score'] if isinstance(match, dict) else match.score
            metadata = match['metadata'] if isinstance(match, dict) else match.metadata
            if score > threshold and metadata and 'record_id' in metadata:
                hits.append((int(metadata['record_id']), float(score)))
        hits.sort(key=lambda item: item[1], reverse=True)
        return hits


_store = None
_store_lock = threading.Lock()


def get_vector_store() -> VectorStore:
    """Get or create the configured vector store backend."""
    global _store
    with _store_lock:
        if _store is None:
            if Config.VECTOR_BACKEND == 'pinecone':
                _store = PineconeVectorStore()
                logger.info(f"Vector store: Pinecone index {Config.PINECONE_INDEX}")
            else:
                _store = SqlVectorStore()
                logger.info("Vector store: SQL embeddings")
    return _store


def set_vector_store(store: Optional[VectorStore]):
    global _store
    with _store_lock:
        _store = store
