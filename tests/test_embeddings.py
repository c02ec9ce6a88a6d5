"""
Tests for the embedding provider and vector store backends.
"""

import math
from unittest.mock import MagicMock

import pytest

from config import Config
from agent_engine.embeddings import (
    EmbeddingDimensionError,
    EmbeddingError,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
    deserialize_vector,
    serialize_vector,
    validate_vector,
)
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.vector_store import PineconeVectorStore, SqlVectorStore

OWNER = 'owner-1'
OTHER_OWNER = 'owner-2'


class FailingEmbedder(EmbeddingProvider):
    def _embed_raw(self, text):
        raise RuntimeError("provider offline")


class TestEmbeddingProvider:
    """Test the provider contract shared by every backend."""

    def test_empty_text_has_no_embedding(self, embedder):
        assert embedder.embed('') is None
        assert embedder.embed('   \n ') is None
        assert embedder.embed(None) is None

    def test_embed_required_rejects_empty_text(self, embedder):
        with pytest.raises(ValueError):
            embedder.embed_required('  ')

    def test_vector_has_configured_dimension(self, embedder):
        vector = embedder.embed('Leaking kitchen tap at 12 Harbour St')
        assert len(vector) == Config.EMBEDDING_DIM

    def test_vector_is_unit_normalised(self, embedder):
        vector = embedder.embed('Send a friendly rent reminder')
        assert math.isclose(math.sqrt(sum(x * x for x in vector)), 1.0, rel_tol=1e-9)

    def test_same_text_same_vector(self, embedder):
        assert embedder.embed('smoke alarm check') == embedder.embed('smoke  alarm   check')

    def test_provider_failure_raises_embedding_error(self):
        with pytest.raises(EmbeddingError, match='provider offline'):
            FailingEmbedder().embed('anything')

    def test_wrong_dimension_from_provider_rejected(self):
        class ShortEmbedder(EmbeddingProvider):
            def _embed_raw(self, text):
                return [1.0, 0.0, 0.0]

        with pytest.raises(EmbeddingDimensionError):
            ShortEmbedder().embed('three floats only')


class TestVectorSerialization:
    """Test the storage boundary for vectors."""

    def test_none_stays_none(self):
        assert serialize_vector(None) is None
        assert deserialize_vector(None) is None

    def test_validate_rejects_wrong_length(self):
        with pytest.raises(EmbeddingDimensionError):
            validate_vector([0.1] * (Config.EMBEDDING_DIM - 1))

    def test_validate_rejects_missing_vector(self):
        with pytest.raises(EmbeddingDimensionError):
            validate_vector(None)

    def test_stored_vector_reads_back(self, embedder):
        vector = embedder.embed('lease renewal')
        restored = deserialize_vector(serialize_vector(vector))
        assert len(restored) == Config.EMBEDDING_DIM
        assert all(math.isclose(a, b, abs_tol=1e-6) for a, b in zip(vector, restored))

    def test_corrupt_stored_vector_is_ignored(self):
        assert deserialize_vector('not json') is None
        assert deserialize_vector('[1.0, 2.0]') is None


class TestOpenAIEmbeddingProvider:
    """Test the OpenAI-backed provider with a mocked client."""

    def _client(self, values=None):
        client = MagicMock()
        response = MagicMock()
        response.data = [MagicMock(embedding=values or [0.5] * Config.EMBEDDING_DIM)]
        client.embeddings.create.return_value = response
        return client

    def test_requests_configured_dimensions(self):
        client = self._client()
        vector = OpenAIEmbeddingProvider(client=client).embed('rent reminder')
        assert len(vector) == Config.EMBEDDING_DIM
        kwargs = client.embeddings.create.call_args.kwargs
        assert kwargs['dimensions'] == Config.EMBEDDING_DIM
        assert kwargs['model'] == Config.EMBEDDING_MODEL

    def test_repeat_text_served_from_cache(self):
        client = self._client()
        provider = OpenAIEmbeddingProvider(client=client)
        provider.embed('bond lodgement reminder')
        provider.embed('bond lodgement reminder')
        assert client.embeddings.create.call_count == 1

    def test_api_failure_raises_embedding_error(self):
        client = MagicMock()
        client.embeddings.create.side_effect = ValueError("bad request")
        with pytest.raises(EmbeddingError):
            OpenAIEmbeddingProvider(client=client).embed('anything')


class TestSqlVectorStore:
    """Test brute-force search over stored embeddings."""

    def test_search_is_scoped_to_user(self, embedder):
        KnowledgeStore.learn_rule(OWNER, 'Always use Acme Plumbing for leaks', 'maintenance')
        KnowledgeStore.learn_rule(OTHER_OWNER, 'Always use Acme Plumbing for leaks', 'maintenance')
        query = embedder.embed('Always use Acme Plumbing for leaks')

        hits = SqlVectorStore().search('rules', query, OWNER, 0.5, 10)
        assert len(hits) == 1
        rule = KnowledgeStore.get_rule(hits[0][0])
        assert rule['user_id'] == OWNER

    def test_results_ordered_and_above_threshold(self, embedder):
        KnowledgeStore.learn_rule(OWNER, 'Send rent reminders in a friendly tone', 'financial')
        KnowledgeStore.learn_rule(OWNER, 'Prefer licensed electricians for smoke alarms', 'maintenance')
        query = embedder.embed('Send rent reminders in a friendly tone')

        hits = SqlVectorStore().search('rules', query, OWNER, 0.0, 10)
        similarities = [s for _, s in hits]
        assert similarities == sorted(similarities, reverse=True)
        assert all(s > 0.0 for s in similarities)
        assert SqlVectorStore().search('rules', query, OWNER, 0.99, 10)[0][1] > 0.99

    def test_unknown_kind_rejected(self, embedder):
        with pytest.raises(ValueError):
            SqlVectorStore().search('tenants', embedder.embed('x'), OWNER, 0.5, 5)

    def test_no_vector_no_results(self):
        assert SqlVectorStore().search('rules', None, OWNER, 0.5, 5) == []


class TestPineconeVectorStore:
    """Test the Pinecone backend against a mocked index."""

    def test_upsert_uses_kind_namespace(self, embedder):
        index = MagicMock()
        PineconeVectorStore(index=index).upsert('rules', 7, OWNER, embedder.embed('rule text'),
                                                {'category': 'maintenance', 'ignored': ['x']})
        kwargs = index.upsert.call_args.kwargs
        assert kwargs['namespace'] == 'rules'
        record = kwargs['vectors'][0]
        assert record['id'] == 'rules:7'
        assert record['metadata'] == {'user_id': OWNER, 'kind': 'rules', 'record_id': 7,
                                      'category': 'maintenance'}

    def test_upsert_rejects_wrong_dimension(self):
        with pytest.raises(EmbeddingDimensionError):
            PineconeVectorStore(index=MagicMock()).upsert('rules', 1, OWNER, [0.1, 0.2])

    def test_search_filters_user_and_threshold(self, embedder):
        index = MagicMock()
        index.query.return_value = {'matches': [
            {'id': 'rules:3', 'score': 0.91, 'metadata': {'record_id': 3}},
            {'id': 'rules:4', 'score': 0.42, 'metadata': {'record_id': 4}},
            {'id': 'rules:5', 'score': 0.77, 'metadata': {'record_id': 5}},
        ]}
        hits = PineconeVectorStore(index=index).search('rules', embedder.embed('q'), OWNER, 0.6, 5)

        assert hits == [(3, 0.91), (5, 0.77)]
        kwargs = index.query.call_args.kwargs
        assert kwargs['filter'] == {'user_id': {'$eq': OWNER}}
        assert kwargs['namespace'] == 'rules'

    def test_delete_by_record_id(self):
        index = MagicMock()
        PineconeVectorStore(index=index).delete('corrections', [1, 2])
        index.delete.assert_called_once_with(ids=['corrections:1', 'corrections:2'], namespace='corrections')
