"""
Pytest configuration and shared fixtures for the agent engine tests.

Every test gets a fresh SQLite database under tmp_path, a deterministic
hashing embedder in place of the OpenAI provider and its own decision
recorder.
"""

import hashlib
import os
import re
import sys
import tempfile

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

_SESSION_DIR = tempfile.mkdtemp(prefix='agent-engine-tests-')

# Set test environment variables before importing app
os.environ.setdefault("FLASK_SECRET_KEY", "test-secret-key")
os.environ.setdefault("OPENAI_API_KEY", "test-key-not-real")
os.environ.setdefault("PINECONE_API_KEY", "test-key-not-real")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")
os.environ.setdefault("RULE_TEXT_FROM_LLM", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("VECTOR_BACKEND", "sql")
os.environ.setdefault("LOG_DIR", os.path.join(_SESSION_DIR, "logs"))
os.environ["DATA_DIR"] = _SESSION_DIR
os.environ.pop("DATABASE_URL", None)
os.environ.pop("REDIS_URL", None)

from config import Config  # noqa: E402
from agent_engine.embeddings import EmbeddingProvider  # noqa: E402

OWNER = 'owner-1'
OTHER_OWNER = 'owner-2'


class HashingEmbedder(EmbeddingProvider):
    """Bag-of-words vectors: texts sharing words get similar embeddings."""

    def _embed_raw(self, text):
        vector = [0.0] * Config.EMBEDDING_DIM
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            digest = hashlib.md5(word.encode('utf-8')).digest()
            vector[int.from_bytes(digest[:4], 'big') % Config.EMBEDDING_DIM] += 1.0
        return vector


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture(autouse=True)
def agent_db(tmp_path, monkeypatch):
    """Fresh database, embedder, vector store and recorder for each test."""
    from cache import reset_embedding_cache
    from agent_engine.business import init_business_tables
    from agent_engine.db import init_agent_tables
    from agent_engine.embeddings import set_embedding_provider
    from agent_engine.recorder import DecisionRecorder, set_recorder
    from agent_engine.vector_store import SqlVectorStore, set_vector_store

    monkeypatch.setenv('DATA_DIR', str(tmp_path))
    monkeypatch.setattr(Config, 'RULE_TEXT_FROM_LLM', False)
    monkeypatch.setattr(Config, 'CRON_SECRET', 'test-cron-secret')
    monkeypatch.setattr(Config, 'SERVICE_API_KEY', 'test-service-key')
    monkeypatch.setattr(Config, 'SERVICE_API_KEY_HASH', None)
    monkeypatch.setattr(Config, 'VECTOR_BACKEND', 'sql')

    reset_embedding_cache()
    init_agent_tables()
    init_business_tables()
    set_embedding_provider(HashingEmbedder())
    set_vector_store(SqlVectorStore())
    set_recorder(DecisionRecorder(max_attempts=1, spool_dir=str(tmp_path / 'spool')))

    yield tmp_path

    set_recorder(None)
    set_vector_store(None)
    set_embedding_provider(None)
    reset_embedding_cache()


@pytest.fixture
def recorder():
    from agent_engine.recorder import get_recorder
    return get_recorder()


@pytest.fixture
def business():
    """One property with a tenancy, rent arrears and a 10-day-old unassigned maintenance request."""
    from datetime import timedelta
    from agent_engine.business import BusinessRecords
    from agent_engine.db import _ts_ago, _utcnow

    today = _utcnow().date()
    property_id = BusinessRecords.add_property(OWNER, '12 Harbour St, Sydney', 'NSW', 650.0)
    tenancy_id = BusinessRecords.add_tenancy(
        OWNER, property_id, 'Sam Taylor',
        (today - timedelta(days=100)).isoformat(), (today + timedelta(days=200)).isoformat(),
        650.0, tenant_email='sam@example.com', bond_amount=2600.0, bond_status='lodged')
    request_id = BusinessRecords.add_maintenance_request(
        OWNER, property_id, 'Leaking kitchen tap', 'Tap drips constantly and the cabinet is wet',
        created_at=_ts_ago(days=10))
    arrears_id = BusinessRecords.add_arrears(
        OWNER, tenancy_id, 650.0, (today - timedelta(days=10)).isoformat())
    return {
        'property_id': property_id,
        'tenancy_id': tenancy_id,
        'request_id': request_id,
        'arrears_id': arrears_id,
    }


@pytest.fixture
def flask_app():
    from app import app as _app
    _app.config['TESTING'] = True
    return _app


@pytest.fixture
def client(flask_app):
    """Test client signed in as OWNER."""
    client = flask_app.test_client()
    with client.session_transaction() as sess:
        sess['user_id'] = OWNER
    yield client


@pytest.fixture
def anon_client(flask_app):
    yield flask_app.test_client()
