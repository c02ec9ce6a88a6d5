"""
Agent Engine Package
=====================
Re-exports the public names so that:
    from agent_engine import HeartbeatScanner
    from agent_engine import LearningPipeline
work without knowing the module layout.
"""

import logging

logger = logging.getLogger(__name__)

# ── Foundation ──────────────────────────────────────────────────────────────
from agent_engine.db import init_agent_tables, log_event, _get_conn
from agent_engine.business import BusinessRecords, init_business_tables
from agent_engine.types import (
    ArtifactType,
    AutonomyLevel,
    AutonomySettings,
    Disposition,
    ErrorType,
)

# ── Embeddings & knowledge store ────────────────────────────────────────────
from agent_engine.embeddings import (
    EmbeddingError,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
    get_embedding_provider,
    set_embedding_provider,
)
from agent_engine.vector_store import get_vector_store, set_vector_store
from agent_engine.knowledge_store import KnowledgeStore

# ── Decision engine ─────────────────────────────────────────────────────────
from agent_engine.tools import TOOL_REGISTRY, get_tool
from agent_engine.dispatcher import ToolDispatcher, ToolExecutionError
from agent_engine.genome import ToolGenome
from agent_engine.confidence import ConfidenceError, ConfidenceScorer
from agent_engine.autonomy import AutonomyStore, GateResult, gate
from agent_engine.learning import LearningPipeline
from agent_engine.recorder import DecisionRecorder, get_recorder, set_recorder
from agent_engine.pending import PendingActionNotFound, PendingActions
from agent_engine.tasks import TaskStore
from agent_engine.outcomes import OutcomeTracker
from agent_engine.heartbeat import HeartbeatScanner
from agent_engine.chat import AgentChat, ConversationNotFound
from agent_engine.scheduler import AgentScheduler

# ── Initialization (runs on first import) ───────────────────────────────────
try:
    init_agent_tables()
except Exception as e:
    logger.error(f"Failed to initialize agent tables: {e}")

try:
    init_business_tables()
except Exception as e:
    logger.error(f"Failed to initialize business tables: {e}")


__all__ = [
    # db
    'init_agent_tables', 'init_business_tables', 'log_event', '_get_conn',
    # types
    'ArtifactType', 'AutonomyLevel', 'AutonomySettings', 'Disposition', 'ErrorType',
    # stores
    'BusinessRecords', 'KnowledgeStore', 'TaskStore', 'PendingActions', 'PendingActionNotFound',
    'EmbeddingError', 'EmbeddingProvider', 'OpenAIEmbeddingProvider',
    'get_embedding_provider', 'set_embedding_provider', 'get_vector_store', 'set_vector_store',
    # engine
    'TOOL_REGISTRY', 'get_tool', 'ToolDispatcher', 'ToolExecutionError', 'ToolGenome',
    'ConfidenceError', 'ConfidenceScorer',
    'AutonomyStore', 'GateResult', 'gate',
    'LearningPipeline',
    'DecisionRecorder', 'get_recorder', 'set_recorder',
    'OutcomeTracker', 'HeartbeatScanner',
    'AgentChat', 'ConversationNotFound',
    'AgentScheduler',
]
