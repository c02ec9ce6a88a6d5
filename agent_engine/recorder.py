"""
Agent Engine — Decision Recorder
=================================
Fire-and-forget persistence of every evaluated candidate action.

record() validates the confidence factors, assigns a decision_ref and a
per-conversation sequence number, and hands the record to a bounded queue
drained by one worker thread, so decisions from one conversation are
written in call order. Sequence counters are kept for the most recently
active conversations only; an evicted conversation resumes from the highest
sequence already stored. Inserts are idempotent on decision_ref, which makes
redelivery safe. When the queue is full, or a record still fails after its
retry budget, it goes to an on-disk spool (diskcache Deque) that the worker
drains when idle and flush() drains synchronously.
"""

import itertools
import logging
import os
import queue
import threading
import uuid
from collections import OrderedDict
from typing import Dict, Optional

import diskcache
from tenacity import Retrying, stop_after_attempt, wait_exponential

from config import Config
from agent_engine.confidence import check_factors
from agent_engine.db import _ts
from agent_engine.embeddings import EmbeddingError, decision_text, get_embedding_provider
from agent_engine.knowledge_store import KnowledgeStore

logger = logging.getLogger(__name__)

_STOP = object()


def new_decision_ref() -> str:
    return uuid.uuid4().hex


def _spool_dir():
    data_dir = os.environ.get('DATA_DIR', 'data' if os.path.exists('data') else '.')
    return os.path.join(data_dir, 'decision_spool')


class DecisionRecorder:
    """Bounded queue + worker thread writing decisions to the knowledge store."""

    def __init__(self, maxsize: int = None, max_attempts: int = None, spool_dir: str = None,
                 max_conversations: int = None):
        self._queue = queue.Queue(maxsize=maxsize or Config.RECORDER_QUEUE_SIZE)
        self._max_attempts = max_attempts or Config.RECORDER_MAX_ATTEMPTS
        self._spool_path = spool_dir or _spool_dir()
        self._spool = None
        self._sequences: OrderedDict = OrderedDict()
        self._max_conversations = max_conversations or Config.RECORDER_TRACKED_CONVERSATIONS
        self._lock = threading.Lock()
        self._thread = None
        self.persisted = 0
        self.spooled = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def _next_sequence(self, conversation_id) -> int:
        if conversation_id is None:
            return 0
        with self._lock:
            counter = self._sequences.get(conversation_id)
            if counter is None:
                # evicted or new: resume after what is already stored
                counter = itertools.count(KnowledgeStore.max_decision_sequence(conversation_id) + 1)
                self._sequences[conversation_id] = counter
                while len(self._sequences) > self._max_conversations:
                    self._sequences.popitem(last=False)
            else:
                self._sequences.move_to_end(conversation_id)
            return next(counter)

    def record(self, user_id: str, tool_name: str, category: str, input_summary: str = None,
               tool_input: Dict = None, reasoning: str = None, confidence_factors: Dict = None, disposition: str = None,
               embedding=None, was_auto_executed: bool = False, conversation_id=None,
               decision_ref: str = None) -> str:
        """Queue one decision. Returns its decision_ref immediately."""
        if not user_id or not tool_name or not category:
            raise ValueError("user_id, tool_name and category are required")
        check_factors(confidence_factors)
        decision = {
            'decision_ref': decision_ref or new_decision_ref(),
            'user_id': user_id,
            'conversation_id': conversation_id,
            'sequence': self._next_sequence(conversation_id),
            'tool_name': tool_name,
            'category': category,
            'input_summary': input_summary,
            'tool_input': tool_input,
            'reasoning': reasoning,
            'confidence_factors': confidence_factors,
            'disposition': disposition,
            'embedding': embedding,
            'was_auto_executed': bool(was_auto_executed),
            'created_at': _ts(),
        }
        self._ensure_worker()
        try:
            self._queue.put_nowait(decision)
        except queue.Full:
            logger.warning(f"Decision queue full, spooling {decision['decision_ref']}")
            self._spool_decision(decision)
        return decision['decision_ref']

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _ensure_worker(self):
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name='decision-recorder', daemon=True)
                self._thread.start()

    def _run(self):
        while True:
            try:
                decision = self._queue.get(timeout=1.0)
            except queue.Empty:
                self.drain_spool()
                continue
            try:
                if decision is _STOP:
                    return
                self._persist_or_spool(decision)
            finally:
                self._queue.task_done()

    def _with_embedding(self, decision: Dict) -> Dict:
        if decision.get('embedding') is not None:
            return decision
        text = decision_text(decision['tool_name'], decision.get('reasoning'), decision.get('input_summary'))
        try:
            decision['embedding'] = get_embedding_provider().embed(text)
        except EmbeddingError as e:
            logger.warning(f"Decision {decision['decision_ref']} stored without embedding: {e}")
        return decision

    def _persist(self, decision: Dict) -> Optional[int]:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            reraise=True,
        )
        decision_id = retrying(KnowledgeStore.insert_decision, self._with_embedding(decision))
        self.persisted += 1
        return decision_id

    def _persist_or_spool(self, decision: Dict):
        try:
            self._persist(decision)
        except Exception as e:
            logger.error(f"Decision {decision['decision_ref']} not persisted, spooling: {e}")
            self._spool_decision(decision)

    # ------------------------------------------------------------------
    # Spool
    # ------------------------------------------------------------------

    def _get_spool(self):
        with self._lock:
            if self._spool is None:
                os.makedirs(self._spool_path, exist_ok=True)
                self._spool = diskcache.Deque(directory=self._spool_path)
            return self._spool

    def _spool_decision(self, decision: Dict):
        self._get_spool().append(decision)
        self.spooled += 1

    def drain_spool(self) -> int:
        """Persist spooled decisions. Stops at the first failure and keeps the rest."""
        spool = self._get_spool()
        drained = 0
        while True:
            try:
                decision = spool.popleft()
            except IndexError:
                break
            try:
                self._persist(decision)
            except Exception as e:
                logger.error(f"Spooled decision {decision['decision_ref']} still failing: {e}")
                spool.appendleft(decision)
                break
            drained += 1
        if drained:
            logger.info(f"Drained {drained} spooled decisions")
        return drained

    def pending(self) -> int:
        return self._queue.qsize() + len(self._get_spool())

    def flush(self):
        """Block until queued decisions are written and the spool is drained."""
        if self._thread is not None and self._thread.is_alive():
            self._queue.join()
        else:
            while True:
                try:
                    decision = self._queue.get_nowait()
                except queue.Empty:
                    break
                if decision is not _STOP:
                    self._persist_or_spool(decision)
                self._queue.task_done()
        self.drain_spool()

    def stop(self):
        self.flush()
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(_STOP)
            self._thread.join(timeout=5)
        self._thread = None


_recorder = None
_recorder_lock = threading.Lock()


def get_recorder() -> DecisionRecorder:
    global _recorder
    with _recorder_lock:
        if _recorder is None:
            _recorder = DecisionRecorder()
    return _recorder


def set_recorder(recorder: Optional[DecisionRecorder]):
    global _recorder
    with _recorder_lock:
        if _recorder is not None and _recorder is not recorder:
            _recorder.stop()
        _recorder = recorder
