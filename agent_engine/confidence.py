"""
Agent Engine — Confidence Scorer
=================================
Six independent factors in [0, 1] plus a fixed-weight composite for a
candidate tool invocation:

  historical_accuracy  tool genome success EMA
  source_quality       category reliability x data freshness
  precedent_alignment  similarity to past approved decisions
  rule_alignment       strength of matching active rules
  golden_alignment     similarity to curated known-correct examples
  outcome_track        recency-weighted success of measured outcomes

Either every factor is computed or scoring fails with ConfidenceError.
Tools registered as confidence_exempt are not scored at all.
"""

import logging
from typing import Dict, List, Optional

from constants import (
    CONFIDENCE_DEFAULTS, CONFIDENCE_FACTORS, CONFIDENCE_WEIGHTS, DEFAULT_SOURCE_QUALITY,
    FRESHNESS_MULTIPLIERS, SOURCE_QUALITY,
)
from agent_engine.embeddings import deserialize_vector, validate_vector
from agent_engine.genome import ToolGenome
from agent_engine.helpers import _clamp, _cosine_similarity, _recency_weighted_mean
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.tools import get_tool

logger = logging.getLogger(__name__)

MIN_GENOME_EXECUTIONS = 3
MIN_FEEDBACK_SAMPLES = 2
MIN_OUTCOME_SAMPLES = 3
OUTCOME_WINDOW = 20


class ConfidenceError(RuntimeError):
    """Confidence could not be fully computed; the action must not be auto-executed."""


def check_factors(factors: Optional[Dict]) -> Optional[Dict]:
    """
    Reject partial factor sets. None passes through (exempt tool); otherwise
    every factor and the composite must be present and within [0, 1].
    """
    if factors is None:
        return None
    missing = [name for name in CONFIDENCE_FACTORS + ['composite'] if factors.get(name) is None]
    if missing:
        raise ConfidenceError(f"Incomplete confidence factors: missing {', '.join(missing)}")
    for name in CONFIDENCE_FACTORS + ['composite']:
        value = factors[name]
        if not 0.0 <= value <= 1.0:
            raise ConfidenceError(f"Confidence factor {name} out of range: {value}")
    return factors


def composite_score(factors: Dict) -> float:
    return round(sum(CONFIDENCE_WEIGHTS[name] * factors[name] for name in CONFIDENCE_FACTORS), 3)


class ConfidenceScorer:
    """Multi-factor confidence for candidate actions."""

    @staticmethod
    def historical_accuracy(user_id: str, tool_name: str) -> float:
        genome = ToolGenome.get(user_id, tool_name)
        if genome and (genome.get('total_executions') or 0) >= MIN_GENOME_EXECUTIONS:
            return genome['success_rate_ema']
        return CONFIDENCE_DEFAULTS['historical_accuracy']

    @staticmethod
    def source_quality(tool) -> float:
        base = SOURCE_QUALITY.get(tool.category, DEFAULT_SOURCE_QUALITY)
        return base * FRESHNESS_MULTIPLIERS.get(tool.source_freshness, 1.0)

    @staticmethod
    def precedent_alignment(user_id: str, tool_name: str, embedding) -> float:
        if embedding is not None:
            precedents = KnowledgeStore.search_similar_decisions(embedding, user_id)
            approved = [p['similarity'] for p in precedents if p.get('owner_feedback') == 'approved']
            if approved:
                return max(approved)

        # No semantic precedent: fall back to how the owner reviewed this tool lately
        recent = KnowledgeStore.get_recent_feedback(user_id, tool_name)
        if len(recent) >= MIN_FEEDBACK_SAMPLES:
            return sum(1 for f in recent if f == 'approved') / len(recent)
        return CONFIDENCE_DEFAULTS['precedent_alignment']

    @staticmethod
    def rule_alignment(user_id: str, category: str, embedding) -> float:
        if embedding is not None:
            rules = KnowledgeStore.search_similar_rules(embedding, user_id)
            if rules:
                return sum(r['confidence'] for r in rules) / len(rules)
        rules = KnowledgeStore.get_active_rules(user_id, category)
        if rules:
            return sum(r['confidence'] for r in rules) / len(rules)
        return CONFIDENCE_DEFAULTS['rule_alignment']

    @staticmethod
    def golden_alignment(user_id: str, tool_name: str, embedding) -> float:
        examples = KnowledgeStore.get_golden_examples(user_id, tool_name)
        if not examples:
            return CONFIDENCE_DEFAULTS['golden_alignment']
        if embedding is None:
            return 1.0
        similarities: List[float] = []
        for example in examples:
            vector = deserialize_vector(example.get('embedding'))
            if vector is not None:
                similarities.append(_cosine_similarity(embedding, vector))
        if not similarities:
            return 1.0
        return max(similarities)

    @staticmethod
    def outcome_track(user_id: str, tool_name: str) -> float:
        outcomes = KnowledgeStore.get_recent_outcomes(user_id, tool_name, limit=OUTCOME_WINDOW)
        if len(outcomes) >= MIN_OUTCOME_SAMPLES:
            return _recency_weighted_mean([float(o) for o in outcomes])
        return CONFIDENCE_DEFAULTS['outcome_track']

    @staticmethod
    def score(user_id: str, tool_name: str, category: str = None, embedding=None) -> Optional[Dict]:
        """
        Score one candidate invocation. Returns None for confidence-exempt
        tools, otherwise {factor: value, ..., 'composite': value}.

        embedding is the candidate's decision embedding (see
        embeddings.decision_text); None limits the semantic factors to their
        non-semantic fallbacks. Raises ConfidenceError on any failure.
        """
        tool = get_tool(tool_name)
        if tool is None:
            raise ConfidenceError(f"Cannot score unknown tool: {tool_name}")
        if tool.confidence_exempt:
            return None
        category = category or tool.domain

        try:
            vector = validate_vector(embedding) if embedding is not None else None
            raw = {
                'historical_accuracy': ConfidenceScorer.historical_accuracy(user_id, tool_name),
                'source_quality': ConfidenceScorer.source_quality(tool),
                'precedent_alignment': ConfidenceScorer.precedent_alignment(user_id, tool_name, vector),
                'rule_alignment': ConfidenceScorer.rule_alignment(user_id, category, vector),
                'golden_alignment': ConfidenceScorer.golden_alignment(user_id, tool_name, vector),
                'outcome_track': ConfidenceScorer.outcome_track(user_id, tool_name),
            }
        except Exception as e:
            logger.error(f"Confidence scoring failed for {tool_name} ({user_id}): {e}")
            raise ConfidenceError(f"Confidence scoring failed for {tool_name}: {e}") from e

        factors = {name: round(_clamp(float(value)), 3) for name, value in raw.items()}
        factors['composite'] = composite_score(factors)
        logger.debug(f"Confidence {tool_name} for {user_id}: {factors}")
        return check_factors(factors)
