"""
Agent Engine — Learning Pipeline
=================================
Turns explicit corrections, tool failures and owner feedback into knowledge:

  FACTUAL_ERROR    → rule (deduplicated: a near-duplicate is reinforced instead)
  REASONING_ERROR  → prompt_guidance preference
  TOOL_MISUSE      → tool genome failure pattern (structural, not embedded)
  CONTEXT_MISSING  → context_pattern preference

classify_and_learn() is best-effort: bad input returns {learned: False, reason}.
Storage and embedding failures on mandatory-embedding writes still raise.
"""

import json
import logging
from typing import Callable, Dict, List, Optional

from config import Config
from constants import CATEGORY_KEYWORDS, CORRECTION_PHRASES
from agent_engine.autonomy import AutonomyStore
from agent_engine.db import log_event
from agent_engine.embeddings import deserialize_vector, get_embedding_provider
from agent_engine.genome import ToolGenome
from agent_engine.helpers import (
    _bag_of_words_similarity, _cosine_similarity, _pattern_key, _significant_word_overlap,
)
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.llm import chat_completion
from agent_engine.types import ArtifactType, ErrorType

logger = logging.getLogger(__name__)

# Rule confidence shift when a related decision is reviewed
FEEDBACK_RULE_DELTAS = {'approved': 0.05, 'rejected': -0.15, 'corrected': -0.10}
FEEDBACK_RULE_SIMILARITY = 0.65

# Correction pattern detection
PATTERN_MIN_CORRECTIONS = 3
PATTERN_COSINE_THRESHOLD = 0.6
PATTERN_WORDS_THRESHOLD = 0.3
PATTERN_RULE_CONFIDENCE = 0.70

# Chat message feedback
MESSAGE_FEEDBACK_MIN_OVERLAP = 3
MESSAGE_FEEDBACK_DELTAS = {True: 0.02, False: -0.05}

PROMPT_GUIDANCE_CONFIDENCE = 0.6
CONTEXT_PATTERN_CONFIDENCE = 0.6

_RULE_PROMPT = (
    "You write one-sentence operating rules for a property management assistant. "
    "Given a failed tool call, state the rule that would have prevented it. "
    "Start with 'When using \"<tool>\":'. Reply with the rule only."
)


def infer_category(text: str) -> str:
    """Keyword routing for corrections and rules."""
    lowered = (text or '').lower()
    best, best_hits = 'general', 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        hits = sum(1 for kw in keywords if kw in lowered)
        if hits > best_hits:
            best, best_hits = category, hits
    return best


def is_correction_message(message: str) -> bool:
    """True when a chat message reads as a correction of the agent's last action."""
    lowered = ' '.join((message or '').lower().split())
    if not lowered:
        return False
    return any(lowered.startswith(p) or f" {p}" in lowered for p in CORRECTION_PHRASES)


def template_rule_text(tool_name: str, error_message: str) -> str:
    lowered = (error_message or '').lower()
    if 'not found' in lowered or 'does not exist' in lowered:
        guidance = 'verify referenced entities exist first'
    else:
        guidance = 'verify data before execution'
    return f'When using "{tool_name}": {guidance}. Error: {(error_message or "")[:100]}'


def generate_rule_text(tool_name: str, error_message: str, input_summary: str = None) -> str:
    """Rule text from the chat model when enabled, otherwise the template."""
    if not Config.RULE_TEXT_FROM_LLM or not Config.OPENAI_API_KEY:
        return template_rule_text(tool_name, error_message)
    prompt = f"Tool: {tool_name}\nError: {error_message[:300]}\nInput: {(input_summary or '')[:300]}"
    try:
        response = chat_completion(
            [{'role': 'system', 'content': _RULE_PROMPT}, {'role': 'user', 'content': prompt}],
            model=Config.RULE_MODEL, max_tokens=120, temperature=0, operation='rule_text')
        text = (response.choices[0].message.content or '').strip()
    except Exception as e:
        logger.warning(f"Rule text generation failed, using template: {e}")
        return template_rule_text(tool_name, error_message)
    return text[:300] if len(text) > 10 else template_rule_text(tool_name, error_message)


def _similar(a: Dict, b: Dict) -> bool:
    va = deserialize_vector(a.get('embedding'))
    vb = deserialize_vector(b.get('embedding'))
    if va is not None and vb is not None:
        return _cosine_similarity(va, vb) > PATTERN_COSINE_THRESHOLD
    return _bag_of_words_similarity(a['correction_text'], b['correction_text']) > PATTERN_WORDS_THRESHOLD


# ---------------------------------------------------------------------------
# Per-error-type learners. Each returns (artifact_type, artifact_id).
# ---------------------------------------------------------------------------

def _learn_factual(user_id, tool_name, error_message, input_summary, category):
    rule_text = generate_rule_text(tool_name, error_message, input_summary)
    artifact_type, rule_id = KnowledgeStore.learn_rule(user_id, rule_text, category, source='factual_error')
    return ArtifactType(artifact_type), rule_id


def _learn_reasoning(user_id, tool_name, error_message, input_summary, category):
    key = f"prompt_guidance:{tool_name}:{_pattern_key(error_message, 40)}"
    value = (f"When using {tool_name}, re-check the reasoning before acting. "
             f"Previous mistake: {error_message[:200]}")
    preference_id = KnowledgeStore.upsert_preference(
        user_id, category, key, value, source='prompt_guidance', confidence=PROMPT_GUIDANCE_CONFIDENCE)
    return ArtifactType.PROMPT_GUIDANCE, preference_id


def _learn_tool_misuse(user_id, tool_name, error_message, input_summary, category):
    genome_id = ToolGenome.record_failure_pattern(user_id, tool_name, error_message, input_summary)
    return ArtifactType.TOOL_GENOME_UPDATE, genome_id


def _learn_context_missing(user_id, tool_name, error_message, input_summary, category):
    key = f"context_pattern:{tool_name}:{_pattern_key(error_message, 40)}"
    value = (f"Before using {tool_name}, fetch the records it depends on. "
             f"Missing context: {error_message[:200]}")
    if input_summary:
        value += f" (input: {input_summary[:100]})"
    preference_id = KnowledgeStore.upsert_preference(
        user_id, category, key, value, source='context_pattern', confidence=CONTEXT_PATTERN_CONFIDENCE)
    return ArtifactType.CONTEXT_PATTERN, preference_id


_LEARNERS: Dict[ErrorType, Callable] = {
    ErrorType.FACTUAL_ERROR: _learn_factual,
    ErrorType.REASONING_ERROR: _learn_reasoning,
    ErrorType.TOOL_MISUSE: _learn_tool_misuse,
    ErrorType.CONTEXT_MISSING: _learn_context_missing,
}


class LearningPipeline:
    """Corrections, error classification and feedback processing."""

    @staticmethod
    def record_correction(user_id: str, original_action: str, correction: str,
                          context_snapshot=None, category: str = None,
                          decision_id: int = None) -> int:
        """Append a correction (always embedded). Returns its id."""
        category = category or infer_category(f"{original_action} {correction}")
        correction_id, _ = KnowledgeStore.insert_correction(
            user_id, original_action, correction, context_snapshot, category, decision_id)
        log_event('learning', 'correction_recorded', json.dumps({
            'user_id': user_id, 'correction_id': correction_id, 'category': category,
        }))
        return correction_id

    @staticmethod
    def classify_and_learn(user_id: str, error_type, tool_name: str, error_message: str,
                           input_summary: str = None, category: str = None) -> Dict:
        """
        Route one classified error to its learner.
        Returns {learned, artifact_type, artifact_id} or {learned: False, reason}.
        """
        if not user_id:
            return {'learned': False, 'reason': 'user_id is required'}
        if not tool_name or not (error_message or '').strip():
            return {'learned': False, 'reason': 'tool_name and error_message are required'}
        try:
            kind = ErrorType(error_type)
        except ValueError:
            return {'learned': False, 'reason': f"unknown error_type: {error_type}"}

        category = category or infer_category(f"{tool_name} {error_message}")
        artifact_type, artifact_id = _LEARNERS[kind](
            user_id, tool_name, error_message.strip(), input_summary, category)
        logger.info(f"Learned {artifact_type.value} #{artifact_id} from {kind.value} on {tool_name}")
        return {'learned': True, 'artifact_type': artifact_type.value, 'artifact_id': artifact_id}

    @staticmethod
    def process_feedback(user_id: str, decision_id: int, feedback: str, category: str = None,
                         correction: str = None) -> Dict:
        """
        Record the owner's verdict on a decision, exactly once, then propagate
        it: graduation counters, related rule confidence, a correction record
        when text is given, and a failure outcome for rejected decisions.
        Raises DecisionNotFound / FeedbackAlreadyRecorded.
        """
        decision = KnowledgeStore.set_owner_feedback(user_id, decision_id, feedback, correction)
        gate_category = category or decision['category']

        if feedback == 'approved':
            AutonomyStore.record_approval(user_id, gate_category)
        else:
            AutonomyStore.record_rejection(user_id, gate_category)

        delta_key = 'corrected' if feedback == 'rejected' and correction else feedback
        rules_adjusted = LearningPipeline._adjust_related_rules(
            user_id, decision_id, FEEDBACK_RULE_DELTAS[delta_key])

        correction_id = None
        if correction and correction.strip():
            correction_id = LearningPipeline.record_correction(
                user_id, f"{decision['tool_name']}: {decision.get('input_summary') or ''}", correction,
                context_snapshot={'decision_id': decision_id, 'feedback': feedback},
                decision_id=decision_id)

        outcome_id = None
        if feedback == 'rejected':
            outcome_id = KnowledgeStore.insert_outcome(
                user_id, decision_id, False, 'owner_rejected', detail=correction,
                tool_name=decision['tool_name'], category=decision['category'])

        log_event('learning', 'feedback_processed', json.dumps({
            'user_id': user_id, 'decision_id': decision_id, 'feedback': feedback,
            'rules_adjusted': rules_adjusted,
        }))
        return {
            'decision_id': decision_id,
            'feedback': feedback,
            'rules_adjusted': rules_adjusted,
            'correction_id': correction_id,
            'outcome_id': outcome_id,
            'graduation': AutonomyStore.check_graduation(user_id, gate_category),
        }

    @staticmethod
    def _adjust_related_rules(user_id: str, decision_id: int, delta: float) -> int:
        vector = KnowledgeStore.get_decision_embedding(decision_id)
        if vector is None:
            return 0
        rules = KnowledgeStore.search_similar_rules(vector, user_id, threshold=FEEDBACK_RULE_SIMILARITY,
                                                    count=10)
        for rule in rules:
            KnowledgeStore.adjust_rule_confidence(user_id, rule['id'], delta)
        return len(rules)

    @staticmethod
    def detect_correction_patterns(user_id: str) -> List[int]:
        """
        Group unmatched corrections; every group of at least three mutually
        similar corrections becomes a rule. Returns the ids of rules
        created or reinforced.
        """
        corrections = KnowledgeStore.get_unmatched_corrections(user_id)
        if len(corrections) < PATTERN_MIN_CORRECTIONS:
            return []

        remaining = list(corrections)
        rule_ids = []
        while len(remaining) >= PATTERN_MIN_CORRECTIONS:
            seed = remaining.pop(0)
            group = [seed]
            for candidate in list(remaining):
                if all(_similar(candidate, member) for member in group):
                    group.append(candidate)
                    remaining.remove(candidate)
            if len(group) < PATTERN_MIN_CORRECTIONS:
                continue

            category = seed.get('category') or 'general'
            rule_text = (f"The owner has corrected this {len(group)} times: "
                         f"{seed['correction_text'][:200]}")
            _, rule_id = KnowledgeStore.learn_rule(
                user_id, rule_text, category, source='correction_pattern',
                start_confidence=PATTERN_RULE_CONFIDENCE)
            KnowledgeStore.mark_corrections_matched([c['id'] for c in group])
            rule_ids.append(rule_id)
            logger.info(f"Correction pattern ({len(group)} corrections) → rule {rule_id} for {user_id}")
        return rule_ids

    @staticmethod
    def process_message_feedback(user_id: str, message_text: str, positive: bool) -> int:
        """Nudge rules that share significant words with a rated chat message."""
        if not (message_text or '').strip():
            return 0
        delta = MESSAGE_FEEDBACK_DELTAS[bool(positive)]
        adjusted = 0
        for rule in KnowledgeStore.get_active_rules(user_id, limit=100):
            if _significant_word_overlap(rule['rule_text'], message_text) >= MESSAGE_FEEDBACK_MIN_OVERLAP:
                KnowledgeStore.adjust_rule_confidence(user_id, rule['id'], delta)
                adjusted += 1
        return adjusted

    @staticmethod
    def relevant_memory(user_id: str, text: str, rule_count: int = 5,
                        preference_count: int = 5) -> Dict[str, List[Dict]]:
        """Active rules and preferences semantically related to text."""
        vector = get_embedding_provider().embed(text)
        if vector is None:
            return {'rules': [], 'preferences': []}
        return {
            'rules': KnowledgeStore.search_similar_rules(vector, user_id, count=rule_count),
            'preferences': KnowledgeStore.search_similar_preferences(vector, user_id,
                                                                     count=preference_count),
        }


def learn_from_tool_error(user_id: str, error_type, tool_name: str, error_message: str,
                          input_summary: str = None, category: str = None) -> Optional[Dict]:
    """classify_and_learn for the chat path: a failure here is logged, never raised."""
    try:
        return LearningPipeline.classify_and_learn(user_id, error_type, tool_name, error_message,
                                                   input_summary, category)
    except Exception as e:
        logger.error(f"Learning from {tool_name} error failed: {e}", exc_info=True)
        return None
