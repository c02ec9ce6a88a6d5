"""
Agent Engine — Chat
====================
One owner turn: persist the message, build a system prompt with the owner's
relevant rules, preferences and tool guardrails, then let the chat model
call tools for up to CHAT_MAX_TOOL_ROUNDS rounds.

Every tool call is scored (unless exempt), gated by the tool's category and the
business domain it acts on, recorded, and then executed, queued as a pending
action, or refused.
"""

import json
import logging
from typing import Dict, List, Optional

from config import Config
from db import get_db
from tracing import Trace
from agent_engine.autonomy import AutonomyStore, gate
from agent_engine.confidence import ConfidenceError, ConfidenceScorer
from agent_engine.db import _get_conn, _ts, _dumps, _loads
from agent_engine.dispatcher import ToolDispatcher
from agent_engine.embeddings import EmbeddingError, decision_text, get_embedding_provider
from agent_engine.genome import ToolGenome
from agent_engine.helpers import _summarize_input
from agent_engine.learning import LearningPipeline, is_correction_message, learn_from_tool_error
from agent_engine.llm import chat_completion
from agent_engine.pending import PendingActions
from agent_engine.recorder import get_recorder
from agent_engine.tools import get_tool, openai_tool_schemas
from agent_engine.types import Disposition

logger = logging.getLogger(__name__)

HISTORY_MESSAGES = 20

SYSTEM_PROMPT = """You are a property management agent working for a residential landlord.
You manage their rental properties: maintenance, tenants, leases, rent, compliance,
listings, inspections, insurance and bonds.

Use the tools to look things up before answering and to take actions the owner asks for.
Some actions need the owner's approval first; when a tool result says an action is
awaiting approval, tell the owner what you queued instead of claiming it is done.
Never invent property, tenant or payment details. Be concise and specific."""


class ConversationNotFound(LookupError):
    """No conversation with that id belongs to the user."""


class ConversationStore:
    """Persisted conversations and messages."""

    @staticmethod
    def create(user_id: str, title: str = None) -> int:
        now = _ts()
        with get_db() as conn:
            cursor = conn.execute('''
                INSERT INTO agent_conversations (user_id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            ''', (user_id, (title or '')[:120] or None, now, now))
            return cursor.lastrowid

    @staticmethod
    def get(conversation_id: int, user_id: str) -> Optional[Dict]:
        conn = _get_conn()
        row = conn.execute('SELECT * FROM agent_conversations WHERE id = ? AND user_id = ?',
                           (conversation_id, user_id)).fetchone()
        conn.close()
        return dict(row) if row else None

    @staticmethod
    def add_message(conversation_id: int, role: str, content: str, tool_calls=None,
                    tokens_used: int = 0) -> int:
        now = _ts()
        with get_db() as conn:
            cursor = conn.execute('''
                INSERT INTO agent_messages (conversation_id, role, content, tool_calls, tokens_used, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (conversation_id, role, content, _dumps(tool_calls) if tool_calls else None,
                  tokens_used, now))
            conn.execute('UPDATE agent_conversations SET updated_at = ? WHERE id = ?', (now, conversation_id))
            return cursor.lastrowid

    @staticmethod
    def messages(conversation_id: int, limit: int = HISTORY_MESSAGES) -> List[Dict]:
        """Latest user/assistant messages, oldest first."""
        conn = _get_conn()
        rows = conn.execute('''
            SELECT * FROM agent_messages WHERE conversation_id = ?
            ORDER BY id DESC LIMIT ?
        ''', (conversation_id, limit)).fetchall()
        conn.close()
        result = []
        for row in reversed(rows):
            message = dict(row)
            message['tool_calls'] = _loads(message.get('tool_calls'), None)
            result.append(message)
        return result

    @staticmethod
    def last_assistant_action(conversation_id: int) -> Optional[str]:
        """The most recent assistant turn, described by the tools it called (or its text)."""
        for message in reversed(ConversationStore.messages(conversation_id)):
            if message['role'] != 'assistant':
                continue
            if message['tool_calls']:
                return '; '.join(f"{c['name']}({json.dumps(c.get('input', {}), default=str)[:150]})"
                                 for c in message['tool_calls'])
            return (message['content'] or '')[:300] or None
        return None


def build_system_prompt(user_id: str, message: str) -> str:
    sections = [SYSTEM_PROMPT]
    try:
        memory = LearningPipeline.relevant_memory(user_id, message)
    except EmbeddingError as e:
        logger.warning(f"Memory lookup failed for {user_id}: {e}")
        memory = {'rules': [], 'preferences': []}

    if memory['rules']:
        sections.append("Rules learned from this owner (follow them):\n" + "\n".join(
            f"- {r['rule_text']}" for r in memory['rules']))
    if memory['preferences']:
        sections.append("Owner preferences:\n" + "\n".join(
            f"- {p['preference_key']}: {p['value']}" for p in memory['preferences']))

    guardrails = []
    for tool_name in ToolGenome.tools_with_guardrails(user_id):
        guardrails.extend(ToolGenome.guardrails(user_id, tool_name, limit=2))
    if guardrails:
        sections.append("Known tool pitfalls (avoid repeating them):\n" + "\n".join(
            f"- {g}" for g in guardrails[:10]))
    return "\n\n".join(sections)


class AgentChat:
    """Tool-using chat turn with confidence scoring and autonomy gating."""

    @staticmethod
    def _score(user_id: str, tool, reasoning: str, summary_text: str):
        if tool.confidence_exempt:
            return None, None, None
        embedding = None
        try:
            embedding = get_embedding_provider().embed(decision_text(tool.name, reasoning, summary_text))
        except EmbeddingError as e:
            logger.warning(f"Decision embedding failed for {tool.name}: {e}")
        try:
            factors = ConfidenceScorer.score(user_id, tool.name, embedding=embedding)
        except ConfidenceError as e:
            logger.warning(f"Confidence unavailable for {tool.name}, treating as 0: {e}")
            return None, 0.0, embedding
        return factors, factors['composite'], embedding

    @staticmethod
    def handle_tool_call(user_id: str, conversation_id: int, settings, tool_name: str, arguments: str,
                         reasoning: str, turn: Dict) -> Dict:
        """Gate and run one tool call. Returns the tool result sent back to the model."""
        tool = get_tool(tool_name)
        if tool is None:
            return {'success': False, 'error': f"Unknown tool: {tool_name}"}
        try:
            tool_input = json.loads(arguments or '{}')
        except ValueError:
            return {'success': False, 'error': f"Arguments for {tool_name} are not valid JSON"}
        if not isinstance(tool_input, dict):
            return {'success': False, 'error': f"Arguments for {tool_name} must be an object"}

        summary_text = _summarize_input(tool_input)
        factors, composite, embedding = AgentChat._score(user_id, tool, reasoning, summary_text)
        result = gate(settings, tool.category, composite, tool.required_level, domain=tool.domain)
        disposition = result.disposition
        turn['trace'].step('gate', tool=tool_name, disposition=disposition.value, composite=composite)

        response: Dict
        auto_executed = False
        recorder = get_recorder()
        decision_ref = None
        if disposition.executes:
            run = ToolDispatcher.run(user_id, tool_name, tool_input)
            auto_executed = run['success']
            turn['tools_used'].append(tool_name)
            if not run['success']:
                learn_from_tool_error(user_id, run['error_type'], tool_name, run['error'],
                                      summary_text, tool.domain)
            response = run
        elif disposition == Disposition.DRAFT:
            decision_ref = recorder.record(
                user_id, tool_name, tool.category, summary_text, tool_input, reasoning, factors,
                disposition.value, embedding, conversation_id=conversation_id)
            description = f"{tool.description}: {summary_text}" if summary_text else tool.description
            action_id = PendingActions.create(user_id, tool_name, tool_input, description, tool.category,
                                              decision_ref=decision_ref, conversation_id=conversation_id)
            turn['pending'].append({'id': action_id, 'tool_name': tool_name,
                                    'description': description, 'category': tool.category})
            response = {'success': False, 'needs_approval': True, 'pending_action_id': action_id,
                        'message': f"Queued for the owner's approval ({result.reason})."}
        elif disposition == Disposition.SUGGEST:
            response = {'success': False, 'suggestion_only': True,
                        'message': f"Not executed: {result.reason}. Recommend this action to the owner instead."}
        else:
            response = {'success': False, 'blocked': True,
                        'message': f"Not permitted: {result.reason}."}

        if decision_ref is None:
            recorder.record(user_id, tool_name, tool.category, summary_text, tool_input, reasoning, factors,
                            disposition.value, embedding, was_auto_executed=auto_executed,
                            conversation_id=conversation_id)
        turn['calls'].append({'name': tool_name, 'input': tool_input, 'disposition': disposition.value})
        return response

    @staticmethod
    def respond(user_id: str, message: str, conversation_id: int = None) -> Dict:
        """
        Run one turn. Returns {conversationId, message, tokensUsed, toolsUsed,
        pendingActions}. Raises ConversationNotFound for a foreign or unknown
        conversation and ValueError for an empty message.
        """
        message = (message or '').strip()
        if not message:
            raise ValueError("message is required")
        trace = Trace('agent_chat', user_id=user_id, conversation_id=conversation_id)

        if conversation_id is not None:
            if ConversationStore.get(conversation_id, user_id) is None:
                trace.finish(error='conversation_not_found')
                raise ConversationNotFound(f"Conversation {conversation_id} not found")
            if is_correction_message(message):
                previous = ConversationStore.last_assistant_action(conversation_id)
                if previous:
                    LearningPipeline.record_correction(
                        user_id, previous, message, context_snapshot={'conversation_id': conversation_id})
                    trace.step('correction_recorded')
        else:
            conversation_id = ConversationStore.create(user_id, message)

        history = ConversationStore.messages(conversation_id)
        ConversationStore.add_message(conversation_id, 'user', message)
        messages = [{'role': 'system', 'content': build_system_prompt(user_id, message)}]
        for previous in history:
            if previous['role'] in ('user', 'assistant') and previous['content']:
                messages.append({'role': previous['role'], 'content': previous['content']})
        messages.append({'role': 'user', 'content': message})
        trace.step('context', history=len(history))

        settings = AutonomyStore.get_settings(user_id)
        tools = openai_tool_schemas()
        turn = {'trace': trace, 'tools_used': [], 'pending': [], 'calls': []}
        tokens_used = 0
        reply = ''

        for round_number in range(1, Config.CHAT_MAX_TOOL_ROUNDS + 1):
            try:
                completion = chat_completion(messages, tools=tools, operation='agent_chat')
            except Exception as e:
                trace.finish(error=str(e))
                raise
            if completion.usage:
                tokens_used += completion.usage.total_tokens or 0
            choice = completion.choices[0].message
            tool_calls = choice.tool_calls or []
            trace.step('llm_call', round=round_number, tool_calls=len(tool_calls))
            if not tool_calls:
                reply = choice.content or ''
                break

            messages.append({
                'role': 'assistant',
                'content': choice.content,
                'tool_calls': [{'id': c.id, 'type': 'function',
                                'function': {'name': c.function.name, 'arguments': c.function.arguments}}
                               for c in tool_calls],
            })
            for call in tool_calls:
                result = AgentChat.handle_tool_call(user_id, conversation_id, settings, call.function.name,
                                                    call.function.arguments, choice.content or message, turn)
                messages.append({'role': 'tool', 'tool_call_id': call.id,
                                 'content': json.dumps(result, default=str)})
        else:
            reply = ("I've reached the limit of actions I can take in one turn. "
                     "Here is where things stand; ask me to continue if needed.")

        if not reply:
            reply = "I wasn't able to put together a response. Please try rephrasing your request."
        ConversationStore.add_message(conversation_id, 'assistant', reply,
                                      tool_calls=turn['calls'] or None, tokens_used=tokens_used)
        trace.finish(tools_used=len(turn['tools_used']), pending=len(turn['pending']), tokens=tokens_used)
        return {
            'conversationId': conversation_id,
            'message': reply,
            'tokensUsed': tokens_used,
            'toolsUsed': turn['tools_used'],
            'pendingActions': turn['pending'],
        }
