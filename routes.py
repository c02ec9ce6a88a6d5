"""
Agent API Blueprint.

Entry points:
- POST /agent-chat                  one chat turn for the signed-in owner
- GET|POST /agent-heartbeat         proactive sweep (scheduler / service only)
- POST /agent-learning              corrections, error learning, decision feedback

Owner-facing management:
- /agent/pending-actions            drafts awaiting approval
- /agent/autonomy                   preset, category levels, graduation
- /agent/tasks                      tasks created by the heartbeat
"""

import logging

from flask import Blueprint, g, jsonify, request

from auth import service_auth_required, user_required
from agent_engine.autonomy import AutonomyStore
from agent_engine.chat import AgentChat, ConversationNotFound
from agent_engine.heartbeat import HeartbeatScanner
from agent_engine.knowledge_store import DecisionNotFound, FeedbackAlreadyRecorded
from agent_engine.learning import LearningPipeline
from agent_engine.pending import PendingActionNotFound, PendingActions
from agent_engine.retry import is_rate_limited, is_transient
from agent_engine.tasks import TaskStore

logger = logging.getLogger(__name__)

agent_bp = Blueprint('agent_bp', __name__)

NOT_FOUND_ERRORS = (DecisionNotFound, PendingActionNotFound, ConversationNotFound)


def _error_response(e, context):
    """Map an engine exception to a JSON error response."""
    if isinstance(e, FeedbackAlreadyRecorded):
        return jsonify({'error': str(e)}), 409
    if isinstance(e, NOT_FOUND_ERRORS):
        return jsonify({'error': str(e)}), 404
    if isinstance(e, ValueError):
        return jsonify({'error': str(e)}), 400
    if is_transient(e):
        logger.error(f"Upstream failure in {context}: {e}")
        if is_rate_limited(e):
            return jsonify({'error': 'Upstream rate limit reached, try again shortly'}), 429
        return jsonify({'error': 'Upstream service unavailable'}), 502
    logger.error(f"Error in {context}: {e}", exc_info=True)
    return jsonify({'error': 'Internal server error'}), 500


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _int_field(data, *names):
    for name in names:
        value = data.get(name)
        if value is not None and value != '':
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ValueError(f"{name} must be an integer")
    return None


# ====================================================================
# Entry points
# ====================================================================

@agent_bp.route('/agent-chat', methods=['POST'])
@user_required
def agent_chat():
    try:
        data = _json_body()
        message = (data.get('message') or '').strip()
        if not message:
            return jsonify({'error': 'message is required'}), 400
        conversation_id = _int_field(data, 'conversationId', 'conversation_id')
        return jsonify(AgentChat.respond(g.user_id, message, conversation_id))
    except Exception as e:
        return _error_response(e, 'agent-chat')


@agent_bp.route('/agent-heartbeat', methods=['GET', 'POST'])
@service_auth_required
def agent_heartbeat():
    user_id = (request.args.get('user_id') or '').strip() or None
    try:
        return jsonify(HeartbeatScanner.run(user_id))
    except Exception as e:
        return _error_response(e, 'agent-heartbeat')


def _record_correction(user_id, data):
    original_action = (data.get('original_action') or '').strip()
    correction = (data.get('correction') or '').strip()
    if not original_action or not correction:
        raise ValueError("original_action and correction are required")
    correction_id = LearningPipeline.record_correction(
        user_id, original_action, correction, data.get('context_snapshot'),
        data.get('category'), _int_field(data, 'decision_id'))
    return {'correction_id': correction_id}


def _classify_and_learn(user_id, data):
    return LearningPipeline.classify_and_learn(
        user_id, data.get('error_type'), data.get('tool_name'), data.get('error_message'),
        data.get('input_summary'), data.get('category'))


def _process_feedback(user_id, data):
    decision_id = _int_field(data, 'decision_id')
    if decision_id is None:
        raise ValueError("decision_id is required")
    return LearningPipeline.process_feedback(
        user_id, decision_id, data.get('feedback'), data.get('category'), data.get('correction'))


def _detect_correction_patterns(user_id, data):
    return {'rule_ids': LearningPipeline.detect_correction_patterns(user_id)}


def _message_feedback(user_id, data):
    if 'positive' not in data:
        raise ValueError("positive is required")
    adjusted = LearningPipeline.process_message_feedback(
        user_id, data.get('message_text'), bool(data['positive']))
    return {'rules_adjusted': adjusted}


LEARNING_ACTIONS = {
    'record_correction': _record_correction,
    'classify_and_learn': _classify_and_learn,
    'process_feedback': _process_feedback,
    'detect_correction_patterns': _detect_correction_patterns,
    'message_feedback': _message_feedback,
}


@agent_bp.route('/agent-learning', methods=['POST'])
@user_required
def agent_learning():
    try:
        data = _json_body()
        action = data.get('action')
        handler = LEARNING_ACTIONS.get(action)
        if handler is None:
            return jsonify({'error': f"Unknown action: {action}"}), 400
        return jsonify(handler(g.user_id, data))
    except Exception as e:
        return _error_response(e, 'agent-learning')


# ====================================================================
# Pending actions
# ====================================================================

@agent_bp.route('/agent/pending-actions', methods=['GET'])
@user_required
def list_pending_actions():
    status = request.args.get('status', 'pending')
    limit = request.args.get('limit', 50, type=int)
    try:
        return jsonify({'actions': PendingActions.list_pending(g.user_id, status, limit)})
    except Exception as e:
        return _error_response(e, 'list pending actions')


@agent_bp.route('/agent/pending-actions/<int:action_id>/approve', methods=['POST'])
@user_required
def approve_pending_action(action_id):
    try:
        return jsonify(PendingActions.approve(action_id, g.user_id))
    except Exception as e:
        return _error_response(e, 'approve pending action')


@agent_bp.route('/agent/pending-actions/<int:action_id>/reject', methods=['POST'])
@user_required
def reject_pending_action(action_id):
    try:
        data = _json_body()
        return jsonify(PendingActions.reject(action_id, g.user_id, data.get('reason')))
    except Exception as e:
        return _error_response(e, 'reject pending action')


# ====================================================================
# Autonomy
# ====================================================================

def _autonomy_payload(user_id):
    settings = AutonomyStore.get_settings(user_id)
    return {
        'settings': settings.to_dict(),
        'graduations': AutonomyStore.pending_graduations(user_id),
    }


@agent_bp.route('/agent/autonomy', methods=['GET'])
@user_required
def get_autonomy():
    try:
        return jsonify(_autonomy_payload(g.user_id))
    except Exception as e:
        return _error_response(e, 'get autonomy')


@agent_bp.route('/agent/autonomy', methods=['PUT'])
@user_required
def update_autonomy():
    try:
        data = _json_body()
        if data.get('category'):
            if data.get('level') is None:
                raise ValueError("level is required with category")
            AutonomyStore.set_category_level(g.user_id, data['category'], data['level'])
        elif data.get('preset'):
            AutonomyStore.set_preset(g.user_id, data['preset'])
        else:
            raise ValueError("preset or category/level is required")
        return jsonify(_autonomy_payload(g.user_id))
    except Exception as e:
        return _error_response(e, 'update autonomy')


@agent_bp.route('/agent/autonomy/graduation/<category>/accept', methods=['POST'])
@user_required
def accept_graduation(category):
    try:
        AutonomyStore.accept_graduation(g.user_id, category)
        return jsonify(_autonomy_payload(g.user_id))
    except Exception as e:
        return _error_response(e, 'accept graduation')


@agent_bp.route('/agent/autonomy/graduation/<category>/decline', methods=['POST'])
@user_required
def decline_graduation(category):
    try:
        return jsonify({'graduation': AutonomyStore.decline_graduation(g.user_id, category)})
    except Exception as e:
        return _error_response(e, 'decline graduation')


# ====================================================================
# Tasks
# ====================================================================

@agent_bp.route('/agent/tasks', methods=['GET'])
@user_required
def list_tasks():
    category = request.args.get('category')
    open_only = request.args.get('all', 'false').lower() != 'true'
    limit = request.args.get('limit', 50, type=int)
    try:
        return jsonify({'tasks': TaskStore.list_tasks(g.user_id, category, open_only, limit)})
    except Exception as e:
        return _error_response(e, 'list tasks')


@agent_bp.route('/agent/tasks/<int:task_id>', methods=['GET'])
@user_required
def get_task(task_id):
    try:
        task = TaskStore.get_task(task_id, g.user_id)
        if task is None:
            return jsonify({'error': f"Task {task_id} not found"}), 404
        return jsonify(task)
    except Exception as e:
        return _error_response(e, 'get task')
