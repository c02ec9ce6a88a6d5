"""
Authentication for the agent endpoints.

End-user routes (agent-chat, agent-learning) run as the user stored in the
Flask session, or as the user named in X-User-Id when the request carries a
service credential (backend functions calling on a user's behalf).

The heartbeat only accepts a scheduler secret or a service credential, never
an end-user session.
"""

import hmac
import logging
from functools import wraps

from flask import g, jsonify, request, session
from werkzeug.security import check_password_hash

from config import Config

logger = logging.getLogger(__name__)


def _secret_matches(provided, expected):
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def _bearer_token():
    header = request.headers.get('Authorization', '')
    if header.lower().startswith('bearer '):
        return header[7:].strip()
    return None


def has_cron_secret():
    """X-Cron-Secret header matches CRON_SECRET."""
    return _secret_matches(request.headers.get('X-Cron-Secret'), Config.CRON_SECRET)


def has_service_credential():
    """Bearer token matches SERVICE_API_KEY, or its werkzeug hash in SERVICE_API_KEY_HASH."""
    token = _bearer_token()
    if not token:
        return False
    if _secret_matches(token, Config.SERVICE_API_KEY):
        return True
    key_hash = Config.SERVICE_API_KEY_HASH
    return bool(key_hash) and check_password_hash(key_hash, token)


def get_current_user_id():
    """Resolve the acting user id for this request, or None."""
    user_id = session.get('user_id')
    if user_id:
        return str(user_id)
    delegated = request.headers.get('X-User-Id')
    if delegated and has_service_credential():
        return delegated.strip()
    return None


# ---------------------------------------------------------------------------
# Route protection
# ---------------------------------------------------------------------------

def user_required(f):
    """Decorator for routes that act on behalf of one user. Sets g.user_id."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = get_current_user_id()
        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401
        g.user_id = user_id
        return f(*args, **kwargs)
    return decorated_function


def service_auth_required(f):
    """Decorator for scheduler/service-only routes (cron secret or service key)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if has_cron_secret() or has_service_credential():
            return f(*args, **kwargs)
        logger.warning(f"Rejected unauthenticated call to {request.path} from {request.remote_addr}")
        return jsonify({'error': 'Unauthorized'}), 401
    return decorated_function
