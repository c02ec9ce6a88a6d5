"""
Agent Engine — LLM client
==========================
Process-wide OpenAI client plus a chat-completion call that goes through the
retry policy with a bounded timeout.
"""

import logging
import threading

import openai

from config import Config
from agent_engine.retry import call_with_retry

logger = logging.getLogger(__name__)

_client = None
_client_lock = threading.Lock()


def get_openai_client():
    global _client
    with _client_lock:
        if _client is None:
            _client = openai.OpenAI(api_key=Config.OPENAI_API_KEY, timeout=Config.LLM_TIMEOUT_SECONDS)
    return _client


def set_openai_client(client):
    """Swap the client (tests, proxies)."""
    global _client
    with _client_lock:
        _client = client


def chat_completion(messages, model: str = None, tools=None, max_tokens: int = None,
                    temperature: float = None, operation: str = 'chat'):
    """One chat completion, retried on transient upstream errors."""
    kwargs = {
        'model': model or Config.CHAT_MODEL,
        'messages': messages,
        'max_tokens': max_tokens or Config.CHAT_MAX_TOKENS,
        'temperature': Config.CHAT_TEMPERATURE if temperature is None else temperature,
    }
    if tools:
        kwargs['tools'] = tools
    client = get_openai_client()
    return call_with_retry(client.chat.completions.create, operation=operation, **kwargs)
