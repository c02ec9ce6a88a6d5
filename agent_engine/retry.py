"""
Agent Engine — Upstream retry policy
=====================================
Bounded exponential backoff for LLM, embedding and backend calls.

Only transient classes are retried (rate limiting, gateway errors, timeouts);
every other error fails on the first attempt.
"""

import logging

import openai
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import Config

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {429, 502, 503, 504, 529}


class TransientUpstreamError(RuntimeError):
    """Raised by callers to mark an upstream failure as retryable."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


def _status_code(exc):
    code = getattr(exc, 'status_code', None)
    if code is None:
        response = getattr(exc, 'response', None)
        code = getattr(response, 'status_code', None)
    return code


def is_transient(exc: BaseException) -> bool:
    """True for errors worth retrying: 429/5xx gateway codes and timeouts."""
    if isinstance(exc, (TransientUpstreamError, TimeoutError)):
        return True
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError,
                        openai.APIConnectionError, openai.InternalServerError)):
        return True
    return _status_code(exc) in TRANSIENT_STATUS_CODES


def is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, openai.RateLimitError) or _status_code(exc) == 429


def _log_retry(retry_state):
    exc = retry_state.outcome.exception()
    logger.warning(
        f"Transient upstream error (attempt {retry_state.attempt_number}): {exc}. "
        f"Retrying in {retry_state.next_action.sleep:.1f}s"
    )


def call_with_retry(fn, *args, operation: str = 'upstream', max_attempts: int = None,
                    initial_delay: float = None, **kwargs):
    """
    Call fn(*args, **kwargs), retrying transient failures with backoff that
    doubles from initial_delay. The last exception is re-raised once the
    attempt budget is spent.
    """
    attempts = max_attempts or Config.RETRY_MAX_ATTEMPTS
    delay = Config.RETRY_INITIAL_DELAY if initial_delay is None else initial_delay
    retrying = Retrying(
        retry=retry_if_exception(is_transient),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=delay, min=delay, max=Config.RETRY_MAX_DELAY),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        return retrying(fn, *args, **kwargs)
    except RetryError as e:
        raise e.last_attempt.exception()
    except Exception as e:
        if is_transient(e):
            logger.error(f"{operation} failed after {attempts} attempts: {e}")
        raise
