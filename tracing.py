"""
Structured tracing for agent operations.
Generates a unique trace_id per chat turn or heartbeat run and tracks
timing/metadata through every step. While a trace is active its id is
stamped on every log line (see logging_config.TraceContextFilter).

Usage:
    from tracing import Trace

    trace = Trace("agent_chat", user_id=user_id)
    trace.step("llm_call", round=1, tool_calls=2)
    trace.step("gate", tool="send_rent_reminder", disposition="draft")
    ...
    trace.finish(tools_used=2)
"""

import json
import logging
import time
import uuid
from typing import Any, Dict, Optional

from logging_config import current_trace_id, current_user_id

logger = logging.getLogger("agent_engine.trace")


class Trace:
    """Structured trace for a single agent operation."""

    def __init__(self, operation: str, user_id: Optional[str] = None, **context):
        self.trace_id = uuid.uuid4().hex[:12]
        self.operation = operation
        self.user_id = user_id
        self.start_time = time.time()
        self.steps = []
        self._step_start = self.start_time
        self.metadata = {k: _safe_serialize(v) for k, v in context.items()}
        self._trace_token = current_trace_id.set(self.trace_id)
        self._user_token = current_user_id.set(str(user_id) if user_id else '-')
        self._finished = False

        logger.info(f"[{self.trace_id}] START {operation} | user={user_id}")

    def step(self, name: str, **kwargs):
        """Record a step with timing and optional metadata."""
        now = time.time()
        elapsed_ms = round((now - self._step_start) * 1000)
        step_data = {
            "name": name,
            "elapsed_ms": elapsed_ms,
            "total_ms": round((now - self.start_time) * 1000),
        }
        if kwargs:
            step_data["data"] = {k: _safe_serialize(v) for k, v in kwargs.items()}
        self.steps.append(step_data)
        self._step_start = now

        data_str = ""
        if kwargs:
            data_str = " | " + " ".join(f"{k}={_safe_serialize(v)}" for k, v in kwargs.items())
        logger.debug(f"[{self.trace_id}] {name} ({elapsed_ms}ms){data_str}")

    def set(self, key: str, value: Any):
        """Set metadata on the trace."""
        self.metadata[key] = _safe_serialize(value)

    def finish(self, **kwargs) -> Dict:
        """Complete the trace, log the structured record and release the log context."""
        total_ms = round((time.time() - self.start_time) * 1000)
        record = {
            "trace_id": self.trace_id,
            "operation": self.operation,
            "user_id": self.user_id,
            "total_ms": total_ms,
            "step_count": len(self.steps),
            "steps": self.steps,
            "metadata": {**self.metadata, **{k: _safe_serialize(v) for k, v in kwargs.items()}},
        }

        step_names = " > ".join(s["name"] for s in self.steps)
        logger.info(f"[{self.trace_id}] DONE {self.operation} {total_ms}ms | {step_names}")
        logger.debug(f"[{self.trace_id}] TRACE_RECORD: {json.dumps(record, default=str)}")

        self._release()
        return record

    def _release(self):
        if self._finished:
            return
        self._finished = True
        try:
            current_trace_id.reset(self._trace_token)
            current_user_id.reset(self._user_token)
        except ValueError:
            # finished from a different context than it started in
            current_trace_id.set('-')
            current_user_id.set('-')

    def to_dict(self) -> Dict:
        """Return trace as dict (for API responses or testing)."""
        return {
            "trace_id": self.trace_id,
            "operation": self.operation,
            "total_ms": round((time.time() - self.start_time) * 1000),
            "steps": self.steps,
            "metadata": self.metadata,
        }


def _safe_serialize(value: Any) -> Any:
    """Safely serialize a value for logging: truncate large strings, summarize lists."""
    if isinstance(value, str):
        return value[:200] if len(value) > 200 else value
    if isinstance(value, (list, tuple)):
        return f"[{len(value)} items]" if len(value) > 5 else value
    if isinstance(value, dict):
        return f"{{{len(value)} keys}}" if len(value) > 5 else value
    if isinstance(value, (int, float, bool, type(None))):
        return value
    return str(value)[:100]
