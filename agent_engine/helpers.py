"""
Agent Engine — Helper functions
================================
Pure utility functions used across subsystems.
"""

import math
import re
from typing import List, Optional, Sequence

_STOP_WORDS = {
    'the', 'a', 'an', 'is', 'are', 'was', 'were', 'be', 'been', 'being',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could',
    'should', 'may', 'might', 'can', 'shall', 'to', 'of', 'in', 'for', 'on',
    'with', 'at', 'by', 'from', 'it', 'this', 'that', 'and', 'or', 'but',
    'not', 'what', 'how', 'when', 'where', 'which', 'who', 'i', 'my', 'me',
    'you', 'your', 'we', 'our', 'please',
}


def _cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _tokenize(text: str) -> List[str]:
    return [w for w in re.findall(r"[a-z0-9']+", (text or '').lower()) if w not in _STOP_WORDS]


def _bag_of_words_similarity(text1: str, text2: str) -> float:
    """Overlap coefficient on significant words (length > 3)."""
    words1 = {w for w in _tokenize(text1) if len(w) > 3}
    words2 = {w for w in _tokenize(text2) if len(w) > 3}
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / min(len(words1), len(words2))


def _significant_word_overlap(text1: str, text2: str, min_len: int = 5) -> int:
    """Count of shared words at least min_len characters long."""
    words1 = {w for w in _tokenize(text1) if len(w) >= min_len}
    words2 = {w for w in _tokenize(text2) if len(w) >= min_len}
    return len(words1 & words2)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _ema(previous: float, observation: float, alpha: float) -> float:
    """Exponential moving average step."""
    return alpha * observation + (1 - alpha) * previous


def _recency_weighted_mean(values: List[float], decay: float = 0.9) -> Optional[float]:
    """
    Weighted mean where values[0] is the most recent observation and each
    older observation counts `decay` times as much as the one before it.
    """
    if not values:
        return None
    weights = [decay ** i for i in range(len(values))]
    return sum(v * w for v, w in zip(values, weights)) / sum(weights)


def _pattern_key(message: str, length: int = 80) -> str:
    """Stable key for an error message: lowercased, digits/ids collapsed, truncated."""
    text = (message or '').lower()[:length]
    text = re.sub(r'[0-9a-f]{8}-[0-9a-f-]{27,}', '<id>', text)
    text = re.sub(r'\d+', '<n>', text)
    text = re.sub(r'[^a-z<>_ ]+', ' ', text)
    return re.sub(r'\s+', '_', text.strip())


def _summarize_input(tool_input, limit: int = 300) -> str:
    """Compact one-line summary of a tool's arguments."""
    if not tool_input:
        return ''
    if isinstance(tool_input, dict):
        summary = ', '.join(f"{key}={str(value)[:60]}" for key, value in sorted(tool_input.items()))
    else:
        summary = str(tool_input)
    return summary[:limit]
