"""Token usage and cost accounting."""

from __future__ import annotations

from typing import Any, Dict, Iterable

from common import utc_now_iso


# USD per million tokens
PRICING: Dict[str, Dict[str, Any]] = {
    "claude-3-5-sonnet-20241022": {"input": 3.00, "output": 15.00, "cached": 0.30, "name": "Claude 3.5 Sonnet"},
    "claude-3-5-haiku-20241022": {"input": 0.80, "output": 4.00, "cached": 0.08, "name": "Claude 3.5 Haiku"},
    "claude-3-opus-20240229": {"input": 15.00, "output": 75.00, "cached": 1.50, "name": "Claude 3 Opus"},
    "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25, "cached": 0.03, "name": "Claude 3 Haiku"},
    "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00, "cached": 0.30, "name": "Claude Sonnet 4"},
    "claude-opus-4-20250514": {"input": 15.00, "output": 75.00, "cached": 1.50, "name": "Claude Opus 4"},
    "gpt-4o": {"input": 2.50, "output": 10.00, "cached": 1.25, "name": "GPT-4o"},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60, "cached": 0.075, "name": "GPT-4o mini"},
}
FALLBACK_MODEL = "claude-3-5-sonnet-20241022"
TOKENS_PER_WORD = 0.75


def calculate_cost(model: str, input_tokens: int, output_tokens: int,
                   cached_tokens: int = 0) -> Dict[str, Any]:
    """Cost breakdown in USD.  Unknown models are priced as FALLBACK_MODEL."""
    pricing = PRICING.get(model) or PRICING[FALLBACK_MODEL]
    input_cost = input_tokens / 1_000_000 * pricing["input"]
    output_cost = output_tokens / 1_000_000 * pricing["output"]
    cached_cost = cached_tokens / 1_000_000 * pricing["cached"]
    return {
        "input_cost": input_cost,
        "output_cost": output_cost,
        "cached_cost": cached_cost,
        "total_cost": input_cost + output_cost + cached_cost,
        "model": pricing["name"],
        "timestamp": utc_now_iso(),
    }


def estimate_tokens(text: str) -> int:
    """Rough token count for text that has not been sent yet."""
    if not text:
        return 0
    return round(len(text.split()) * TOKENS_PER_WORD)


def session_usage(nodes: Iterable[Any]) -> Dict[str, Any]:
    """Sum recorded usage across nodes (ConversationNode or node dicts)."""
    totals = {"input_tokens": 0, "output_tokens": 0, "total_cost": 0.0, "calls": 0}
    for node in nodes:
        usage = node.get("usage") if isinstance(node, dict) else getattr(node, "usage", None)
        if not usage:
            continue
        model = (node.get("model") if isinstance(node, dict) else getattr(node, "model", None)) or ""
        input_tokens = int(usage.get("input_tokens", 0) or 0)
        output_tokens = int(usage.get("output_tokens", 0) or 0)
        totals["input_tokens"] += input_tokens
        totals["output_tokens"] += output_tokens
        totals["total_cost"] += calculate_cost(model, input_tokens, output_tokens)["total_cost"]
        totals["calls"] += 1
    totals["total_tokens"] = totals["input_tokens"] + totals["output_tokens"]
    return totals
