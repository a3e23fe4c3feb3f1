"""ConversationChain: system prompt + inherited history + new input.

Driven by role-tagged history (as resolved by BranchContext) rather than raw
prompt/response pairs, and returns metadata about the assembled chain.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from common import ValidationResult, is_blank, utc_now_iso
from messages import create_message


@dataclass
class MessageChain:
    """Messages ready for an LLM call plus how they were assembled."""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


def build_chain(system_prompt: str, history: List[Dict[str, Any]], new_input: str) -> MessageChain:
    """Assemble [system?] + history + user(new_input).

    History entries are {"role", "content"} dicts; blank entries are skipped.
    A blank new_input raises InvalidContentError.
    """
    history = list(history or [])
    messages: List[Dict[str, Any]] = []

    if not is_blank(system_prompt):
        messages.append(create_message("system", system_prompt))

    for entry in history:
        content = entry.get("content")
        if is_blank(content):
            continue
        messages.append(create_message(entry.get("role", "user"), content))

    messages.append(create_message("user", new_input))

    return MessageChain(
        messages=messages,
        metadata={
            "total_messages": len(messages),
            "has_system_prompt": not is_blank(system_prompt),
            "parent_history_length": len(history),
            "created_at": utc_now_iso(),
        },
    )


def validate_chain(chain: Any) -> ValidationResult:
    """Check role alternation: optional leading system, then user/assistant/user..."""
    messages = chain.messages if isinstance(chain, MessageChain) else (
        chain.get("messages") if isinstance(chain, dict) else None)
    if not isinstance(messages, list):
        return ValidationResult.from_errors(["Messages must be an array"])

    errors: List[str] = []
    if not messages:
        errors.append("Message chain cannot be empty")

    expecting_user = True
    for i, message in enumerate(messages):
        role = message.get("role")
        if i == 0 and role == "system":
            continue
        if expecting_user and role != "user":
            errors.append(f"Expected user message at index {i}, got {role}")
        elif not expecting_user and role != "assistant":
            errors.append(f"Expected assistant message at index {i}, got {role}")
        if role in ("user", "assistant"):
            expecting_user = not expecting_user

    return ValidationResult.from_errors(errors)
