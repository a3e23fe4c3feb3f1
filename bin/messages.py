"""MessageBuilder: the single definition of the LLM message format.

Every conversation type (main thread, knowledge, virgin, personality branch)
is turned into messages here:

    {"role": "user" | "assistant" | "system",
     "content": [{"type": "text", "text": "..."}]}

Provider adapters in response.py flatten or lift these as their APIs need.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import config as config_mod
from common import InvalidContentError, ValidationResult, is_blank


VALID_ROLES = ("user", "assistant", "system")

# Accepted spellings for the two halves of an exchange, oldest last.
_USER_KEYS = ("userText", "user_text", "prompt", "input")
_ASSISTANT_KEYS = ("assistantText", "assistant_text", "response")


# ---------------------------------------------------------------------------
# Message construction
# ---------------------------------------------------------------------------
def create_message(role: str, content: Any) -> Dict[str, Any]:
    """Create one block-format message.  Raises InvalidContentError."""
    if role not in VALID_ROLES:
        raise InvalidContentError(f"Invalid role: {role!r}. Must be user, assistant, or system")
    if is_blank(content):
        raise InvalidContentError("Content must be a non-empty string")
    return {
        "role": role,
        "content": [{"type": "text", "text": content.strip()}],
    }


def _first_text(item: Any, keys: Iterable[str]) -> Optional[str]:
    """Return the first non-blank text stored under any of `keys`."""
    for key in keys:
        if isinstance(item, dict):
            value = item.get(key)
        else:
            value = getattr(item, key, None)
        if not is_blank(value):
            return value
    return None


def exchange_texts(item: Any) -> tuple:
    """(user_text, assistant_text) for a dict exchange or a ConversationNode."""
    return _first_text(item, _USER_KEYS), _first_text(item, _ASSISTANT_KEYS)


def _coerce_history(history: Any) -> List[Any]:
    """Accept a list, None, or the container shapes older callers passed."""
    if history is None:
        return []
    if isinstance(history, (list, tuple)):
        return list(history)
    if isinstance(history, dict):
        convs = history.get("conversations")
        if isinstance(convs, list):
            return convs
        return list(history.values())
    raise InvalidContentError(f"conversation history is {type(history).__name__}, expected list")


def build_messages(
    history: Any = None,
    new_input: Optional[str] = None,
    system_prompt: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Build the ordered message list for one LLM call.

    system (if non-blank) -> for each exchange: user, assistant -> new input.
    Exchanges missing a side simply skip that message.
    """
    messages: List[Dict[str, Any]] = []

    if not is_blank(system_prompt):
        messages.append(create_message("system", system_prompt))

    for item in _coerce_history(history):
        user_text, assistant_text = exchange_texts(item)
        if user_text is not None:
            messages.append(create_message("user", user_text))
        if assistant_text is not None:
            messages.append(create_message("assistant", assistant_text))

    if not is_blank(new_input):
        messages.append(create_message("user", new_input))

    if config_mod.DEBUG_MODE:
        print(f"[DEBUG] build_messages: history={len(_coerce_history(history))} exchanges, "
              f"system={'yes' if not is_blank(system_prompt) else 'no'}, "
              f"total={len(messages)} messages")
    return messages


def convert_legacy_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert {"role", "content": str} messages to block format."""
    if not isinstance(messages, list):
        raise InvalidContentError("Legacy messages must be a list")
    converted = []
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, list) and content and isinstance(content[0], dict) \
                and content[0].get("type") == "text":
            converted.append(msg)
        elif isinstance(content, str):
            converted.append(create_message(msg.get("role"), content))
        elif isinstance(content, dict):
            converted.append(create_message(msg.get("role"), content.get("text", "")))
        else:
            converted.append(create_message(msg.get("role"), "" if content is None else str(content)))
    return converted


def flatten_content(message: Dict[str, Any]) -> str:
    """Join the text blocks of a message (plain strings pass through)."""
    content = message.get("content", "")
    if isinstance(content, str):
        return content
    parts = [block.get("text", "") for block in content
             if isinstance(block, dict) and block.get("type") == "text"]
    return "\n".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _structure_errors(index: int, msg: Any) -> List[str]:
    if not isinstance(msg, dict):
        return [f"Message {index}: Must be an object"]
    errors = []
    role = msg.get("role")
    if not role:
        errors.append(f"Message {index}: Missing role")
    elif role not in VALID_ROLES:
        errors.append(f'Message {index}: Invalid role "{role}". Must be user, assistant, or system')

    content = msg.get("content")
    if content is None:
        errors.append(f"Message {index}: Missing content")
    elif not isinstance(content, list):
        errors.append(f"Message {index}: Content must be an array")
    elif not content:
        errors.append(f"Message {index}: Content array cannot be empty")
    else:
        for block_index, block in enumerate(content):
            if not isinstance(block, dict) or not block.get("type") or not block.get("text"):
                errors.append(f"Message {index}: Content item {block_index} missing type or text")
    return errors


def validate_messages(messages: Any) -> ValidationResult:
    """Check structure and ordering of a message list.

    Never mutates the input.  Every problem is collected so callers see all of
    them at once; only a non-list input stops early.
    """
    if not isinstance(messages, list):
        return ValidationResult.from_errors(["Messages must be an array"])
    if not messages:
        return ValidationResult.from_errors(["Messages array cannot be empty"])

    errors: List[str] = []
    for index, msg in enumerate(messages):
        errors.extend(_structure_errors(index, msg))

    # Ordering: system first and at most once, then user/assistant alternation.
    awaiting_assistant = False
    system_seen = False
    for index, msg in enumerate(messages):
        role = msg.get("role") if isinstance(msg, dict) else None
        if role == "system":
            if index != 0:
                errors.append(f"Message {index}: System message must be first")
            if system_seen:
                errors.append(f"Message {index}: Only one system message is allowed")
            system_seen = True
        elif role == "user":
            if awaiting_assistant:
                errors.append(f"Message {index}: Unexpected user message (expecting assistant response)")
            awaiting_assistant = True
        elif role == "assistant":
            if not awaiting_assistant:
                errors.append(f"Message {index}: Unexpected assistant message (expecting user)")
            awaiting_assistant = False

    return ValidationResult.from_errors(errors)


def debug_messages(messages: List[Dict[str, Any]], context: str = "unknown") -> None:
    """Print a preview of each message and the validation outcome (debug mode only)."""
    if not config_mod.DEBUG_MODE:
        return
    print(f"[DEBUG] Messages for {context} ({len(messages)} total):")
    for i, m in enumerate(messages):
        text = flatten_content(m) or "No content"
        print(f"  [{i}] {m.get('role', '?')}: {text[:50]}{'...' if len(text) > 50 else ''}")
    result = validate_messages(messages)
    if result.valid:
        print("[DEBUG] Messages valid")
    else:
        print(f"[DEBUG] Validation errors: {result.errors}")
