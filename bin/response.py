"""LLM provider adapters and the chat turn pipeline.

Messages arrive in block format (messages.py).  Each adapter reshapes them
for its API:

  Anthropic: system message lifted to the top-level "system" field,
             content blocks passed through.
  OpenAI:    system kept as the first message, content flattened to text.

process_chat() runs one turn end to end: store the node as processing,
resolve its context, build and validate messages, call the provider, and
write the response back.  summarize_merge() asks the provider for a digest
of a branch thread before closing it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

import config as config_mod
from common import (
    InvalidContentError,
    InvalidMergeError,
    NotFoundError,
    ProviderError,
    is_blank,
    utc_now_iso,
)
from config import Config, _load_config_yaml, chat_defaults
from messages import build_messages, debug_messages, flatten_content, validate_messages


@dataclass
class LLMResult:
    text: str
    usage_tokens: int = 0
    model: str = ""
    timestamp: str = field(default_factory=utc_now_iso)
    usage: Dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Payload adapters
# ---------------------------------------------------------------------------
def to_anthropic_payload(
    messages: List[Dict[str, Any]], model: str, max_tokens: int, temperature: float,
) -> Dict[str, Any]:
    """Anthropic /v1/messages payload; the system message becomes `system`."""
    system_text = ""
    api_messages = []
    for msg in messages:
        if msg["role"] == "system":
            system_text = flatten_content(msg)
            continue
        content = msg["content"]
        if isinstance(content, list):
            content = [dict(block) for block in content]
        api_messages.append({"role": msg["role"], "content": content})

    payload: Dict[str, Any] = {
        "model": model, "max_tokens": max_tokens, "messages": api_messages,
        "temperature": temperature,
    }
    if system_text:
        payload["system"] = system_text
    return payload


def to_openai_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [{"role": m["role"], "content": flatten_content(m)} for m in messages]


# ---------------------------------------------------------------------------
# Provider calls
# ---------------------------------------------------------------------------
def _post(url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout_s: float,
          provider_name: str) -> Dict[str, Any]:
    try:
        resp = requests.post(url, json=payload, headers=headers, timeout=timeout_s)
    except requests.RequestException as exc:
        raise ProviderError(f"{provider_name} request failed: {exc}") from exc
    if resp.status_code >= 400:
        raise ProviderError(f"Error from {provider_name}: HTTP {resp.status_code} {resp.text[:500]}",
                            status_code=resp.status_code)
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderError(f"{provider_name} returned invalid JSON") from exc


# A 200 reply whose JSON is not the documented shape.
_SHAPE_ERRORS = (AttributeError, TypeError, IndexError, KeyError, ValueError)


def _call_anthropic(messages: List[Dict[str, Any]], temperature: float, provider_cfg: Dict,
                    *, max_tokens: int, timeout_s: float) -> LLMResult:
    url = provider_cfg.get("url", "https://api.anthropic.com/v1/messages")
    model = provider_cfg.get("default_model", "claude-sonnet-4-20250514")
    payload = to_anthropic_payload(messages, model=model, max_tokens=max_tokens,
                                   temperature=temperature)

    if config_mod.DEBUG_MODE:
        print(f"[DEBUG] Anthropic → {url}")
        sys_preview = payload.get("system", "(none)")
        if len(sys_preview) > 200:
            sys_preview = sys_preview[:200] + "..."
        print(f"[DEBUG] Anthropic system: {sys_preview}")
        print(f"[DEBUG] Anthropic messages ({len(payload['messages'])})")

    headers = {
        "Content-Type": "application/json",
        "x-api-key": provider_cfg["api_key"],
        "anthropic-version": "2023-06-01",
    }
    name = provider_cfg.get("name", "Anthropic")
    data = _post(url, payload, headers, timeout_s, name)
    try:
        text = "".join(b.get("text", "") for b in data.get("content") or [] if b.get("type") == "text")
        raw_usage = data.get("usage") or {}
        usage = {
            "input_tokens": int(raw_usage.get("input_tokens", 0) or 0),
            "output_tokens": int(raw_usage.get("output_tokens", 0) or 0),
        }
        reply_model = str(data.get("model") or model)
    except _SHAPE_ERRORS as exc:
        raise ProviderError(f"{name} returned an unexpected response: {exc}") from exc
    return LLMResult(
        text=text or "[No content]",
        usage_tokens=usage["input_tokens"] + usage["output_tokens"],
        model=reply_model,
        usage=usage,
    )


def _call_openai(messages: List[Dict[str, Any]], temperature: float, provider_cfg: Dict,
                 *, max_tokens: int, timeout_s: float) -> LLMResult:
    url = provider_cfg.get("url", "https://api.openai.com/v1/chat/completions")
    model = provider_cfg.get("default_model", "gpt-4o")
    payload = {
        "model": model, "messages": to_openai_messages(messages),
        "temperature": temperature, "max_tokens": max_tokens,
    }
    if config_mod.DEBUG_MODE:
        print(f"[DEBUG] OpenAI → {url} ({len(payload['messages'])} messages)")
    headers = {"Content-Type": "application/json", "Authorization": f"Bearer {provider_cfg['api_key']}"}
    name = provider_cfg.get("name", "OpenAI")
    data = _post(url, payload, headers, timeout_s, name)
    try:
        text = (data.get("choices") or [{}])[0].get("message", {}).get("content") or ""
        raw_usage = data.get("usage") or {}
        usage = {
            "input_tokens": int(raw_usage.get("prompt_tokens", 0) or 0),
            "output_tokens": int(raw_usage.get("completion_tokens", 0) or 0),
        }
        reply_model = str(data.get("model") or model)
    except _SHAPE_ERRORS as exc:
        raise ProviderError(f"{name} returned an unexpected response: {exc}") from exc
    if not isinstance(text, str):
        raise ProviderError(f"{name} returned non-text content")
    return LLMResult(
        text=text or "[No content]",
        usage_tokens=usage["input_tokens"] + usage["output_tokens"],
        model=reply_model,
        usage=usage,
    )


_ADAPTERS: Dict[str, Callable[..., LLMResult]] = {
    "anthropic": _call_anthropic,
    "openai": _call_openai,
}


def call_provider(cfg: Config, messages: List[Dict[str, Any]], provider: str | None = None,
                  model: str | None = None, temperature: float = 0.7,
                  client_api_key: str = "") -> LLMResult:
    """Send block-format messages to a provider.  Raises ProviderError."""
    provider = provider or cfg.default_provider
    pcfg = config_mod.PROVIDERS.get(provider)
    if not pcfg:
        raise ProviderError(f"Unknown provider: {provider}. Available: {', '.join(config_mod.PROVIDERS)}")
    adapter = _ADAPTERS.get(provider)
    if adapter is None:
        raise ProviderError(f"Provider '{provider}' not implemented")

    effective_cfg = dict(pcfg)
    if model:
        effective_cfg["default_model"] = model
    # Stateless: client key first.  Server mode: server key, then config.yaml reload, then client key.
    if config_mod.STATELESS_MODE:
        if client_api_key:
            effective_cfg["api_key"] = client_api_key
    elif not effective_cfg.get("api_key"):
        fresh = _load_config_yaml()
        fresh_key = ((fresh.get("providers") or {}).get(provider) or {}).get("api_key", "")
        if fresh_key:
            effective_cfg["api_key"] = fresh_key
            config_mod.PROVIDERS[provider]["api_key"] = fresh_key
        elif client_api_key:
            effective_cfg["api_key"] = client_api_key
    if not effective_cfg.get("api_key"):
        raise ProviderError(f"No API key for {provider}. Set it in the environment or config.yaml.")

    if config_mod.DEBUG_MODE:
        print(f"[DEBUG] → {provider} (model={effective_cfg.get('default_model')}, temperature={temperature})")
    return adapter(messages, temperature, effective_cfg,
                   max_tokens=cfg.max_tokens, timeout_s=cfg.timeout_s)


# ---------------------------------------------------------------------------
# Chat turn
# ---------------------------------------------------------------------------
def _resolve_temperature(body: Dict[str, Any], defaults: Dict[str, Any]) -> float:
    raw = body.get("temperature", defaults.get("temperature", 0.7))
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidContentError(f"temperature must be a number, got {raw!r}") from None
    return max(0.0, min(2.0, value))


def process_chat(
    cfg: Config,
    store: Any,
    contexts: Any,
    body: Dict[str, Any],
    *,
    call_fn: Optional[Callable[..., LLMResult]] = None,
) -> Dict[str, Any]:
    """Run one chat turn and return {"node", "text", "usage", "model"}.

    body:
      prompt        user input (required)
      branchFrom    fork a new branch from this node ref
      branchType    knowledge | virgin | personality (with branchFrom)
      templateId    prompt template for the new branch
      systemPrompt  personality text (overrides the template's)
      branchId      continue this branch (node ref or pending planned number)
      provider, model, temperature, apiKey
    Without branchFrom/branchId the turn is appended to the main thread.
    """
    prompt = body.get("prompt")
    if is_blank(prompt):
        raise InvalidContentError("prompt must be a non-empty string")

    defaults = chat_defaults()
    provider = (body.get("provider") or cfg.default_provider).strip()
    model = (body.get("model") or defaults.get("model") or "").strip()
    temperature = _resolve_temperature(body, defaults)
    fields = {"status": "processing", "temperature": temperature, "provider": provider}

    if body.get("branchFrom") is not None:
        branch_type = body.get("branchType") or "knowledge"
        template_id = body.get("templateId")
        system_prompt = body.get("systemPrompt")
        if branch_type == "personality" and is_blank(system_prompt) and contexts.prompts is not None:
            template = contexts.prompts.get_prompt(template_id)
            system_prompt = template.content if template is not None else None
        handle = store.create_branch(body["branchFrom"], branch_type,
                                     system_prompt=system_prompt, template_id=template_id)
        node = store.add_conversation_to_branch(handle, prompt, "", fields)
    elif body.get("branchId") is not None:
        node = store.add_conversation_to_branch(body["branchId"], prompt, "", fields)
    else:
        node = store.add_conversation(prompt, "", fields)

    print(f"[Dagger] Chat: node={node.display_number} ({node.branch_type}), provider='{provider}', "
          f"model='{model or config_mod.PROVIDERS.get(provider, {}).get('default_model', '?')}'")

    context = contexts.context_for_node(node.id)
    messages = build_messages(context.history, prompt, context.system_prompt)
    debug_messages(messages, f"node {node.display_number}")

    if defaults.get("validate", True):
        result = validate_messages(messages)
        if not result.valid:
            store.update_conversation(node.id, {"status": "error", "error": "; ".join(result.errors)})
            result.raise_if_invalid()

    call = call_fn or call_provider
    try:
        llm = call(cfg, messages, provider, model, temperature, client_api_key=body.get("apiKey") or "")
    except ProviderError as exc:
        store.update_conversation(node.id, {"status": "error", "error": str(exc)})
        print(f"[Dagger] Chat failed for node {node.display_number}: {exc}")
        raise

    node = store.update_conversation(node.id, {
        "response": llm.text,
        "status": "complete",
        "model": llm.model or model,
        "usage": llm.usage,
    })
    if config_mod.DEBUG_MODE:
        print(f"[DEBUG] ← Response ({len(llm.text)} chars): {llm.text[:120]}...")
    return {"node": node.to_dict(), "text": llm.text, "usage": llm.usage, "model": node.model}


# ---------------------------------------------------------------------------
# Merge summary
# ---------------------------------------------------------------------------
def thread_transcript(nodes: List[Any]) -> str:
    """Plain "User:/Assistant:" transcript of a thread, blank prompts skipped."""
    lines = []
    for node in nodes:
        if is_blank(node.prompt):
            continue
        lines.append(f"User: {node.prompt.strip()}")
        if not is_blank(node.response):
            lines.append(f"Assistant: {node.response.strip()}")
    return "\n".join(lines)


def summarize_merge(
    cfg: Config,
    store: Any,
    prompts: Any,
    source: Any,
    target: Any,
    prompt_id: str | None = None,
    *,
    provider: str | None = None,
    model: str | None = None,
    client_api_key: str = "",
    call_fn: Optional[Callable[..., LLMResult]] = None,
) -> Dict[str, Any]:
    """Summarize the source thread with a merge template, then merge it into target.

    The template is `prompt_id` or the library's default merge prompt.  The
    merge is only recorded once the provider has answered; a ProviderError
    leaves the thread open.  Returns {"mergeId", "summary", "promptId"}.
    """
    if not store.can_merge_nodes(source, target):
        raise InvalidMergeError(f"Cannot merge {source} into {target}")
    node = store.get_conversation(source)
    if store.is_thread_merged(node.display_number):
        raise InvalidMergeError(f"Thread {store.get_branch_prefix(node.display_number)} is already merged")
    template = prompts.get_prompt(prompt_id) if prompt_id else prompts.get_default_prompt("merge")
    if template is None:
        raise NotFoundError(f"Merge prompt not found: {prompt_id or '(default)'}")

    transcript = thread_transcript(store.get_branch_thread(node.display_number))
    messages = build_messages([], transcript, template.content)
    debug_messages(messages, f"merge summary of {node.display_number}")
    validate_messages(messages).raise_if_invalid()

    defaults = chat_defaults()
    provider = (provider or cfg.default_provider).strip()
    model = (model or defaults.get("model") or "").strip()
    temperature = _resolve_temperature({}, defaults)
    call = call_fn or call_provider
    try:
        llm = call(cfg, messages, provider, model, temperature, client_api_key=client_api_key)
    except ProviderError as exc:
        print(f"[Dagger] Merge summary failed for {node.display_number}: {exc}")
        raise

    merge_id = store.merge_nodes(node.id, target, summary=llm.text, prompt_id=template.id)
    return {"mergeId": merge_id, "summary": llm.text, "promptId": template.id}
