"""Read-only prompt-template library.

Built-in templates plus any `prompts:` entries in config.yaml:

    prompts:
      - id: terse
        name: Terse
        content: "Answer in one sentence."
        category: personality
        starred: true

A config entry whose id matches a built-in replaces it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import config as config_mod


CATEGORIES = ("personality", "system")
USAGES = ("branch", "merge")


@dataclass(frozen=True)
class PromptTemplate:
    id: str
    name: str
    content: str
    category: str = "personality"
    starred: bool = False
    usage: str = "branch"
    description: str = ""
    is_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "content": self.content,
            "category": self.category,
            "starred": self.starred,
            "usage": self.usage,
            "description": self.description,
            "isDefault": self.is_default,
        }


DEFAULT_PROMPTS: List[PromptTemplate] = [
    PromptTemplate(
        id="vanilla",
        name="Vanilla",
        content="You are a helpful assistant.",
        description="No personality; plain assistant behaviour",
        is_default=True,
    ),
    PromptTemplate(
        id="navigator",
        name="Navigator",
        content=(
            "You are a guide inside a branching conversation. Each branch is a "
            "parallel line of thought. Keep your answers sharp and concrete, and "
            "when a topic clearly deserves its own exploration, say so in one line."
        ),
        starred=True,
        description="Suggests branches and keeps orientation across threads",
    ),
    PromptTemplate(
        id="specialist",
        name="Specialist",
        content=(
            "You are a domain specialist. Answer with technical precision, state "
            "assumptions explicitly, and prefer short worked examples over prose."
        ),
        description="Deep, precise answers for a focused branch",
    ),
    PromptTemplate(
        id="synthesizer",
        name="Synthesizer",
        content=(
            "You are merging the findings of a side branch back into the main "
            "conversation. Summarize what the branch established, what it ruled "
            "out, and what remains open, in that order."
        ),
        category="system",
        usage="merge",
        starred=True,
        description="Summary used when a branch is merged",
        is_default=True,
    ),
    PromptTemplate(
        id="squeezer",
        name="Squeezer",
        content="Compress the conversation so far into the fewest sentences that keep every decision.",
        category="system",
        usage="merge",
        description="Aggressive compression of a branch before merging",
    ),
]


def _template_from_yaml(raw: Any) -> Optional[PromptTemplate]:
    if not isinstance(raw, dict):
        return None
    pid = str(raw.get("id") or "").strip()
    content = raw.get("content")
    if not pid or not isinstance(content, str) or not content.strip():
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] Skipping config.yaml prompt without id/content: {raw!r}")
        return None
    category = raw.get("category", "personality")
    usage = raw.get("usage", "branch")
    return PromptTemplate(
        id=pid,
        name=str(raw.get("name") or pid),
        content=content.strip(),
        category=category if category in CATEGORIES else "personality",
        starred=bool(raw.get("starred", False)),
        usage=usage if usage in USAGES else "branch",
        description=str(raw.get("description", "")),
        is_default=bool(raw.get("is_default", False)),
    )


class PromptLibrary:
    """Template lookup by id, category, and star."""

    def __init__(self, templates: List[PromptTemplate] | None = None,
                 cfg_yaml: Dict[str, Any] | None = None):
        self._templates: Dict[str, PromptTemplate] = {}
        for template in (DEFAULT_PROMPTS if templates is None else templates):
            self._templates[template.id] = template
        if cfg_yaml is None:
            cfg_yaml = config_mod._CONFIG_YAML
        extra = cfg_yaml.get("prompts", []) if isinstance(cfg_yaml, dict) else []
        for raw in extra if isinstance(extra, list) else []:
            template = _template_from_yaml(raw)
            if template is not None:
                self._templates[template.id] = template

    def get_prompt(self, prompt_id: Optional[str]) -> Optional[PromptTemplate]:
        if not prompt_id:
            return None
        return self._templates.get(prompt_id)

    def get_all_prompts(self) -> List[PromptTemplate]:
        return list(self._templates.values())

    def get_prompts_by_category(self, category: str) -> List[PromptTemplate]:
        return [t for t in self._templates.values() if t.category == category]

    def get_starred_prompts(self) -> List[PromptTemplate]:
        return [t for t in self._templates.values() if t.starred]

    def get_branch_prompts(self) -> List[PromptTemplate]:
        return [t for t in self._templates.values() if t.usage == "branch"]

    def get_merge_prompts(self) -> List[PromptTemplate]:
        return [t for t in self._templates.values() if t.usage == "merge"]

    def get_default_prompt(self, usage: str = "branch") -> Optional[PromptTemplate]:
        return next((t for t in self._templates.values()
                     if t.usage == usage and t.is_default), None)
