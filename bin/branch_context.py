"""BranchContext: what a branch inherits from where it was forked.

History is resolved by walking parent links from the anchor back to the
main-thread root, so a branch off 3.1.1 sees 0, 1, 2, 3, 3.1.0, 3.1.1 and
never a sibling branch or a later main-thread node.  Exchanges that never
got an answer (blank response or status "error") are left out of the history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import config as config_mod
from chain import MessageChain, build_chain
from common import is_blank, utc_now_iso


@dataclass
class BranchContext:
    """Inherited exchanges, the system prompt to apply, and where they came from."""
    history: List[Dict[str, Any]] = field(default_factory=list)
    system_prompt: str = ""
    branch_metadata: Dict[str, Any] = field(default_factory=dict)

    def role_history(self) -> List[Dict[str, Any]]:
        """History as {"role", "content", "nodeId"} entries, user then assistant."""
        out = []
        for item in self.history:
            out.append({"role": "user", "content": item["prompt"], "nodeId": item["nodeId"]})
            if not is_blank(item.get("response")):
                out.append({"role": "assistant", "content": item["response"],
                            "nodeId": f">{item['displayNumber']}"})
        return out


def _usable(node: Any) -> bool:
    """Only answered, non-failed exchanges are replayed to the model."""
    return not is_blank(node.prompt) and not is_blank(node.response) and node.status != "error"


def _own_level(node: Any, path: List[Any]) -> List[Any]:
    """Nodes of `path` at the same nesting level of the same branch as `node`."""
    prefix = node.number.thread_prefix()
    return [n for n in path if n.number == prefix or n.number.in_thread(prefix)]


def _exchange(node: Any) -> Dict[str, Any]:
    return {
        "nodeId": node.id,
        "displayNumber": node.display_number,
        "prompt": node.prompt,
        "response": node.response,
    }


class BranchContextManager:
    def __init__(self, store: Any, prompts: Any = None):
        self.store = store
        self.prompts = prompts

    def _template_text(self, template_id: Optional[str]) -> str:
        if not template_id or self.prompts is None:
            return ""
        template = self.prompts.get_prompt(template_id)
        return template.content if template is not None else ""

    def create_branch_context(self, anchor_node_id: Any, template_id: Optional[str] = None) -> BranchContext:
        """Context for a new branch forked at `anchor_node_id`.

        No anchor means a virgin start: empty history whatever the template.
        """
        history = []
        if anchor_node_id:
            history = [_exchange(n) for n in self.store.history_for(anchor_node_id) if _usable(n)]
        return BranchContext(
            history=history,
            system_prompt=self._template_text(template_id),
            branch_metadata={
                "parentNodeId": anchor_node_id,
                "promptTemplateId": template_id,
                "createdAt": utc_now_iso(),
            },
        )

    def build_context_chain(self, anchor_node_id: Any, template_id: Optional[str],
                            user_input: str) -> MessageChain:
        context = self.create_branch_context(anchor_node_id, template_id)
        return build_chain(context.system_prompt, context.role_history(), user_input)

    def context_for_node(self, node_ref: Any) -> BranchContext:
        """Context for an LLM call answering `node_ref` (the node itself excluded).

        main/knowledge: full ancestry.
        virgin: only earlier nodes of its own branch.
        personality: its own branch plus the branch root's system prompt.
        """
        node = self.store.get_conversation(node_ref)
        path = self.store.history_for(node.id)[:-1]
        branch_type = node.branch_type
        own = _own_level(node, path + [node])

        if node.is_branch and branch_type in ("virgin", "personality"):
            own_ids = {n.id for n in own}
            path = [n for n in path if n.id in own_ids]

        root = own[0] if node.is_branch and own else None
        if branch_type == "personality":
            system_prompt = (root.system_prompt if root is not None else None) or ""
        else:
            template_id = root.metadata.get("templateId") if root is not None else None
            system_prompt = self._template_text(template_id)

        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] context_for_node({node.display_number}, {branch_type}): "
                  f"{len(path)} inherited exchanges, system={'yes' if system_prompt else 'no'}")

        return BranchContext(
            history=[_exchange(n) for n in path if _usable(n)],
            system_prompt=system_prompt,
            branch_metadata={
                "nodeId": node.id,
                "displayNumber": node.display_number,
                "branchType": branch_type,
                "createdAt": utc_now_iso(),
            },
        )

