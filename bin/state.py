"""DAGGER conversation store: nodes, hierarchical numbering, branches, merges.

Data model:
  - ConversationNode: one prompt/response exchange with a display number
  - BranchHandle: a requested branch whose first prompt has not arrived yet
  - MergeRecord: a closed branch and the node it was merged into

The store owns identity and numbering.  Main-thread nodes are numbered
0, 1, 2, ...; branch nodes <parent>.<branchIndex>.<position> (see numbering.py).
A branch root is only stored once its first prompt is supplied, so an
abandoned "new branch" click never leaves a ghost node behind.

Every mutation is written through to the blob store (storage.py) as one
serialized dict:

  {"nodes": [[id, node], ...], "mainThread": [id, ...],
   "branches": [[parentId, [id, ...]], ...], "mergedBranchPrefixes": [...],
   "mergeLog": [[sourceId, record], ...], "counter": int}

If that save fails, the in-memory change is rolled back.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

import config as config_mod
from common import (
    InvalidContentError,
    InvalidMergeError,
    NotFoundError,
    StateValidationError,
    _coerce_timestamp,
    epoch_millis,
    is_blank,
    new_merge_id,
    new_node_id,
    utc_now_iso,
)
from numbering import DisplayNumber, generate_next_in_branch, get_branch_prefix, is_branch_id


BRANCH_TYPES = ("none", "virgin", "personality", "knowledge")
STATUSES = ("ready", "processing", "complete", "error")
MAIN_THREAD = "main"
DEFAULT_MAX_BRANCH_PROBES = 100

# Python attribute -> persisted key
_WIRE_KEYS = {
    "display_number": "displayNumber",
    "parent_id": "parentId",
    "branch_type": "branchType",
    "system_prompt": "systemPrompt",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}
_ATTR_KEYS = {v: k for k, v in _WIRE_KEYS.items()}

# Owned by the store; callers can never patch these.
_STRUCTURAL = {"id", "display_number", "parent_id", "depth", "branch_type", "created_at"}
_NODE_FIELDS = {"prompt", "response", "status", "system_prompt", "model", "temperature", "usage"}


def _attr_key(key: str) -> str:
    return _ATTR_KEYS.get(key, key)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass
class ConversationNode:
    """One prompt/response exchange."""
    id: str
    display_number: str
    prompt: str = ""
    response: str = ""
    parent_id: Optional[str] = None
    branch_type: str = "none"
    depth: int = 0
    status: str = "ready"
    system_prompt: Optional[str] = None  # Branch roots of personality type only.
    model: Optional[str] = None
    temperature: Optional[float] = None
    usage: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def number(self) -> DisplayNumber:
        return DisplayNumber.parse(self.display_number)

    @property
    def is_branch(self) -> bool:
        return self.number.is_branch

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "displayNumber": self.display_number,
            "prompt": self.prompt,
            "response": self.response,
            "parentId": self.parent_id,
            "branchType": self.branch_type,
            "depth": self.depth,
            "status": self.status,
            "model": self.model,
            "temperature": self.temperature,
            "usage": dict(self.usage),
            "metadata": dict(self.metadata),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.system_prompt is not None:
            out["systemPrompt"] = self.system_prompt
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], node_id: str | None = None) -> "ConversationNode":
        """Build a node from its persisted form.  Raises StateValidationError."""
        if not isinstance(raw, dict):
            raise StateValidationError("Node must be an object")
        item = {_attr_key(k): v for k, v in raw.items()}
        nid = str(node_id or item.get("id") or "").strip()
        if not nid:
            raise StateValidationError("Node is missing an id")
        try:
            number = DisplayNumber.parse(item.get("display_number"))
        except ValueError as exc:
            raise StateValidationError(f"Node {nid}: {exc}") from exc
        branch_type = item.get("branch_type") or "none"
        if branch_type not in BRANCH_TYPES:
            raise StateValidationError(f"Node {nid}: unknown branch type {branch_type!r}")
        status = item.get("status") or "ready"
        if status not in STATUSES:
            raise StateValidationError(f"Node {nid}: unknown status {status!r}")
        usage = item.get("usage")
        metadata = item.get("metadata")
        return cls(
            id=nid,
            display_number=str(number),
            prompt=str(item.get("prompt") or ""),
            response=str(item.get("response") or ""),
            parent_id=item.get("parent_id") or None,
            branch_type=branch_type,
            depth=int(item.get("depth") or number.hierarchy_level),
            status=status,
            system_prompt=item.get("system_prompt"),
            model=item.get("model"),
            temperature=item.get("temperature"),
            usage=dict(usage) if isinstance(usage, dict) else {},
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            created_at=_coerce_timestamp(item.get("created_at")),
            updated_at=_coerce_timestamp(item.get("updated_at")),
        )


@dataclass
class BranchHandle:
    """A branch that has been requested but not yet given its first prompt."""
    parent_id: str
    planned_display_number: str
    branch_type: str
    depth: int
    system_prompt: Optional[str] = None
    template_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parentId": self.parent_id,
            "plannedDisplayNumber": self.planned_display_number,
            "branchType": self.branch_type,
            "depth": self.depth,
            "systemPrompt": self.system_prompt,
            "templateId": self.template_id,
            "createdAt": self.created_at,
        }


@dataclass
class MergeRecord:
    """Closure of a branch into a target node."""
    merge_id: str
    source_id: str
    target_id: str
    source_display_number: str
    target_display_number: str
    timestamp: str = field(default_factory=utc_now_iso)
    summary: Optional[str] = None
    prompt_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mergeId": self.merge_id,
            "sourceId": self.source_id,
            "targetId": self.target_id,
            "sourceDisplayNumber": self.source_display_number,
            "targetDisplayNumber": self.target_display_number,
            "timestamp": self.timestamp,
            "summary": self.summary,
            "promptId": self.prompt_id,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], source_id: str) -> "MergeRecord":
        if not isinstance(raw, dict) or not raw.get("targetId"):
            raise StateValidationError(f"Merge record for {source_id} must name a targetId")
        return cls(
            merge_id=str(raw.get("mergeId") or new_merge_id()),
            source_id=source_id,
            target_id=str(raw["targetId"]),
            source_display_number=str(raw.get("sourceDisplayNumber", "")),
            target_display_number=str(raw.get("targetDisplayNumber", "")),
            timestamp=str(raw.get("timestamp") or utc_now_iso()),
            summary=raw.get("summary") or None,
            prompt_id=raw.get("promptId") or None,
        )


# ---------------------------------------------------------------------------
# History extraction
# ---------------------------------------------------------------------------
def _id_of(item: Any) -> Any:
    return item.get("id") if isinstance(item, dict) else getattr(item, "id", None)


def _parent_of(item: Any) -> Any:
    if isinstance(item, dict):
        return item.get("parentId", item.get("parent_id"))
    return getattr(item, "parent_id", None)


def extract_conversation_history(
    nodes: Iterable[Any],
    thread_id: str,
    *,
    prefer_main_thread: bool = False,
) -> list:
    """Ordered chain of nodes (or node dicts) leading to `thread_id`.

    thread_id == "main": walk forward from the root (parent None).  When a
    node has several children the first one found in `nodes` is followed and
    the others are left out; with prefer_main_thread a non-branch child wins.

    Otherwise walk parent links back from `thread_id` to the root and return
    the path root-first.
    """
    if not isinstance(nodes, (list, tuple)):
        return []

    if thread_id == MAIN_THREAD:
        chain = []
        seen = set()
        current = next((n for n in nodes if not _parent_of(n)), None)
        while current is not None and _id_of(current) not in seen:
            chain.append(current)
            seen.add(_id_of(current))
            children = [n for n in nodes if _parent_of(n) == _id_of(current)]
            if prefer_main_thread:
                main_children = [c for c in children if not _is_branch_item(c)]
                children = main_children or children
            current = children[0] if children else None
        return chain

    by_id = {_id_of(n): n for n in nodes}
    chain = []
    visited = set()
    current_id = thread_id
    while current_id and current_id not in visited:
        visited.add(current_id)
        node = by_id.get(current_id)
        if node is None:
            break
        chain.append(node)
        current_id = _parent_of(node)
    chain.reverse()
    return chain


def _is_branch_item(item: Any) -> bool:
    if isinstance(item, dict):
        return is_branch_id(item.get("displayNumber", item.get("display_number", "")))
    return is_branch_id(getattr(item, "display_number", ""))


# ---------------------------------------------------------------------------
# Conversation store
# ---------------------------------------------------------------------------
class ConversationStore:
    """Owns every conversation node and the rules that number and merge them.

    One writer at a time: mutations hold an RLock so the branch-index probe
    and the write-through save run as one step.
    """

    def __init__(self, blob_store: Any = None, *, max_branch_probes: int = DEFAULT_MAX_BRANCH_PROBES):
        self.blob_store = blob_store
        self.max_branch_probes = max(1, int(max_branch_probes))
        self._lock = threading.RLock()
        self._clear()

    # -- lifecycle ---------------------------------------------------------
    def _clear(self) -> None:
        self.nodes_by_id: Dict[str, ConversationNode] = {}
        self.main_thread: List[str] = []
        self.branch_children: Dict[str, List[str]] = {}
        self.merged_branch_prefixes: set = set()
        self.merge_log: Dict[str, MergeRecord] = {}
        self.counter = 0
        self._by_number: Dict[DisplayNumber, str] = {}
        self._pending: Dict[DisplayNumber, BranchHandle] = {}

    def load(self, *, strict: bool = True) -> "ConversationStore":
        """Replace in-memory state with whatever the blob store holds."""
        with self._lock:
            data = self.blob_store.load() if self.blob_store is not None else None
            self._clear()
            if data is not None:
                self._restore(data, strict=strict)
        return self

    def reset(self) -> None:
        """Drop every node, handle, and merge, then persist the empty store."""
        with self._mutation():
            self._clear()

    def _persist(self) -> None:
        if self.blob_store is not None:
            self.blob_store.save(self.to_serialized())

    _SNAPSHOT_ATTRS = ("nodes_by_id", "main_thread", "branch_children", "merged_branch_prefixes",
                       "merge_log", "counter", "_by_number", "_pending")

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Hold the lock, run the change, save it; restore memory if either step fails."""
        with self._lock:
            saved = copy.deepcopy({name: getattr(self, name) for name in self._SNAPSHOT_ATTRS})
            try:
                yield
                self._persist()
            except Exception:
                for name, value in saved.items():
                    setattr(self, name, value)
                raise

    # -- lookup ------------------------------------------------------------
    def _resolve(self, ref: Any) -> ConversationNode:
        """Node for an id, a display number, or a node.  Raises NotFoundError."""
        if isinstance(ref, ConversationNode):
            ref = ref.id
        if isinstance(ref, str) and ref in self.nodes_by_id:
            return self.nodes_by_id[ref]
        try:
            number = DisplayNumber.parse(ref)
        except ValueError:
            raise NotFoundError(f"Conversation not found: {ref}") from None
        node_id = self._by_number.get(number)
        if node_id is None:
            raise NotFoundError(f"Conversation not found: {ref}")
        return self.nodes_by_id[node_id]

    def _find(self, ref: Any) -> Optional[ConversationNode]:
        try:
            return self._resolve(ref)
        except NotFoundError:
            return None

    def _number_for(self, ref: Any) -> DisplayNumber:
        """Display number of a node ref, or of a bare display-number string."""
        node = self._find(ref)
        if node is not None:
            return node.number
        try:
            return DisplayNumber.parse(ref)
        except ValueError:
            raise NotFoundError(f"Conversation not found: {ref}") from None

    def get_conversation(self, ref: Any) -> ConversationNode:
        return self._resolve(ref)

    def get_all_conversations(self) -> List[ConversationNode]:
        """Main-thread nodes in creation order."""
        return [self.nodes_by_id[nid] for nid in self.main_thread if nid in self.nodes_by_id]

    def get_all_conversations_with_branches(self) -> List[ConversationNode]:
        """Every node in hierarchical order: 2 < 2.1.0 < 2.1.1 < 3."""
        return sorted(self.nodes_by_id.values(), key=lambda n: n.number)

    def get_branch_children(self, ref: Any) -> List[ConversationNode]:
        parent = self._resolve(ref)
        return [self.nodes_by_id[c] for c in self.branch_children.get(parent.id, [])
                if c in self.nodes_by_id]

    def get_pending_branches(self) -> List[BranchHandle]:
        return list(self._pending.values())

    def get_merge_record(self, ref: Any) -> Optional[MergeRecord]:
        node = self._find(ref)
        return self.merge_log.get(node.id) if node is not None else None

    # -- registration ------------------------------------------------------
    def _register(self, node: ConversationNode) -> None:
        number = node.number
        if number in self._by_number:
            raise StateValidationError(f"Duplicate display number: {number}")
        self.nodes_by_id[node.id] = node
        self._by_number[number] = node.id

    def _apply_fields(self, node: ConversationNode, fields: Dict[str, Any]) -> None:
        """Merge caller fields into a node; unknown keys land in node.metadata."""
        for key, value in fields.items():
            key = _attr_key(key)
            if key == "branch_type" and value not in BRANCH_TYPES:
                raise StateValidationError(f"Unknown branch type: {value!r}")
            if key in _STRUCTURAL:
                continue  # owned by the store
            if key == "status" and value not in STATUSES:
                raise StateValidationError(f"Unknown status: {value!r}")
            if key in _NODE_FIELDS:
                if key in ("prompt", "response"):
                    value = "" if value is None else str(value)
                elif key == "usage":
                    value = dict(value) if isinstance(value, dict) else {}
                setattr(node, key, value)
            elif key == "metadata" and isinstance(value, dict):
                node.metadata.update(value)
            else:
                node.metadata[key] = value
        node.updated_at = utc_now_iso()

    @staticmethod
    def _initial_status(response: str, fields: Dict[str, Any]) -> str:
        return fields.get("status") or ("ready" if not is_blank(response) else "processing")

    # -- main thread -------------------------------------------------------
    def add_conversation(self, prompt: str, response: str = "",
                         metadata: Dict[str, Any] | None = None) -> ConversationNode:
        """Append an exchange to the main thread with the next integer number."""
        fields = dict(metadata or {})
        with self._mutation():
            parent_id = self.main_thread[-1] if self.main_thread else None
            node = ConversationNode(
                id=new_node_id(),
                display_number=str(self.counter),
                parent_id=parent_id,
                status=self._initial_status(response, fields),
            )
            self._apply_fields(node, {"prompt": prompt, "response": response, **fields})
            self._register(node)
            self.main_thread.append(node.id)
            self.counter += 1
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] add_conversation -> {node.display_number} ({node.status})")
        return node

    def update_conversation(self, ref: Any, patch: Dict[str, Any]) -> ConversationNode:
        """Merge response/status/metadata into an existing node."""
        with self._mutation():
            node = self._resolve(ref)
            self._apply_fields(node, dict(patch or {}))
        return node

    # -- branches ----------------------------------------------------------
    def _is_taken(self, candidate: DisplayNumber) -> bool:
        """A branch slot is taken if any stored node or pending handle lives in it."""
        if candidate in self._by_number or candidate in self._pending:
            return True
        prefix = candidate.thread_prefix().segments
        return any(n.segments[:len(prefix)] == prefix for n in self._by_number)

    def _next_branch_number(self, parent: ConversationNode) -> DisplayNumber:
        base = parent.number
        for branch_index in range(1, self.max_branch_probes + 1):
            candidate = base.child_branch(branch_index)
            if not self._is_taken(candidate):
                return candidate

        fallback_index = epoch_millis()
        candidate = base.child_branch(fallback_index)
        while self._is_taken(candidate):
            fallback_index += 1
            candidate = base.child_branch(fallback_index)
        print(f"[Dagger] WARNING: {self.max_branch_probes} branch indexes under "
              f"{parent.display_number} are taken; using timestamp index {candidate}")
        return candidate

    def generate_branch_id(self, parent_ref: Any) -> str:
        """Next free branch-root display number under a parent (not reserved)."""
        with self._lock:
            return str(self._next_branch_number(self._resolve(parent_ref)))

    def create_branch(self, parent_ref: Any, branch_type: str = "knowledge", *,
                      system_prompt: str | None = None,
                      template_id: str | None = None) -> BranchHandle:
        """Reserve a branch under `parent_ref` and return its handle.

        No node is stored until add_conversation_to_branch() supplies the
        first prompt.
        """
        if branch_type not in BRANCH_TYPES or branch_type == "none":
            raise StateValidationError(f"Unknown branch type: {branch_type!r}")
        with self._lock:
            parent = self._resolve(parent_ref)
            number = self._next_branch_number(parent)
            handle = BranchHandle(
                parent_id=parent.id,
                planned_display_number=str(number),
                branch_type=branch_type,
                depth=parent.depth + 1,
                system_prompt=system_prompt if branch_type == "personality" else None,
                template_id=template_id,
            )
            self._pending[number] = handle
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] create_branch({parent.display_number}, {branch_type}) -> {number} (pending)")
        return handle

    def discard_branch(self, handle_ref: Any) -> bool:
        """Forget a pending handle.  Returns True if one was dropped."""
        with self._lock:
            handle = self._pending_handle(handle_ref)
            if handle is None:
                return False
            del self._pending[DisplayNumber.parse(handle.planned_display_number)]
            return True

    def _pending_handle(self, ref: Any) -> Optional[BranchHandle]:
        if isinstance(ref, BranchHandle):
            ref = ref.planned_display_number
        try:
            return self._pending.get(DisplayNumber.parse(ref))
        except ValueError:
            return None

    def _materialize(self, handle: BranchHandle, prompt: str, response: str,
                     fields: Dict[str, Any]) -> ConversationNode:
        if is_blank(prompt):
            raise InvalidContentError("A branch needs a non-empty first prompt")
        if handle.parent_id not in self.nodes_by_id:
            raise NotFoundError(f"Branch parent not found: {handle.parent_id}")
        number = DisplayNumber.parse(handle.planned_display_number)
        node = ConversationNode(
            id=new_node_id(),
            display_number=str(number),
            parent_id=handle.parent_id,
            branch_type=handle.branch_type,
            depth=handle.depth,
            status=self._initial_status(response, fields),
        )
        if handle.branch_type == "personality":
            fields.setdefault("system_prompt", handle.system_prompt)
        else:
            fields.pop("system_prompt", None)
            fields.pop("systemPrompt", None)
        self._apply_fields(node, {"prompt": prompt, "response": response, **fields})
        if handle.template_id:
            node.metadata.setdefault("templateId", handle.template_id)
        self._register(node)
        self.branch_children.setdefault(handle.parent_id, []).append(node.id)
        del self._pending[number]
        return node

    def _thread_nodes(self, prefix: DisplayNumber) -> List[ConversationNode]:
        members = [self.nodes_by_id[nid] for num, nid in self._by_number.items()
                   if num == prefix or num.in_thread(prefix)]
        return sorted(members, key=lambda n: (len(n.number), n.number.position))

    def _branch_nodes(self, prefix: DisplayNumber) -> List[ConversationNode]:
        members = [self.nodes_by_id[nid] for num, nid in self._by_number.items() if num.in_branch(prefix)]
        return sorted(members, key=lambda n: (n.number.position, n.number))

    def add_conversation_to_branch(self, branch_ref: Any, prompt: str, response: str = "",
                                   metadata: Dict[str, Any] | None = None) -> ConversationNode:
        """Add an exchange to a branch.

        A pending handle is materialized as the branch root.  A stored node
        with a blank prompt is filled in place.  Otherwise the exchange is
        appended after the branch's current end node.
        """
        fields = dict(metadata or {})
        with self._mutation():
            handle = self._pending_handle(branch_ref)
            if handle is not None:
                node = self._materialize(handle, prompt, response, fields)
            else:
                if isinstance(branch_ref, BranchHandle):
                    branch_ref = branch_ref.planned_display_number
                existing = self._resolve(branch_ref)
                if not existing.is_branch:
                    raise NotFoundError(f"Not a branch: {existing.display_number}")
                if self.is_thread_merged(existing.display_number):
                    raise InvalidMergeError(
                        f"Branch {get_branch_prefix(existing.display_number)} is merged; "
                        "no further continuations")
                if is_blank(existing.prompt):
                    node = existing
                    if "status" not in fields:
                        fields["status"] = self._initial_status(response, fields)
                    self._apply_fields(node, {"prompt": prompt, "response": response, **fields})
                else:
                    last = self._thread_nodes(existing.number.thread_prefix())[-1]
                    node = ConversationNode(
                        id=new_node_id(),
                        display_number=str(last.number.next_in_thread()),
                        parent_id=last.id,
                        branch_type=last.branch_type,
                        depth=last.depth,
                        status=self._initial_status(response, fields),
                    )
                    fields.pop("system_prompt", None)
                    fields.pop("systemPrompt", None)
                    self._apply_fields(node, {"prompt": prompt, "response": response, **fields})
                    self._register(node)
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] add_conversation_to_branch -> {node.display_number} ({node.branch_type})")
        return node

    # -- numbering queries -------------------------------------------------
    @staticmethod
    def generate_next_in_branch(display_number: Any) -> str:
        return generate_next_in_branch(display_number)

    @staticmethod
    def is_branch_id(display_number: Any) -> bool:
        return is_branch_id(display_number)

    @staticmethod
    def get_branch_prefix(display_number: Any) -> str:
        return get_branch_prefix(display_number)

    def get_hierarchy_level(self, ref: Any) -> int:
        return self._number_for(ref).hierarchy_level

    def get_branch_thread(self, display_number: Any) -> List[ConversationNode]:
        """Nodes sharing the branch prefix of `display_number`, by final segment.

        Nested branches belong to the thread of their outermost branch.  For a
        main-thread number this is the main thread itself.
        """
        number = self._number_for(display_number)
        if not number.is_branch:
            return self.get_all_conversations()
        return self._branch_nodes(number.branch_prefix())

    def is_end_node(self, ref: Any) -> bool:
        """True iff this node is the last of the main thread or of its branch thread."""
        node = self._find(ref)
        if node is None:
            return False
        if not node.is_branch:
            return bool(self.main_thread) and self.main_thread[-1] == node.id
        thread = self._branch_nodes(node.number.branch_prefix())
        return bool(thread) and thread[-1].id == node.id

    # -- merging -----------------------------------------------------------
    def can_merge_nodes(self, source_ref: Any, target_ref: Any) -> bool:
        """A branch end may close into the main thread or an equal/shallower branch end."""
        source = self._find(source_ref)
        target = self._find(target_ref)
        if source is None or target is None or source.id == target.id:
            return False
        if not (self.is_end_node(source.id) and self.is_end_node(target.id)):
            return False
        source_level = source.number.hierarchy_level
        target_level = target.number.hierarchy_level
        return target_level == 0 or target_level <= source_level

    def merge_nodes(self, source_ref: Any, target_ref: Any, *,
                    summary: str | None = None, prompt_id: str | None = None) -> str:
        """Close the source's thread into target.  Returns the merge id.

        `summary` is an optional digest of the source thread (see
        response.summarize_merge); `prompt_id` names the template that produced it.
        """
        with self._mutation():
            if not self.can_merge_nodes(source_ref, target_ref):
                raise InvalidMergeError(f"Cannot merge {source_ref} into {target_ref}")
            source = self._resolve(source_ref)
            target = self._resolve(target_ref)
            prefix = source.number.prefix_string()
            if prefix in self.merged_branch_prefixes or source.id in self.merge_log:
                raise InvalidMergeError(f"Thread {prefix} is already merged")
            record = MergeRecord(
                merge_id=new_merge_id(),
                source_id=source.id,
                target_id=target.id,
                source_display_number=source.display_number,
                target_display_number=target.display_number,
                summary=None if is_blank(summary) else summary,
                prompt_id=prompt_id,
            )
            self.merge_log[source.id] = record
            self.merged_branch_prefixes.add(prefix)
        print(f"[Dagger] Merged {source.display_number} into {target.display_number} ({record.merge_id})")
        return record.merge_id

    def is_thread_merged(self, display_number: Any) -> bool:
        try:
            number = self._number_for(display_number)
        except NotFoundError:
            return False
        return number.prefix_string() in self.merged_branch_prefixes

    # -- history -----------------------------------------------------------
    def extract_conversation_history(self, nodes: Optional[List[Any]] = None,
                                     thread_id: str = MAIN_THREAD, *,
                                     prefer_main_thread: bool = False) -> list:
        """Store-aware wrapper: `thread_id` may also be a display number."""
        if nodes is None:
            nodes = self.get_all_conversations_with_branches()
        if thread_id != MAIN_THREAD:
            node = self._find(thread_id)
            if node is not None:
                thread_id = node.id
        return extract_conversation_history(nodes, thread_id, prefer_main_thread=prefer_main_thread)

    def history_for(self, ref: Any) -> List[ConversationNode]:
        """Root-to-node path for a stored node (inclusive)."""
        node = self._resolve(ref)
        return extract_conversation_history(list(self.nodes_by_id.values()), node.id)

    # -- cleanup -----------------------------------------------------------
    def cleanup_empty_threads(self) -> int:
        """Remove nodes whose prompt is blank.  Returns how many were removed."""
        with self._lock:
            blank_ids = [nid for nid, n in self.nodes_by_id.items() if is_blank(n.prompt)]
            if not blank_ids:
                return 0
            with self._mutation():
                self._drop_nodes(blank_ids)
        print(f"[Dagger] Removed {len(blank_ids)} empty conversation node(s)")
        return len(blank_ids)

    def _drop_nodes(self, blank_ids: List[str]) -> None:
        doomed = set(blank_ids)
        for nid in blank_ids:
            node = self.nodes_by_id.pop(nid)
            self._by_number.pop(node.number, None)
            self.merge_log.pop(nid, None)
        self.main_thread = [nid for nid in self.main_thread if nid not in doomed]
        self.branch_children = {
            pid: [c for c in kids if c not in doomed]
            for pid, kids in self.branch_children.items()
            if pid not in doomed
        }
        self.branch_children = {pid: kids for pid, kids in self.branch_children.items() if kids}

    # -- serialization -----------------------------------------------------
    def to_serialized(self) -> Dict[str, Any]:
        return {
            "nodes": [[nid, node.to_dict()] for nid, node in self.nodes_by_id.items()],
            "mainThread": list(self.main_thread),
            "branches": [[pid, list(kids)] for pid, kids in self.branch_children.items()],
            "mergedBranchPrefixes": sorted(self.merged_branch_prefixes),
            "mergeLog": [[sid, rec.to_dict()] for sid, rec in self.merge_log.items()],
            "counter": self.counter,
        }

    @classmethod
    def from_serialized(cls, data: Any, *, strict: bool = True, blob_store: Any = None,
                        max_branch_probes: int = DEFAULT_MAX_BRANCH_PROBES) -> "ConversationStore":
        store = cls(blob_store, max_branch_probes=max_branch_probes)
        store._restore(data, strict=strict)
        return store

    def _restore(self, data: Any, *, strict: bool) -> None:
        """Rebuild in-memory state from the serialized shape.

        strict: any malformed entry raises StateValidationError.
        non-strict: malformed entries are skipped.
        """
        if not isinstance(data, dict):
            raise StateValidationError("Store state must be a JSON object")

        def _reject(message: str) -> None:
            if strict:
                raise StateValidationError(message)

        raw_nodes = data.get("nodes", [])
        if not isinstance(raw_nodes, list):
            _reject("nodes must be an array")
            raw_nodes = []
        for entry in raw_nodes:
            if isinstance(entry, (list, tuple)) and len(entry) == 2:
                node_id, raw = entry
            elif isinstance(entry, dict):
                node_id, raw = entry.get("id"), entry
            else:
                _reject("nodes entries must be [id, node] pairs")
                continue
            try:
                node = ConversationNode.from_dict(raw, node_id=node_id)
                self._register(node)
            except StateValidationError:
                if strict:
                    raise

        main = data.get("mainThread", [])
        if not isinstance(main, list):
            _reject("mainThread must be an array")
            main = []
        for nid in main:
            if nid in self.nodes_by_id:
                self.main_thread.append(nid)
            else:
                _reject(f"mainThread references unknown node {nid}")

        branches = data.get("branches", [])
        for entry in branches if isinstance(branches, list) else []:
            if not (isinstance(entry, (list, tuple)) and len(entry) == 2 and isinstance(entry[1], list)):
                _reject("branches entries must be [parentId, [id, ...]] pairs")
                continue
            pid, kids = entry
            kids = [k for k in kids if k in self.nodes_by_id]
            if kids:
                self.branch_children[pid] = kids

        prefixes = data.get("mergedBranchPrefixes", [])
        self.merged_branch_prefixes = {str(p) for p in prefixes} if isinstance(prefixes, list) else set()

        merge_log = data.get("mergeLog", [])
        for entry in merge_log if isinstance(merge_log, list) else []:
            if not (isinstance(entry, (list, tuple)) and len(entry) == 2):
                _reject("mergeLog entries must be [sourceId, record] pairs")
                continue
            try:
                self.merge_log[entry[0]] = MergeRecord.from_dict(entry[1], entry[0])
            except StateValidationError:
                if strict:
                    raise

        counter = data.get("counter", 0)
        if not isinstance(counter, int) or isinstance(counter, bool):
            _reject("counter must be an integer")
            counter = 0
        main_numbers = [self.nodes_by_id[nid].number.position for nid in self.main_thread]
        self.counter = max([counter] + [n + 1 for n in main_numbers])
