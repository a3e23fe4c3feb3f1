#!/usr/bin/env python3
"""Tests for the conversation store (bin/state.py).

Covers:
  - main-thread numbering and parent links
  - lazy branch materialization, index probing, timestamp fallback
  - end nodes, merge rules, merged-thread refusal
  - history extraction, cleanup, serialization, write-through
  - rollback of in-memory changes when a save fails
"""

import io
import shutil
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

_project = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_project / "bin"))

from common import (
    InvalidContentError,
    InvalidMergeError,
    NotFoundError,
    StateValidationError,
)
from state import (
    BranchHandle,
    ConversationStore,
    extract_conversation_history,
)
from storage import FileBlobStore, MemoryBlobStore


def _quiet(fn, *args, **kwargs):
    """Call fn with stdout captured; returns (result, printed_text)."""
    buf = io.StringIO()
    with redirect_stdout(buf):
        result = fn(*args, **kwargs)
    return result, buf.getvalue()


class StoreTestBase(unittest.TestCase):

    def setUp(self):
        self.blob = MemoryBlobStore()
        self.store = ConversationStore(self.blob)


class TestMainThread(StoreTestBase):

    def test_sequential_numbers_and_parents(self):
        nodes = [self.store.add_conversation(f"q{i}", f"a{i}") for i in range(4)]
        self.assertEqual([n.display_number for n in nodes], ["0", "1", "2", "3"])
        self.assertIsNone(nodes[0].parent_id)
        for prev, node in zip(nodes, nodes[1:]):
            self.assertEqual(node.parent_id, prev.id)
        self.assertEqual(self.store.get_all_conversations(), nodes)

    def test_status_defaults(self):
        ready = self.store.add_conversation("q", "a")
        pending = self.store.add_conversation("q2")
        forced = self.store.add_conversation("q3", "", {"status": "error"})
        self.assertEqual(ready.status, "ready")
        self.assertEqual(pending.status, "processing")
        self.assertEqual(forced.status, "error")

    def test_metadata_lands_on_node(self):
        node = self.store.add_conversation("q", "a", {"model": "m1", "tag": "x", "parentId": "bogus"})
        self.assertEqual(node.model, "m1")
        self.assertEqual(node.metadata["tag"], "x")
        self.assertIsNone(node.parent_id)

    def test_ids_are_unique(self):
        ids = {self.store.add_conversation(f"q{i}").id for i in range(20)}
        self.assertEqual(len(ids), 20)


class TestUpdate(StoreTestBase):

    def test_update_by_id_and_display_number(self):
        node = self.store.add_conversation("q")
        self.store.update_conversation(node.id, {"response": "a", "status": "complete"})
        self.store.update_conversation("0", {"usage": {"input_tokens": 3}})
        self.assertEqual(node.response, "a")
        self.assertEqual(node.status, "complete")
        self.assertEqual(node.usage, {"input_tokens": 3})

    def test_structural_fields_are_immutable(self):
        node = self.store.add_conversation("q")
        self.store.update_conversation(node.id, {"id": "x", "displayNumber": "9", "depth": 4})
        self.assertEqual(node.display_number, "0")
        self.assertEqual(node.depth, 0)
        self.assertIs(self.store.get_conversation("0"), node)

    def test_bad_status(self):
        node = self.store.add_conversation("q")
        with self.assertRaises(StateValidationError):
            self.store.update_conversation(node.id, {"status": "sleeping"})
        with self.assertRaises(StateValidationError):
            self.store.update_conversation(node.id, {"branchType": "mystery"})

    def test_missing_node(self):
        with self.assertRaises(NotFoundError):
            self.store.update_conversation("nope", {"response": "x"})


class TestBranches(StoreTestBase):

    def setUp(self):
        super().setUp()
        self.root = self.store.add_conversation("Hi", "Hello")

    def test_handle_is_not_persisted_until_first_prompt(self):
        saves_before = self.blob.saves
        handle = self.store.create_branch(self.root.id, "knowledge")
        self.assertIsInstance(handle, BranchHandle)
        self.assertEqual(handle.planned_display_number, "0.1.0")
        self.assertEqual(handle.depth, 1)
        self.assertEqual(len(self.store.nodes_by_id), 1)
        self.assertEqual(self.blob.saves, saves_before)

        node = self.store.add_conversation_to_branch(handle, "Tell me more")
        self.assertEqual(node.display_number, "0.1.0")
        self.assertEqual(node.parent_id, self.root.id)
        self.assertEqual(node.branch_type, "knowledge")
        self.assertEqual(self.store.get_branch_children(self.root.id), [node])
        self.assertEqual(self.store.get_pending_branches(), [])

    def test_blank_first_prompt_does_not_materialize(self):
        handle = self.store.create_branch("0", "virgin")
        with self.assertRaises(InvalidContentError):
            self.store.add_conversation_to_branch(handle, "   ")
        self.assertEqual(len(self.store.nodes_by_id), 1)

    def test_pending_handles_reserve_indexes(self):
        first = self.store.create_branch("0", "knowledge")
        second = self.store.create_branch("0", "virgin")
        self.assertEqual(first.planned_display_number, "0.1.0")
        self.assertEqual(second.planned_display_number, "0.2.0")

    def test_discarded_handle_frees_its_index(self):
        handle = self.store.create_branch("0", "knowledge")
        self.assertTrue(self.store.discard_branch(handle))
        self.assertEqual(self.store.create_branch("0", "knowledge").planned_display_number, "0.1.0")

    def test_branch_ids_never_collide(self):
        seen = set()
        for _ in range(5):
            handle = self.store.create_branch("0", "knowledge")
            node = self.store.add_conversation_to_branch(handle, "x")
            self.assertNotIn(node.display_number, seen)
            seen.add(node.display_number)
        self.assertEqual(sorted(seen), ["0.1.0", "0.2.0", "0.3.0", "0.4.0", "0.5.0"])

    def test_probe_overflow_uses_timestamp_and_warns(self):
        store = ConversationStore(MemoryBlobStore(), max_branch_probes=2)
        store.add_conversation("q", "a")
        store.create_branch("0", "knowledge")
        store.create_branch("0", "knowledge")
        handle, printed = _quiet(store.create_branch, "0", "knowledge")
        index = int(handle.planned_display_number.split(".")[1])
        self.assertGreater(index, 2)
        self.assertIn("WARNING", printed)

    def test_continuation_appends_after_end(self):
        handle = self.store.create_branch("0", "knowledge")
        first = self.store.add_conversation_to_branch(handle, "b0", "r0")
        second = self.store.add_conversation_to_branch("0.1.0", "b1", "r1")
        third = self.store.add_conversation_to_branch(first.id, "b2")
        self.assertEqual(second.display_number, "0.1.1")
        self.assertEqual(second.parent_id, first.id)
        self.assertEqual(third.display_number, "0.1.2")
        self.assertEqual(third.parent_id, second.id)

    def test_blank_prompt_node_is_filled_in_place(self):
        handle = self.store.create_branch("0", "knowledge")
        node = self.store.add_conversation_to_branch(handle, "x")
        node.prompt = ""
        filled = self.store.add_conversation_to_branch(node.id, "now with text", "ok")
        self.assertIs(filled, node)
        self.assertEqual(node.prompt, "now with text")
        self.assertEqual(len(self.store.get_branch_thread("0.1.0")), 1)

    def test_personality_keeps_system_prompt_on_root_only(self):
        handle = self.store.create_branch("0", "personality", system_prompt="Be a pirate.")
        root = self.store.add_conversation_to_branch(handle, "Ahoy?")
        cont = self.store.add_conversation_to_branch(root.id, "More?")
        self.assertEqual(root.system_prompt, "Be a pirate.")
        self.assertIsNone(cont.system_prompt)
        self.assertEqual(cont.branch_type, "personality")

    def test_system_prompt_ignored_for_other_types(self):
        handle = self.store.create_branch("0", "knowledge", system_prompt="ignored")
        self.assertIsNone(handle.system_prompt)

    def test_nested_branch_numbering(self):
        h = self.store.create_branch("0", "knowledge")
        branch_root = self.store.add_conversation_to_branch(h, "b")
        nested = self.store.add_conversation_to_branch(
            self.store.create_branch(branch_root.id, "virgin"), "n")
        self.assertEqual(nested.display_number, "0.1.0.1.0")
        self.assertEqual(nested.depth, 2)
        self.assertEqual(self.store.get_hierarchy_level(nested.id), 2)

    def test_unknown_parent_and_type(self):
        with self.assertRaises(NotFoundError):
            self.store.create_branch("42", "knowledge")
        with self.assertRaises(StateValidationError):
            self.store.create_branch("0", "none")

    def test_main_node_is_not_a_branch_ref(self):
        with self.assertRaises(NotFoundError):
            self.store.add_conversation_to_branch("0", "x")


class TestMerge(StoreTestBase):

    def _scenario(self):
        root = self.store.add_conversation("Hi", "Hello")
        handle = self.store.create_branch(root.id, "knowledge")
        b0 = self.store.add_conversation_to_branch(handle, "Branch q", "Branch a")
        b1 = self.store.add_conversation_to_branch(b0.id, "Follow up", "Answer")
        return root, b0, b1

    def test_worked_example(self):
        root, b0, b1 = self._scenario()
        self.assertEqual(b0.display_number, "0.1.0")
        self.assertEqual(b1.display_number, "0.1.1")
        self.assertEqual(self.store.get_branch_thread("0.1.1"), [b0, b1])
        self.assertTrue(self.store.can_merge_nodes("0.1.1", "0"))
        merge_id, _ = _quiet(self.store.merge_nodes, "0.1.1", "0")
        self.assertTrue(merge_id.startswith("merge_"))
        self.assertTrue(self.store.is_thread_merged("0.1.0"))
        record = self.store.get_merge_record(b1.id)
        self.assertEqual(record.target_id, root.id)

    def test_end_nodes(self):
        root, b0, b1 = self._scenario()
        self.assertTrue(self.store.is_end_node(root.id))
        self.assertFalse(self.store.is_end_node(b0.id))
        self.assertTrue(self.store.is_end_node(b1.id))
        self.assertFalse(self.store.is_end_node("99"))

    def test_cannot_merge_non_end_or_self(self):
        root, b0, b1 = self._scenario()
        self.assertFalse(self.store.can_merge_nodes(b0.id, root.id))
        self.assertFalse(self.store.can_merge_nodes(b1.id, b1.id))
        self.assertFalse(self.store.can_merge_nodes(b1.id, "missing"))
        with self.assertRaises(InvalidMergeError):
            self.store.merge_nodes(b0.id, root.id)

    def test_cannot_merge_into_deeper_branch(self):
        root = self.store.add_conversation("Hi", "Hello")
        b0 = self.store.add_conversation_to_branch(
            self.store.create_branch(root.id, "knowledge"), "Branch q", "Branch a")
        nested = self.store.add_conversation_to_branch(
            self.store.create_branch(b0.id, "knowledge"), "deep")
        other = self.store.add_conversation_to_branch(
            self.store.create_branch(root.id, "knowledge"), "sibling")
        self.assertEqual(other.display_number, "0.2.0")
        self.assertEqual(self.store.get_hierarchy_level(nested.id), 2)
        self.assertFalse(self.store.can_merge_nodes(other.id, nested.id))
        self.assertTrue(self.store.can_merge_nodes(nested.id, other.id))

    def test_nested_branch_shares_outer_thread(self):
        root = self.store.add_conversation("Hi", "Hello")
        b0 = self.store.add_conversation_to_branch(
            self.store.create_branch(root.id, "knowledge"), "Branch q", "Branch a")
        nested = self.store.add_conversation_to_branch(
            self.store.create_branch(b0.id, "knowledge"), "deep", "deeper")
        self.assertEqual(nested.display_number, "0.1.0.1.0")
        self.assertEqual(self.store.get_branch_prefix(nested.display_number), "0.1.")
        self.assertEqual(self.store.get_branch_thread("0.1.0.1.0"), [b0, nested])
        self.assertFalse(self.store.is_end_node(b0.id))
        self.assertTrue(self.store.is_end_node(nested.id))

        _quiet(self.store.merge_nodes, nested.id, "0")
        self.assertTrue(self.store.is_thread_merged("0.1.0"))
        self.assertTrue(self.store.is_thread_merged("0.1.0.1.0"))
        self.assertEqual(self.store.to_serialized()["mergedBranchPrefixes"], ["0.1."])
        with self.assertRaises(InvalidMergeError):
            self.store.add_conversation_to_branch(b0.id, "more")

    def test_thread_orders_by_final_segment(self):
        root, b0, b1 = self._scenario()
        nested = self.store.add_conversation_to_branch(
            self.store.create_branch(b0.id, "virgin"), "side")
        thread = [n.display_number for n in self.store.get_branch_thread("0.1.1")]
        self.assertEqual(thread, ["0.1.0", "0.1.0.1.0", "0.1.1"])
        self.assertTrue(self.store.is_end_node(b1.id))
        self.assertFalse(self.store.is_end_node(nested.id))

    def test_summary_is_kept_on_record(self):
        root, b0, b1 = self._scenario()
        _quiet(self.store.merge_nodes, b1.id, root.id, summary="Short digest.", prompt_id="squeezer")
        record = self.store.get_merge_record(b1.id)
        self.assertEqual(record.summary, "Short digest.")
        self.assertEqual(record.prompt_id, "squeezer")
        restored = ConversationStore(self.blob).load()
        self.assertEqual(restored.get_merge_record(b1.id).summary, "Short digest.")
        self.assertEqual(restored.get_merge_record(b1.id).prompt_id, "squeezer")

    def test_duplicate_merge_and_continuation_refused(self):
        self._scenario()
        _quiet(self.store.merge_nodes, "0.1.1", "0")
        with self.assertRaises(InvalidMergeError):
            self.store.merge_nodes("0.1.1", "0")
        with self.assertRaises(InvalidMergeError):
            self.store.add_conversation_to_branch("0.1.1", "more")


class TestQueries(StoreTestBase):

    def test_all_with_branches_is_hierarchical(self):
        for i in range(3):
            self.store.add_conversation(f"q{i}", f"a{i}")
        self.store.add_conversation_to_branch(self.store.create_branch("2", "knowledge"), "b")
        self.store.add_conversation_to_branch("2.1.0", "b2")
        self.store.add_conversation("q3")
        order = [n.display_number for n in self.store.get_all_conversations_with_branches()]
        self.assertEqual(order, ["0", "1", "2", "2.1.0", "2.1.1", "3"])

    def test_main_thread_of_main_number(self):
        a = self.store.add_conversation("a")
        b = self.store.add_conversation("b")
        self.assertEqual(self.store.get_branch_thread("1"), [a, b])

    def test_delegated_numbering_helpers(self):
        self.assertTrue(self.store.is_branch_id("1.1.0"))
        self.assertEqual(self.store.generate_next_in_branch("1.1.0"), "1.1.1")
        self.assertEqual(self.store.get_branch_prefix("1.1.0"), "1.1.")
        self.assertEqual(self.store.get_hierarchy_level("4"), 0)

    def test_generate_branch_id_does_not_reserve(self):
        self.store.add_conversation("a")
        self.assertEqual(self.store.generate_branch_id("0"), "0.1.0")
        self.assertEqual(self.store.generate_branch_id("0"), "0.1.0")


class TestHistory(StoreTestBase):

    def test_path_to_branch_node(self):
        n0 = self.store.add_conversation("q0", "a0")
        n1 = self.store.add_conversation("q1", "a1")
        self.store.add_conversation("q2", "a2")
        b0 = self.store.add_conversation_to_branch(self.store.create_branch(n1.id, "knowledge"), "b0")
        b1 = self.store.add_conversation_to_branch(b0.id, "b1")
        self.assertEqual(self.store.extract_conversation_history(None, b1.id), [n0, n1, b0, b1])
        self.assertEqual(self.store.extract_conversation_history(None, "1.1.1"), [n0, n1, b0, b1])
        self.assertEqual(self.store.history_for(b0.id), [n0, n1, b0])

    def test_main_walk_follows_first_found_child(self):
        nodes = [
            {"id": "a", "parentId": None, "displayNumber": "0"},
            {"id": "br", "parentId": "a", "displayNumber": "0.1.0"},
            {"id": "b", "parentId": "a", "displayNumber": "1"},
        ]
        first = extract_conversation_history(nodes, "main")
        self.assertEqual([n["id"] for n in first], ["a", "br"])
        preferred = extract_conversation_history(nodes, "main", prefer_main_thread=True)
        self.assertEqual([n["id"] for n in preferred], ["a", "b"])

    def test_cycle_guard_and_bad_input(self):
        nodes = [{"id": "x", "parentId": "y"}, {"id": "y", "parentId": "x"}]
        self.assertEqual(len(extract_conversation_history(nodes, "x")), 2)
        self.assertEqual(extract_conversation_history("nope", "x"), [])


class TestCleanup(StoreTestBase):

    def test_removes_blank_prompts(self):
        keep = self.store.add_conversation("keep", "a")
        self.store.add_conversation("   ")
        self.store.add_conversation("")
        removed, printed = _quiet(self.store.cleanup_empty_threads)
        self.assertEqual(removed, 2)
        self.assertEqual(self.store.get_all_conversations(), [keep])
        self.assertIn("Removed 2", printed)
        self.assertEqual(self.store.cleanup_empty_threads(), 0)


class TestSerialization(StoreTestBase):

    def _populate(self):
        self.store.add_conversation("Hi", "Hello")
        b0 = self.store.add_conversation_to_branch(
            self.store.create_branch("0", "personality", system_prompt="pirate"), "Arr?", "Arr.")
        self.store.add_conversation("Next", "")
        _quiet(self.store.merge_nodes, b0.id, "1")
        return b0

    def test_shape_uses_camel_case(self):
        self._populate()
        data = self.store.to_serialized()
        self.assertEqual(set(data), {"nodes", "mainThread", "branches", "mergedBranchPrefixes",
                                     "mergeLog", "counter"})
        node = dict(data["nodes"])[self.store.main_thread[0]]
        self.assertIn("displayNumber", node)
        self.assertIn("parentId", node)
        self.assertEqual(data["mergedBranchPrefixes"], ["0.1."])
        self.assertEqual(data["counter"], 2)

    def test_restore_from_blob(self):
        b0 = self._populate()
        restored = ConversationStore(self.blob).load()
        self.assertEqual(restored.to_serialized(), self.store.to_serialized())
        self.assertEqual(restored.get_conversation("0.1.0").system_prompt, "pirate")
        self.assertTrue(restored.is_thread_merged("0.1.0"))
        self.assertEqual(restored.get_merge_record(b0.id).target_display_number, "1")
        self.assertEqual(restored.add_conversation("again").display_number, "2")

    def test_strict_rejects_bad_shapes(self):
        with self.assertRaises(StateValidationError):
            ConversationStore.from_serialized([])
        with self.assertRaises(StateValidationError):
            ConversationStore.from_serialized({"nodes": [["a", {"displayNumber": "x.y"}]]})
        dup = {"nodes": [["a", {"displayNumber": "0"}], ["b", {"displayNumber": "0"}]]}
        with self.assertRaises(StateValidationError):
            ConversationStore.from_serialized(dup)

    def test_lenient_skips_bad_entries(self):
        data = {
            "nodes": [["a", {"displayNumber": "0", "prompt": "ok"}], ["b", {"displayNumber": "?"}], 7],
            "mainThread": ["a", "ghost"],
            "counter": "many",
        }
        store = ConversationStore.from_serialized(data, strict=False)
        self.assertEqual(list(store.nodes_by_id), ["a"])
        self.assertEqual(store.main_thread, ["a"])
        self.assertEqual(store.counter, 1)

    def test_every_mutation_writes_through(self):
        saves = self.blob.saves
        node = self.store.add_conversation("q")
        self.store.update_conversation(node.id, {"response": "a"})
        self.store.reset()
        self.assertEqual(self.blob.saves, saves + 3)
        self.assertEqual(self.blob.load()["nodes"], [])



class _FailingBlobStore(MemoryBlobStore):
    """Memory blob whose save can be switched to fail."""

    fail = False

    def save(self, serialized):
        if self.fail:
            raise OSError("disk full")
        super().save(serialized)


class TestFailedSave(unittest.TestCase):

    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()
        self.state_path = Path(self._tmpdir) / "dagger.json"

    def tearDown(self):
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def test_oversized_add_is_rolled_back(self):
        store = ConversationStore(FileBlobStore(self.state_path, max_bytes=2000))
        store.add_conversation("small", "ok")
        with self.assertRaises(StateValidationError):
            store.add_conversation("x" * 2000, "y")
        self.assertEqual([n.display_number for n in store.get_all_conversations()], ["0"])
        self.assertEqual(store.counter, 1)
        on_disk = ConversationStore(FileBlobStore(self.state_path)).load()
        self.assertEqual(len(on_disk.nodes_by_id), 1)
        self.assertEqual(store.add_conversation("next", "ok").display_number, "1")

    def test_update_branch_and_merge_are_rolled_back(self):
        blob = _FailingBlobStore()
        store = ConversationStore(blob)
        root = store.add_conversation("Hi", "Hello")
        handle = store.create_branch(root.id, "knowledge")
        b0 = store.add_conversation_to_branch(handle, "b0", "r0")
        saved = store.to_serialized()

        blob.fail = True
        with self.assertRaises(OSError):
            store.update_conversation(root.id, {"response": "changed"})
        with self.assertRaises(OSError):
            store.add_conversation_to_branch(b0.id, "b1")
        with self.assertRaises(OSError):
            _quiet(store.merge_nodes, b0.id, root.id)
        self.assertEqual(store.to_serialized(), saved)
        self.assertEqual(store.get_conversation("0").response, "Hello")
        self.assertFalse(store.is_thread_merged("0.1.0"))

        blob.fail = False
        self.assertEqual(store.add_conversation_to_branch(b0.id, "b1").display_number, "0.1.1")

    def test_failed_branch_materialization_keeps_handle(self):
        blob = _FailingBlobStore()
        store = ConversationStore(blob)
        store.add_conversation("Hi", "Hello")
        handle = store.create_branch("0", "knowledge")
        blob.fail = True
        with self.assertRaises(OSError):
            store.add_conversation_to_branch(handle, "first")
        self.assertEqual([h.planned_display_number for h in store.get_pending_branches()], ["0.1.0"])
        self.assertEqual(store.get_branch_children("0"), [])
        blob.fail = False
        self.assertEqual(store.add_conversation_to_branch(handle, "first").display_number, "0.1.0")


if __name__ == "__main__":
    unittest.main()
