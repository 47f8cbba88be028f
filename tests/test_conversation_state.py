import dataclasses
import itertools
import unittest

from graphchat.conversation_graph import detect_cycles
from graphchat.conversation_state import ConversationState, normalize_message_order
from graphchat.errors import (
    CrossConversationEdgeError,
    CycleError,
    ProtectedNodeError,
    UnknownMessageError,
    UnknownNodeError,
)
from graphchat.models import ConversationEdge, Message


class TestConversationState(unittest.TestCase):
    def setUp(self):
        self.state = ConversationState.new_conversation("Trip planning", system_prompt="Be brief.", now=1)
        self.root = self.state.root_node_id

    def test_new_conversation_has_single_root(self):
        self.assertEqual(list(self.state.nodes), [self.root])
        self.assertEqual(self.state.edges, {})
        self.assertEqual(self.state.conversation.system_prompt, "Be brief.")

    def test_commands_return_new_snapshots(self):
        state, child = self.state.create_node(self.root, now=2)
        self.assertNotIn(child, self.state.nodes)
        self.assertIn(child, state.nodes)
        self.assertEqual(state.get_branches_from_node(self.root), [child])

    def test_create_edge_rejects_cycles_without_mutation(self):
        state, a = self.state.create_node(self.root, now=2)
        state, b = state.create_node(a, now=3)
        with self.assertRaises(CycleError):
            state.create_edge(b, self.root)
        with self.assertRaises(CycleError):
            state.create_edge(a, a)
        self.assertEqual(len(state.edges), 2)
        self.assertFalse(state.can_create_edge(b, a))
        self.assertTrue(state.can_create_edge(self.root, b))

    def test_create_edge_rejects_unknown_nodes(self):
        with self.assertRaises(UnknownNodeError):
            self.state.create_edge(self.root, "missing")

    def test_create_edge_rejects_cross_conversation(self):
        other = ConversationState.new_conversation("Other", now=1)
        foreign = other.nodes[other.root_node_id]
        merged = ConversationState(
            conversation=self.state.conversation,
            nodes={**self.state.nodes, foreign.id: foreign},
            edges={},
        )
        with self.assertRaises(CrossConversationEdgeError):
            merged.create_edge(self.root, foreign.id)

    def test_merge_edge_is_allowed(self):
        state, a = self.state.create_node(self.root, now=2)
        state, b = state.create_node(self.root, now=3)
        state, c = state.create_node(a, now=4)
        state, _ = state.create_edge(b, c, now=5)
        self.assertEqual(state.adjacency.reverse[c], [a, b])
        self.assertTrue(state.audit_integrity().ok)

    def test_root_cannot_be_deleted(self):
        with self.assertRaises(ProtectedNodeError):
            self.state.delete_node(self.root)

    def test_delete_node_removes_edges_and_replies(self):
        state, a = self.state.create_node(self.root, now=2)
        state, reply = state.create_reply(a, now=3)
        state, nested = state.create_reply(reply, now=4)
        state = state.delete_node(a)
        self.assertEqual(set(state.nodes), {self.root})
        self.assertEqual(state.edges, {})
        self.assertNotIn(nested, state.nodes)

    def test_replies_stay_out_of_adjacency(self):
        state, reply = self.state.create_reply(self.root, now=2)
        self.assertEqual(state.get_replies_for_node(self.root)[0].id, reply)
        self.assertEqual(state.adjacency.forward, {})
        with self.assertRaises(UnknownNodeError):
            state.create_edge(self.root, reply)

    def test_add_message_keeps_created_at_increasing(self):
        state, first = self.state.add_message(self.root, "user", "one", now=10)
        state, second = state.add_message(self.root, "assistant", "two", now=10)
        messages = state.nodes[self.root].messages
        self.assertEqual([m.id for m in messages], [first, second])
        self.assertEqual([m.created_at for m in messages], [10, 11])

    def test_append_and_update_message(self):
        state, message_id = self.state.add_message(self.root, "assistant", "", is_streaming=True)
        state = state.append_to_message(self.root, message_id, "Hel")
        state = state.append_to_message(self.root, message_id, "lo")
        state = state.update_message(self.root, message_id, is_streaming=False)
        message = state.nodes[self.root].messages[0]
        self.assertEqual(message.content, "Hello")
        self.assertFalse(message.is_streaming)

    def test_unknown_message_raises(self):
        with self.assertRaises(UnknownMessageError):
            self.state.update_message(self.root, "missing", content="x")

    def test_streaming_message_is_not_deleted(self):
        state, message_id = self.state.add_message(self.root, "assistant", "", is_streaming=True)
        self.assertIs(state.delete_message(self.root, message_id), state)

    def test_edit_preserve_keeps_later_messages_and_children(self):
        state, first = self.state.add_message(self.root, "user", "one", now=2)
        state, _ = state.add_message(self.root, "assistant", "two", now=3)
        state, child = state.create_node(self.root, now=4)
        state = state.edit_message(self.root, first, "uno")
        self.assertEqual([m.content for m in state.nodes[self.root].messages], ["uno", "two"])
        self.assertIn(child, state.nodes)

    def test_edit_reset_truncates_and_prunes_descendants(self):
        state, first = self.state.add_message(self.root, "user", "one", now=2)
        state, _ = state.add_message(self.root, "assistant", "two", now=3)
        state, child = state.create_node(self.root, now=4)
        state, grandchild = state.create_node(child, now=5)
        state, child_reply = state.create_reply(child, now=6)
        state, own_reply = state.create_reply(self.root, now=7)

        state = state.edit_message(self.root, first, "uno", mode="reset")

        self.assertEqual([m.content for m in state.nodes[self.root].messages], ["uno"])
        self.assertEqual(set(state.nodes), {self.root, own_reply})
        self.assertNotIn(child_reply, state.nodes)
        self.assertNotIn(grandchild, state.nodes)
        self.assertEqual(state.edges, {})

    def test_branch_from_message_records_origin(self):
        state, message_id = self.state.add_message(self.root, "user", "hi")
        state, child = state.branch_from_message(self.root, message_id)
        self.assertEqual(state.nodes[child].branched_from_message_id, message_id)
        with self.assertRaises(UnknownMessageError):
            state.branch_from_message(self.root, "missing")

    def test_active_path_skips_replies(self):
        state, a = self.state.create_node(self.root, now=2)
        state, reply = state.create_reply(a, now=3)
        self.assertEqual(state.get_active_path(a), [self.root, a])
        self.assertEqual(state.get_active_path(reply), [self.root, a])

    def test_load_normalizes_message_ties_and_reports_cycles(self):
        conversation = self.state.conversation
        root = self.state.nodes[self.root]
        messages = (
            Message(id="m2", node_id=self.root, role="assistant", content="b", created_at=5),
            Message(id="m1", node_id=self.root, role="user", content="a", created_at=5),
        )
        state, a = self.state.create_node(self.root, now=2)
        cycle_edge = ConversationEdge(id="back", source=a, target=self.root, conversation_id=conversation.id, created_at=9)
        loaded = ConversationState.load(
            conversation,
            [dataclasses.replace(root, messages=messages), state.nodes[a]],
            [*state.edges.values(), cycle_edge],
        )
        self.assertEqual([m.created_at for m in loaded.nodes[self.root].messages], [5, 6])
        self.assertTrue(loaded.audit_integrity().cycles.has_cycle)

    def test_gated_edge_inserts_keep_graph_acyclic(self):
        state = self.state
        node_ids = [self.root]
        for index in range(4):
            state, node_id = state.create_node(now=2 + index)
            node_ids.append(node_id)

        for step, (source, target) in enumerate(itertools.permutations(node_ids, 2)):
            if state.can_create_edge(source, target):
                state, _ = state.create_edge(source, target, now=10 + step)
            else:
                with self.assertRaises(CycleError):
                    state.create_edge(source, target, now=10 + step)
            self.assertFalse(detect_cycles(state.adjacency.forward).has_cycle)

        self.assertEqual(len(state.edges), 10)


class TestNormalizeMessageOrder(unittest.TestCase):
    def test_ties_are_bumped(self):
        messages = [
            Message(id=str(i), node_id="n", role="user", content=str(i), created_at=7) for i in range(3)
        ]
        self.assertEqual([m.created_at for m in normalize_message_order(messages)], [7, 8, 9])


if __name__ == "__main__":
    unittest.main()
