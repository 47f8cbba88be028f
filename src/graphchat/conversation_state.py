"""
Explicit conversation state and the commands that mutate it.

A ``ConversationState`` is an immutable snapshot: every command validates its
arguments against the snapshot, raises a ``StructuralViolation`` before doing
anything when they are invalid, and otherwise returns a new snapshot for the
caller to persist.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from functools import cached_property
from typing import Iterable, Literal

from .context_builder import compute_context, resolve_thread_path
from .conversation_graph import (
    AdjacencyMaps,
    build_adjacency,
    detect_cycles,
    find_orphaned_nodes,
    get_descendants,
    sort_edges,
    would_create_cycle,
)
from .errors import (
    CrossConversationEdgeError,
    CycleError,
    ProtectedNodeError,
    UnknownMessageError,
    UnknownNodeError,
)
from .models import (
    ComputedContext,
    Conversation,
    ConversationEdge,
    ConversationNode,
    CustomInstructions,
    CycleCheckResult,
    Message,
    NodeId,
    new_id,
    now_ms,
)
from .observability import get_logger

logger = get_logger(__name__)

EditMode = Literal["preserve", "reset"]


def normalize_message_order(messages: Iterable[Message]) -> tuple[Message, ...]:
    """Sorts by ``created_at`` and bumps ties so timestamps strictly increase."""
    ordered = sorted(messages, key=lambda message: message.created_at)
    normalized: list[Message] = []
    previous: int | None = None
    for message in ordered:
        if previous is not None and message.created_at <= previous:
            message = dataclasses.replace(message, created_at=previous + 1)
        normalized.append(message)
        previous = message.created_at
    return tuple(normalized)


@dataclass(frozen=True)
class IntegrityReport:
    cycles: CycleCheckResult
    orphaned_nodes: tuple[NodeId, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.cycles.has_cycle and not self.orphaned_nodes


@dataclass(frozen=True)
class ConversationState:
    conversation: Conversation
    nodes: dict[NodeId, ConversationNode] = field(default_factory=dict)
    edges: dict[str, ConversationEdge] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def new_conversation(
        cls,
        title: str,
        *,
        system_prompt: str = "",
        project_id: str | None = None,
        model: str | None = None,
        now: int | None = None,
        **conversation_fields,
    ) -> "ConversationState":
        timestamp = now if now is not None else now_ms()
        root = ConversationNode(
            id=new_id(),
            conversation_id=new_id(),
            created_at=timestamp,
            updated_at=timestamp,
            model=model,
        )
        conversation = Conversation(
            id=root.conversation_id,
            title=title,
            root_node_id=root.id,
            system_prompt=system_prompt,
            model=model,
            project_id=project_id,
            created_at=timestamp,
            updated_at=timestamp,
            **conversation_fields,
        )
        return cls(conversation=conversation, nodes={root.id: root}, edges={})

    @classmethod
    def load(
        cls,
        conversation: Conversation,
        nodes: Iterable[ConversationNode],
        edges: Iterable[ConversationEdge],
    ) -> "ConversationState":
        """Builds a snapshot from stored records, normalizing message order and edge order."""
        normalized_nodes = {
            node.id: dataclasses.replace(node, messages=normalize_message_order(node.messages))
            for node in nodes
        }
        ordered_edges = {edge.id: edge for edge in sort_edges(edges)}
        state = cls(conversation=conversation, nodes=normalized_nodes, edges=ordered_edges)
        report = state.audit_integrity()
        if not report.ok:
            logger.error(
                "conversation_integrity_violation",
                conversation_id=conversation.id,
                cycle_nodes=list(report.cycles.cycle_nodes),
                orphaned_nodes=list(report.orphaned_nodes),
            )
        return state

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------
    @cached_property
    def adjacency(self) -> AdjacencyMaps:
        return build_adjacency(self.edges.values(), self.nodes)

    @property
    def root_node_id(self) -> NodeId:
        return self.conversation.root_node_id

    def require_node(self, node_id: NodeId) -> ConversationNode:
        node = self.nodes.get(node_id)
        if node is None:
            raise UnknownNodeError(node_id)
        return node

    def can_create_edge(self, source: NodeId, target: NodeId) -> bool:
        return not would_create_cycle(self.adjacency.forward, source, target)

    def get_branches_from_node(self, node_id: NodeId) -> list[NodeId]:
        return [
            child_id
            for child_id in self.adjacency.forward.get(node_id, [])
            if child_id in self.nodes and not self.nodes[child_id].is_reply
        ]

    def get_replies_for_node(self, node_id: NodeId) -> list[ConversationNode]:
        replies = [
            node for node in self.nodes.values() if node.is_reply and node.parent_node_id == node_id
        ]
        return sorted(replies, key=lambda node: (node.created_at, node.id))

    def get_active_path(self, node_id: NodeId) -> list[NodeId]:
        """Branch-only path from the root to ``node_id``; reply nodes resolve to their anchor."""
        target: NodeId | None = node_id
        while target is not None:
            node = self.nodes.get(target)
            if node is None:
                return []
            if not node.is_reply:
                break
            target = node.parent_node_id
        if target is None:
            return []
        path = resolve_thread_path(target, self.nodes, self.adjacency.reverse, self.root_node_id)
        return [item for item in path if item in self.nodes and not self.nodes[item].is_reply]

    def compute_context(
        self,
        node_id: NodeId,
        custom_instructions: CustomInstructions | None = None,
    ) -> ComputedContext:
        return compute_context(
            node_id,
            self.nodes,
            self.adjacency.reverse,
            self.adjacency.forward,
            system_prompt=self.conversation.system_prompt,
            custom_instructions=custom_instructions,
            context_settings=self.conversation.context_settings,
            conversation_root_id=self.root_node_id,
        )

    def audit_integrity(self) -> IntegrityReport:
        forward = self.adjacency.forward
        return IntegrityReport(
            cycles=detect_cycles(forward),
            orphaned_nodes=tuple(find_orphaned_nodes(self.root_node_id, self.nodes, forward)),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _with(self, *, nodes=None, edges=None, conversation=None) -> "ConversationState":
        return ConversationState(
            conversation=conversation if conversation is not None else self.conversation,
            nodes=nodes if nodes is not None else self.nodes,
            edges=edges if edges is not None else self.edges,
        )

    def _replace_node(self, node: ConversationNode) -> "ConversationState":
        nodes = dict(self.nodes)
        nodes[node.id] = node
        return self._with(nodes=nodes)

    def _reply_closure(self, anchor_ids: set[NodeId]) -> set[NodeId]:
        """Reply nodes anchored, directly or through other replies, on ``anchor_ids``."""
        found: set[NodeId] = set()
        frontier = set(anchor_ids)
        while frontier:
            next_frontier = {
                node.id
                for node in self.nodes.values()
                if node.is_reply and node.parent_node_id in frontier and node.id not in found
            }
            found |= next_frontier
            frontier = next_frontier
        return found

    def _without_nodes(self, removed: set[NodeId], nodes: dict[NodeId, ConversationNode]) -> "ConversationState":
        kept_nodes = {node_id: node for node_id, node in nodes.items() if node_id not in removed}
        kept_edges = {
            edge_id: edge
            for edge_id, edge in self.edges.items()
            if edge.source not in removed and edge.target not in removed
        }
        return self._with(nodes=kept_nodes, edges=kept_edges)

    # ------------------------------------------------------------------
    # Node and edge commands
    # ------------------------------------------------------------------
    def create_node(
        self,
        parent_node_id: NodeId | None = None,
        *,
        branched_from_message_id: str | None = None,
        model: str | None = None,
        now: int | None = None,
    ) -> tuple["ConversationState", NodeId]:
        if parent_node_id is not None:
            parent = self.require_node(parent_node_id)
            if parent.is_reply:
                raise UnknownNodeError(parent_node_id)
        timestamp = now if now is not None else now_ms()
        node = ConversationNode(
            id=new_id(),
            conversation_id=self.conversation.id,
            created_at=timestamp,
            updated_at=timestamp,
            branched_from_message_id=branched_from_message_id,
            parent_node_id=parent_node_id,
            model=model if model is not None else self.conversation.model,
        )
        nodes = dict(self.nodes)
        nodes[node.id] = node
        edges = dict(self.edges)
        if parent_node_id is not None:
            edge = ConversationEdge(
                id=new_id(),
                source=parent_node_id,
                target=node.id,
                conversation_id=self.conversation.id,
                created_at=timestamp,
            )
            edges[edge.id] = edge
        return self._with(nodes=nodes, edges=edges), node.id

    def branch_from_message(
        self, node_id: NodeId, message_id: str, *, now: int | None = None
    ) -> tuple["ConversationState", NodeId]:
        node = self.require_node(node_id)
        if not any(message.id == message_id for message in node.messages):
            raise UnknownMessageError(node_id, message_id)
        return self.create_node(node_id, branched_from_message_id=message_id, now=now)

    def create_reply(self, parent_node_id: NodeId, *, now: int | None = None) -> tuple["ConversationState", NodeId]:
        """Side-thread node anchored on ``parent_node_id``; it gets no branch edge."""
        self.require_node(parent_node_id)
        timestamp = now if now is not None else now_ms()
        node = ConversationNode(
            id=new_id(),
            conversation_id=self.conversation.id,
            created_at=timestamp,
            updated_at=timestamp,
            is_reply=True,
            parent_node_id=parent_node_id,
        )
        return self._replace_node(node), node.id

    def create_edge(
        self, source: NodeId, target: NodeId, *, now: int | None = None
    ) -> tuple["ConversationState", str]:
        source_node = self.require_node(source)
        target_node = self.require_node(target)
        if source_node.conversation_id != target_node.conversation_id:
            raise CrossConversationEdgeError(source, target)
        if source_node.is_reply:
            raise UnknownNodeError(source)
        if target_node.is_reply:
            raise UnknownNodeError(target)
        if would_create_cycle(self.adjacency.forward, source, target):
            logger.warning("edge_rejected_cycle", source=source, target=target)
            raise CycleError(source, target)

        edge = ConversationEdge(
            id=new_id(),
            source=source,
            target=target,
            conversation_id=source_node.conversation_id,
            created_at=now if now is not None else now_ms(),
        )
        edges = dict(self.edges)
        edges[edge.id] = edge
        return self._with(edges=edges), edge.id

    def delete_edge(self, edge_id: str) -> "ConversationState":
        if edge_id not in self.edges:
            return self
        edges = dict(self.edges)
        del edges[edge_id]
        return self._with(edges=edges)

    def delete_node(self, node_id: NodeId) -> "ConversationState":
        """Removes a node, its edges and its reply threads. The root is protected."""
        if node_id == self.root_node_id:
            raise ProtectedNodeError(node_id)
        self.require_node(node_id)
        removed = {node_id} | self._reply_closure({node_id})
        return self._without_nodes(removed, self.nodes)

    def update_node(self, node_id: NodeId, *, now: int | None = None, **changes) -> "ConversationState":
        node = self.require_node(node_id)
        timestamp = now if now is not None else now_ms()
        return self._replace_node(dataclasses.replace(node, updated_at=timestamp, **changes))

    # ------------------------------------------------------------------
    # Message commands
    # ------------------------------------------------------------------
    def add_message(
        self, node_id: NodeId, role: str, content: str, *, now: int | None = None, **fields
    ) -> tuple["ConversationState", str]:
        """Appends a message; ``created_at`` is bumped past the node's last message when needed."""
        node = self.require_node(node_id)
        timestamp = now if now is not None else now_ms()
        last_created_at = node.messages[-1].created_at if node.messages else 0
        created_at = last_created_at + 1 if timestamp <= last_created_at else timestamp
        message = Message(
            id=new_id(),
            node_id=node_id,
            role=role,
            content=content,
            created_at=created_at,
            **fields,
        )
        updated = dataclasses.replace(node, messages=node.messages + (message,), updated_at=timestamp)
        return self._replace_node(updated), message.id

    def _require_message_index(self, node: ConversationNode, message_id: str) -> int:
        for index, message in enumerate(node.messages):
            if message.id == message_id:
                return index
        raise UnknownMessageError(node.id, message_id)

    def update_message(self, node_id: NodeId, message_id: str, **changes) -> "ConversationState":
        node = self.require_node(node_id)
        index = self._require_message_index(node, message_id)
        messages = list(node.messages)
        messages[index] = dataclasses.replace(messages[index], **changes)
        return self._replace_node(dataclasses.replace(node, messages=tuple(messages), updated_at=now_ms()))

    def append_to_message(self, node_id: NodeId, message_id: str, delta: str) -> "ConversationState":
        node = self.require_node(node_id)
        index = self._require_message_index(node, message_id)
        messages = list(node.messages)
        messages[index] = dataclasses.replace(messages[index], content=messages[index].content + delta)
        return self._replace_node(dataclasses.replace(node, messages=tuple(messages)))

    def edit_message(
        self, node_id: NodeId, message_id: str, content: str, mode: EditMode = "preserve"
    ) -> "ConversationState":
        """
        Rewrites a message. ``reset`` also drops every later message in the node
        and deletes all descendant nodes, their replies and their edges.
        """
        node = self.require_node(node_id)
        index = self._require_message_index(node, message_id)
        messages = list(node.messages)
        messages[index] = dataclasses.replace(messages[index], content=content)
        if mode == "reset":
            messages = messages[: index + 1]
        nodes = dict(self.nodes)
        nodes[node_id] = dataclasses.replace(node, messages=tuple(messages), updated_at=now_ms())

        if mode != "reset":
            return self._with(nodes=nodes)

        descendants = get_descendants(node_id, self.adjacency.forward)
        removed = descendants | self._reply_closure(descendants)
        if removed:
            logger.info("edit_reset_pruned_nodes", node_id=node_id, removed=len(removed))
        return self._without_nodes(removed, nodes)

    def delete_message(self, node_id: NodeId, message_id: str) -> "ConversationState":
        """Deletes a message unless it is still streaming."""
        node = self.require_node(node_id)
        index = self._require_message_index(node, message_id)
        if node.messages[index].is_streaming:
            return self
        messages = node.messages[:index] + node.messages[index + 1 :]
        return self._replace_node(dataclasses.replace(node, messages=messages, updated_at=now_ms()))
