"""
Exception taxonomy for graph mutations, request lifecycle and cancellation.
"""
from __future__ import annotations


class GraphChatError(Exception):
    """Base class for errors raised by the conversation engine."""


class StructuralViolation(GraphChatError):
    """A mutation was rejected before it touched any state."""


class CycleError(StructuralViolation):
    def __init__(self, source: str, target: str):
        super().__init__(f"edge {source} -> {target} would create a cycle")
        self.source = source
        self.target = target


class UnknownNodeError(StructuralViolation):
    def __init__(self, node_id: str):
        super().__init__(f"unknown node: {node_id}")
        self.node_id = node_id


class UnknownMessageError(StructuralViolation):
    def __init__(self, node_id: str, message_id: str):
        super().__init__(f"unknown message {message_id} in node {node_id}")
        self.node_id = node_id
        self.message_id = message_id


class ProtectedNodeError(StructuralViolation):
    def __init__(self, node_id: str):
        super().__init__(f"node {node_id} is the conversation root and cannot be deleted")
        self.node_id = node_id


class CrossConversationEdgeError(StructuralViolation):
    def __init__(self, source: str, target: str):
        super().__init__(f"edge {source} -> {target} spans two conversations")
        self.source = source
        self.target = target


class RequestInFlightError(GraphChatError):
    def __init__(self, node_id: str):
        super().__init__(f"a send is already in flight for node {node_id}")
        self.node_id = node_id


class OperationCancelled(GraphChatError):
    """Raised when an external cancellation signal aborts indexing, summarization or streaming."""
