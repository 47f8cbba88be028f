"""
Prompt context assembly for a target node of a conversation DAG.

The assembled context follows exactly one thread path from the root to the
target, emits instruction messages first, then each node's visible messages
in parent-before-child order.
"""
from __future__ import annotations

from typing import Mapping

from .conversation_graph import Adjacency, collect_ancestors, topological_sort
from .models import (
    SYSTEM_NODE_ID,
    ComputedContext,
    ConversationNode,
    CustomInstructions,
    Message,
    NodeId,
)
from .settings import ContextSettings
from .tokenization import estimate_tokens_for_contents

CUSTOM_PROFILE_ID = "custom-profile"
CUSTOM_RESPONSE_STYLE_ID = "custom-response-style"
PROJECT_PROFILE_ID = "project-profile"
PROJECT_RESPONSE_STYLE_ID = "project-response-style"
SYSTEM_PROMPT_ID = "system-prompt"

SYNTHETIC_MESSAGE_IDS = frozenset(
    {
        CUSTOM_PROFILE_ID,
        CUSTOM_RESPONSE_STYLE_ID,
        PROJECT_PROFILE_ID,
        PROJECT_RESPONSE_STYLE_ID,
        SYSTEM_PROMPT_ID,
    }
)


def _synthetic_message(message_id: str, content: str, **flags) -> Message:
    return Message(
        id=message_id,
        node_id=SYSTEM_NODE_ID,
        role="system",
        content=content,
        created_at=0,
        **flags,
    )


def build_instruction_messages(
    system_prompt: str | None,
    custom_instructions: CustomInstructions | None,
    settings: ContextSettings,
) -> list[Message]:
    """
    Instruction messages in fixed order: user profile, user response style,
    project profile, project response style, conversation system prompt.
    Blank entries are skipped.
    """
    instructions = custom_instructions or CustomInstructions()
    messages: list[Message] = []

    if settings.include_custom_instructions:
        profile = (instructions.profile or "").strip()
        if profile:
            messages.append(
                _synthetic_message(CUSTOM_PROFILE_ID, f"User profile:\n{profile}", is_custom_instruction=True)
            )
        style = (instructions.response_style or "").strip()
        if style:
            messages.append(
                _synthetic_message(CUSTOM_RESPONSE_STYLE_ID, f"Response style:\n{style}", is_custom_instruction=True)
            )

    if settings.include_project_instructions:
        project_profile = (instructions.project_profile or "").strip()
        if project_profile:
            messages.append(
                _synthetic_message(
                    PROJECT_PROFILE_ID, f"Project context:\n{project_profile}", is_project_instruction=True
                )
            )
        project_style = (instructions.project_response_style or "").strip()
        if project_style:
            messages.append(
                _synthetic_message(
                    PROJECT_RESPONSE_STYLE_ID,
                    f"Project response style:\n{project_style}",
                    is_project_instruction=True,
                )
            )

    if settings.include_system_prompt and system_prompt and system_prompt.strip():
        messages.append(_synthetic_message(SYSTEM_PROMPT_ID, system_prompt))

    return messages


def _parent_age_key(parent_id: NodeId, nodes_by_id: Mapping[NodeId, ConversationNode]):
    parent = nodes_by_id.get(parent_id)
    if parent is None:
        return (1, 0, parent_id)
    return (0, parent.created_at, parent_id)


def choose_thread_parent(
    node_id: NodeId,
    nodes_by_id: Mapping[NodeId, ConversationNode],
    reverse: Adjacency,
) -> NodeId | None:
    """
    Picks the single parent the thread path continues through.

    Reply nodes step to their ``parent_node_id``. Branch nodes prefer their
    recorded ``parent_node_id`` when it is one of their reverse parents,
    otherwise the oldest parent by ``(created_at, id)``; parents missing from
    the node map sort last.
    """
    node = nodes_by_id.get(node_id)
    if node is not None and node.is_reply:
        return node.parent_node_id

    parents = reverse.get(node_id, [])
    if not parents:
        return None
    if node is not None and node.parent_node_id in parents:
        return node.parent_node_id
    return min(parents, key=lambda parent_id: _parent_age_key(parent_id, nodes_by_id))


def resolve_thread_path(
    target_node_id: NodeId,
    nodes_by_id: Mapping[NodeId, ConversationNode],
    reverse: Adjacency,
    conversation_root_id: NodeId | None = None,
) -> list[NodeId]:
    """Root-to-target node ids along the chosen thread path."""
    path: list[NodeId] = []
    seen: set[NodeId] = set()
    current: NodeId | None = target_node_id
    while current is not None and current not in seen:
        seen.add(current)
        path.append(current)
        if current == conversation_root_id:
            break
        current = choose_thread_parent(current, nodes_by_id, reverse)
    path.reverse()
    return path


def linearize_thread(
    path: list[NodeId],
    nodes_by_id: Mapping[NodeId, ConversationNode],
    reverse: Adjacency,
    forward: Adjacency,
) -> list[NodeId]:
    """
    Orders the path's branch nodes topologically over the ancestor set, then
    splices reply nodes in directly after the node they reply to.
    """
    on_path = set(path)
    branch_ids = [node_id for node_id in path if not _is_reply(nodes_by_id.get(node_id))]
    ancestors = collect_ancestors(branch_ids[-1], reverse) if branch_ids else []
    ordered = [node_id for node_id in topological_sort(forward, ancestors) if node_id in on_path]

    for node_id in path:
        node = nodes_by_id.get(node_id)
        if not _is_reply(node):
            continue
        anchor = node.parent_node_id
        if anchor in ordered:
            ordered.insert(ordered.index(anchor) + 1, node_id)
        else:
            ordered.append(node_id)
    return ordered


def _is_reply(node: ConversationNode | None) -> bool:
    return bool(node is not None and node.is_reply)


def filter_node_messages(node: ConversationNode, settings: ContextSettings) -> list[Message]:
    """Visible messages of a node: every non-system message plus gated attachment context."""
    visible: list[Message] = []
    for message in sorted(node.messages, key=lambda m: m.created_at):
        if message.role != "system":
            visible.append(message)
            continue
        if not message.is_attachment_context:
            continue
        if message.is_project_attachment_context:
            if settings.include_project_attachment_context:
                visible.append(message)
        elif settings.include_attachment_context:
            visible.append(message)
    return visible


def estimate_context_tokens(messages) -> int:
    return estimate_tokens_for_contents(message.content for message in messages)


def compute_context(
    target_node_id: NodeId,
    nodes_by_id: Mapping[NodeId, ConversationNode],
    reverse: Adjacency,
    forward: Adjacency,
    system_prompt: str | None = None,
    custom_instructions: CustomInstructions | None = None,
    context_settings: ContextSettings | None = None,
    conversation_root_id: NodeId | None = None,
) -> ComputedContext:
    """
    Computes the ordered prompt messages and token estimate for a target node.

    Nodes missing from ``nodes_by_id`` are skipped. Excluded nodes still count
    toward the thread path but contribute no messages.
    """
    settings = context_settings or ContextSettings()
    excluded = set(settings.excluded_node_ids)

    path = resolve_thread_path(target_node_id, nodes_by_id, reverse, conversation_root_id)
    ordered_ids = linearize_thread(path, nodes_by_id, reverse, forward)
    context_nodes = [nodes_by_id[node_id] for node_id in ordered_ids if node_id in nodes_by_id]

    messages = build_instruction_messages(system_prompt, custom_instructions, settings)
    for node in context_nodes:
        if node.id in excluded:
            continue
        messages.extend(filter_node_messages(node, settings))

    return ComputedContext(
        nodes=tuple(context_nodes),
        messages=tuple(messages),
        token_estimate=estimate_context_tokens(messages),
    )
