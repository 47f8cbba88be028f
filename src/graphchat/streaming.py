"""
Send orchestration: one user turn from placeholder messages to a finished
assistant message.

The orchestrator owns the active-request registry (at most one send per
node), builds attachment and memory context, sizes the prompt against the
model window, summarizes when needed, and streams the reply into the
assistant message. Every state change is a ``ConversationState`` command;
``on_state`` sees each intermediate snapshot.
"""
from __future__ import annotations

import asyncio
import dataclasses
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from .cancellation import CancelSignal
from .chunk_registry import RagChunkStore
from .config import CHAT_MODEL_NAME, DEFAULT_CONTEXT_LENGTH, EMBEDDING_MODEL_NAME, SUMMARY_MODEL_NAME
from .conversation_state import ConversationState
from .errors import OperationCancelled, RequestInFlightError
from .file_source import FileSourceProvider
from .memory_manager import build_memory_prompt, extract_and_store_memories, should_extract
from .memory_store import MemoryStore
from .metrics import MetricsCollector, SendOutcome
from .model_client import ChatMessage, ModelClient
from .models import (
    AttachmentContextResult,
    ContextSummary,
    CustomInstructions,
    FileAttachment,
    MemoryRetrievalPreview,
    NodeId,
    Project,
    now_ms,
)
from .observability import get_logger
from .rag_index import build_attachment_context
from .settings import MemorySettings, ToolSettings
from .summarization import estimate_message_tokens, maybe_summarize_messages, split_system_messages
from .token_budget import compute_max_input_tokens, estimate_context_extra_tokens

logger = get_logger(__name__)

StateListener = Callable[[ConversationState], None]


@dataclass(frozen=True)
class ActiveRequest:
    node_id: NodeId
    signal: CancelSignal
    started_at: int


class ActiveRequestRegistry:
    """Tracks in-flight sends by node; a second send for the same node is rejected."""

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: dict[NodeId, ActiveRequest] = {}

    def register(self, node_id: NodeId) -> CancelSignal:
        with self._lock:
            if node_id in self._requests:
                raise RequestInFlightError(node_id)
            signal = asyncio.Event()
            self._requests[node_id] = ActiveRequest(node_id=node_id, signal=signal, started_at=now_ms())
            return signal

    def unregister(self, node_id: NodeId):
        with self._lock:
            self._requests.pop(node_id, None)

    def cancel(self, node_id: NodeId) -> bool:
        with self._lock:
            request = self._requests.get(node_id)
        if request is None:
            return False
        request.signal.set()
        return True

    def is_active(self, node_id: NodeId) -> bool:
        with self._lock:
            return node_id in self._requests

    def active_nodes(self) -> list[NodeId]:
        with self._lock:
            return list(self._requests)


@dataclass(frozen=True)
class SendResult:
    state: ConversationState
    node_id: NodeId
    assistant_message_id: str
    outcome: SendOutcome
    error: str | None = None
    prompt_tokens: int = 0
    summarized: bool = False
    memory_preview: MemoryRetrievalPreview | None = None
    attachment_context: AttachmentContextResult | None = None
    project_attachment_context: AttachmentContextResult | None = None


class StreamingOrchestrator:
    def __init__(
        self,
        *,
        client: ModelClient,
        chunk_store: RagChunkStore,
        memory_store: MemoryStore,
        file_provider: FileSourceProvider,
        default_model: str = CHAT_MODEL_NAME,
        embedding_model: str | None = EMBEDDING_MODEL_NAME,
        summary_model: str | None = SUMMARY_MODEL_NAME,
        memory_settings: MemorySettings | None = None,
        tool_settings: ToolSettings | None = None,
        context_lengths: dict[str, int] | None = None,
        metrics: MetricsCollector | None = None,
        on_state: StateListener | None = None,
    ):
        self.client = client
        self.chunk_store = chunk_store
        self.memory_store = memory_store
        self.file_provider = file_provider
        self.default_model = default_model
        self.embedding_model = embedding_model
        self.summary_model = summary_model
        self.memory_settings = memory_settings or MemorySettings()
        self.tool_settings = tool_settings or ToolSettings()
        self.context_lengths = dict(context_lengths or {})
        self.metrics = metrics
        self.on_state = on_state
        self.requests = ActiveRequestRegistry()

    def cancel(self, node_id: NodeId) -> bool:
        cancelled = self.requests.cancel(node_id)
        if cancelled:
            logger.info("send_cancel_requested", node_id=node_id)
        return cancelled

    def context_length_for(self, model: str) -> int:
        return self.context_lengths.get(model, DEFAULT_CONTEXT_LENGTH)

    async def _has_scope_chunks(self, scope_type, scope_id: str | None) -> bool:
        if not scope_id:
            return False
        return bool(await self.chunk_store.load_rag_chunks_for_scope(scope_type, scope_id))

    async def send_message(
        self,
        state: ConversationState,
        node_id: NodeId,
        user_content: str,
        attachments: Sequence[FileAttachment] = (),
        *,
        project: Project | None = None,
        custom_instructions: CustomInstructions | None = None,
        skip_user_message: bool = False,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> SendResult:
        node = state.require_node(node_id)
        conversation = state.conversation
        settings = conversation.attachment_processing
        memory_settings = self.memory_settings
        model = self.default_model if node.is_reply else (node.model or self.default_model)
        embedding_model = self.embedding_model or model
        summary_model = self.summary_model or model

        signal = self.requests.register(node_id)
        started = time.perf_counter()

        def commit(next_state: ConversationState) -> ConversationState:
            if self.on_state is not None:
                self.on_state(next_state)
            return next_state

        attachment_message_id = None
        project_attachment_message_id = None
        assistant_message_id = ""
        outcome: SendOutcome = "failed"
        error: str | None = None
        prepared: list[ChatMessage] = []
        summarized = False
        memory_preview = None
        attachment_context = None
        project_attachment_context = None

        try:
            updates = {"status": "streaming"}
            if not node.model and not node.is_reply:
                updates["model"] = model
            state = commit(state.update_node(node_id, **updates))

            project_attachments = tuple(project.attachments) if project else ()
            retrieval = settings.mode == "retrieval"
            process_conversation_context = bool(attachments) or (
                retrieval and await self._has_scope_chunks("conversation", conversation.id)
            )
            if retrieval:
                process_project_context = bool(project_attachments) or (
                    project is not None and await self._has_scope_chunks("project", project.id)
                )
            else:
                already_summarized = any(
                    message.is_project_attachment_context
                    for candidate in state.nodes.values()
                    for message in candidate.messages
                )
                process_project_context = bool(project_attachments) and not already_summarized

            if process_conversation_context:
                state, attachment_message_id = state.add_message(
                    node_id, "system", "Processing attachments...", is_streaming=True, is_attachment_context=True
                )
            if process_project_context:
                state, project_attachment_message_id = state.add_message(
                    node_id,
                    "system",
                    "Processing project attachments...",
                    is_streaming=True,
                    is_attachment_context=True,
                    is_project_attachment_context=True,
                )
            if not skip_user_message:
                state, _ = state.add_message(node_id, "user", user_content, attachments=tuple(attachments))
            state, assistant_message_id = state.add_message(
                node_id, "assistant", "", is_streaming=True, model=model
            )
            state = commit(state)

            context_kwargs = dict(
                embedding_model=embedding_model,
                model=summary_model,
                client=self.client,
                chunk_store=self.chunk_store,
                file_provider=self.file_provider,
                signal=signal,
            )
            if attachment_message_id:
                try:
                    attachment_context = await build_attachment_context(
                        attachments,
                        user_content,
                        settings,
                        scope_type="conversation",
                        scope_id=conversation.id,
                        **context_kwargs,
                    )
                    content = attachment_context.content
                    self._record_rebuilds("conversation", conversation.id, attachment_context)
                except OperationCancelled:
                    raise
                except Exception as exc:
                    logger.error("attachment_context_failed", node_id=node_id, error=str(exc))
                    content = f"[Attachment processing failed: {str(exc) or 'Failed to process attachments'}]"
                state = commit(
                    state.update_message(node_id, attachment_message_id, content=content, is_streaming=False)
                )

            if project_attachment_message_id:
                try:
                    project_attachment_context = await build_attachment_context(
                        project_attachments,
                        user_content,
                        settings,
                        scope_type="project",
                        scope_id=project.id if project else conversation.id,
                        **context_kwargs,
                    )
                    content = project_attachment_context.content
                    self._record_rebuilds("project", project.id, project_attachment_context)
                except OperationCancelled:
                    raise
                except Exception as exc:
                    logger.error("project_attachment_context_failed", node_id=node_id, error=str(exc))
                    content = f"[Project attachment processing failed: {str(exc) or 'Failed to process project attachments'}]"
                state = commit(
                    state.update_message(node_id, project_attachment_message_id, content=content, is_streaming=False)
                )

            if memory_settings.enabled:
                try:
                    memory_preview = await build_memory_prompt(
                        query=user_content,
                        embedding_model=embedding_model,
                        conversation_id=conversation.id,
                        project_id=project.id if project else None,
                        settings=memory_settings,
                        client=self.client,
                        store=self.memory_store,
                        signal=signal,
                    )
                except OperationCancelled:
                    raise
                except Exception as exc:
                    logger.error("memory_retrieval_failed", node_id=node_id, error=str(exc))

            messages = self._prompt_messages(
                state, node_id, assistant_message_id, user_content, custom_instructions, project
            )
            if memory_preview is not None and memory_preview.prompt:
                system_messages, conversation_messages = split_system_messages(messages)
                messages = [*system_messages, {"role": "system", "content": memory_preview.prompt}, *conversation_messages]

            tool_overhead = estimate_context_extra_tokens(self.tool_settings, memory_settings).tools.total
            max_input_tokens = compute_max_input_tokens(self.context_length_for(model), tool_overhead)
            result = await maybe_summarize_messages(
                self.client, messages, max_input_tokens, summary_model, signal
            )
            prepared = result.messages
            if result.summary:
                summarized = True
                state = commit(
                    state.update_node(node_id, context_summary=ContextSummary(content=result.summary, created_at=now_ms()))
                )
            elif state.nodes[node_id].context_summary is not None:
                state = commit(state.update_node(node_id, context_summary=None))

            async for delta in self.client.stream_chat_completion(
                model, prepared, temperature=temperature, max_tokens=max_tokens, signal=signal
            ):
                if signal.is_set():
                    raise OperationCancelled("cancelled during stream")
                state = commit(state.append_to_message(node_id, assistant_message_id, delta))

            state = state.update_message(node_id, assistant_message_id, is_streaming=False, finish_reason="stop")
            state = commit(state.update_node(node_id, status="idle", error=None))
            outcome = "completed"

            await self._extract_memories(
                state,
                node_id,
                assistant_message_id,
                user_content,
                project,
                embedding_model,
                skip_user_message,
                signal,
            )
        except OperationCancelled:
            outcome = "cancelled"
            state = self._mark_cancelled(
                state, node_id, attachment_message_id, project_attachment_message_id, assistant_message_id
            )
            state = commit(state)
            logger.info("send_cancelled", node_id=node_id)
        except Exception as exc:
            error = str(exc) or "Unknown error"
            if assistant_message_id:
                state = state.update_message(
                    node_id, assistant_message_id, is_streaming=False, content=f"[Error: {error}]"
                )
            state = commit(state.update_node(node_id, status="error", error=error))
            logger.error("send_failed", node_id=node_id, model=model, error=error)
        finally:
            self.requests.unregister(node_id)
            latency_ms = (time.perf_counter() - started) * 1000.0
            prompt_tokens = estimate_message_tokens(prepared)
            if self.metrics is not None:
                self.metrics.record_send(
                    latency_ms, outcome, prompt_tokens=prompt_tokens, summarized=summarized, model=model
                )

        return SendResult(
            state=state,
            node_id=node_id,
            assistant_message_id=assistant_message_id,
            outcome=outcome,
            error=error,
            prompt_tokens=prompt_tokens,
            summarized=summarized,
            memory_preview=memory_preview,
            attachment_context=attachment_context,
            project_attachment_context=project_attachment_context,
        )

    def _prompt_messages(
        self,
        state: ConversationState,
        node_id: NodeId,
        assistant_message_id: str,
        user_content: str,
        custom_instructions: CustomInstructions | None,
        project: Project | None,
    ) -> list[ChatMessage]:
        instructions = custom_instructions or CustomInstructions()
        if project is not None:
            instructions = dataclasses.replace(
                instructions,
                project_profile=project.custom_profile,
                project_response_style=project.custom_response_style,
            )
        context = state.compute_context(node_id, instructions)
        messages: list[ChatMessage] = [
            {"role": message.role, "content": message.content}
            for message in context.messages
            if message.id != assistant_message_id
            and not (message.role == "user" and not message.content.strip())
        ]
        trimmed = user_content.strip()
        if trimmed and not any(
            message["role"] == "user" and message["content"].strip() == trimmed for message in messages
        ):
            messages.append({"role": "user", "content": user_content})
        return messages

    def _record_rebuilds(self, scope_type: str, scope_id: str, result: AttachmentContextResult):
        if self.metrics is not None and result.rebuilt_sources:
            self.metrics.record_index_rebuild(scope_type, scope_id, sources=len(result.rebuilt_sources))

    @staticmethod
    def _mark_cancelled(
        state: ConversationState,
        node_id: NodeId,
        attachment_message_id: str | None,
        project_attachment_message_id: str | None,
        assistant_message_id: str,
    ) -> ConversationState:
        if attachment_message_id:
            state = state.update_message(
                node_id, attachment_message_id, is_streaming=False, content="[Attachment processing cancelled]"
            )
        if project_attachment_message_id:
            state = state.update_message(
                node_id,
                project_attachment_message_id,
                is_streaming=False,
                content="[Project attachment processing cancelled]",
            )
        if assistant_message_id:
            state = state.update_message(node_id, assistant_message_id, is_streaming=False, content="[Cancelled]")
        return state.update_node(node_id, status="cancelled")

    async def _extract_memories(
        self,
        state: ConversationState,
        node_id: NodeId,
        assistant_message_id: str,
        user_content: str,
        project: Project | None,
        embedding_model: str,
        skip_user_message: bool,
        signal: CancelSignal,
    ):
        settings = self.memory_settings
        node = state.nodes[node_id]
        common = dict(
            conversation_id=state.conversation.id,
            node_id=node_id,
            settings=settings,
            embedding_model=embedding_model,
            client=self.client,
            store=self.memory_store,
            project_id=project.id if project else None,
            signal=signal,
        )
        try:
            if should_extract(settings, "user"):
                user_message_id = None
                if not skip_user_message:
                    user_message_id = next(
                        (message.id for message in reversed(node.messages) if message.role == "user"), None
                    )
                await extract_and_store_memories(
                    role="user", content=user_content, message_id=user_message_id, **common
                )
            if should_extract(settings, "assistant"):
                reply = next((message for message in node.messages if message.id == assistant_message_id), None)
                if reply is not None and reply.content.strip():
                    await extract_and_store_memories(
                        role="assistant", content=reply.content, message_id=reply.id, **common
                    )
        except OperationCancelled:
            logger.info("memory_update_cancelled", node_id=node_id)
        except Exception as exc:
            logger.error("memory_update_failed", node_id=node_id, error=str(exc))
