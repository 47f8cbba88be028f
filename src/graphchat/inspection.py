"""
Console views for debugging what the engine would send: the assembled
context, the memory retrieval preview and RAG scope statistics.

Renderers return rich renderables; the ``show_*`` helpers print them on the
shared console.
"""
from __future__ import annotations

from datetime import datetime
from typing import Sequence

from rich.panel import Panel
from rich.table import Table, box

from .config import console
from .models import ComputedContext, MemoryRetrievalPreview, RagScopeEmbeddingStats, RagScopeStats
from .token_budget import ContextExtraTokenEstimate

_PREVIEW_CHARS = 80


def _preview(text: str, limit: int = _PREVIEW_CHARS) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."


def _message_kind(message) -> str:
    if message.is_project_attachment_context:
        return "project attachments"
    if message.is_attachment_context:
        return "attachments"
    if message.is_project_instruction:
        return "project instruction"
    if message.is_custom_instruction:
        return "instruction"
    return ""


def _format_timestamp(value: int | None) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000).isoformat(timespec="seconds")


def render_context_table(context: ComputedContext, *, title: str = "Computed Context") -> Table:
    table = Table(
        title=f"{title} ({len(context.messages)} messages, ~{context.token_estimate} tokens)",
        border_style="blue",
        header_style="bold",
        box=box.SQUARE,
    )
    table.add_column("#", style="dim", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Kind", style="yellow")
    table.add_column("Content", style="white")

    for index, message in enumerate(context.messages, start=1):
        table.add_row(
            str(index),
            message.node_id or "-",
            message.role,
            _message_kind(message),
            _preview(message.content),
        )
    return table


def render_memory_preview_panel(preview: MemoryRetrievalPreview | None) -> Panel:
    if preview is None or not preview.items:
        return Panel("[yellow]No memories retrieved.[/yellow]", title="Memory Retrieval", border_style="yellow")
    return Panel(preview.preview, title=f"Memory Retrieval ({len(preview.items)} items)", border_style="green")


def render_rag_stats_table(
    rows: Sequence[tuple[str, str, RagScopeStats]],
    embedding_stats: dict[tuple[str, str], RagScopeEmbeddingStats] | None = None,
) -> Table:
    """Tabulates ``(scope_type, scope_id, stats)`` rows, with embedding coverage when supplied."""
    table = Table(title="RAG Scopes", border_style="blue", header_style="bold", box=box.SQUARE)
    table.add_column("Scope", style="cyan")
    table.add_column("ID", style="magenta")
    table.add_column("Chunks", style="yellow", justify="right")
    table.add_column("Sources", style="yellow", justify="right")
    table.add_column("Updated", style="white")
    table.add_column("Embeddings", style="white")

    embedding_stats = embedding_stats or {}
    for scope_type, scope_id, stats in rows:
        coverage = embedding_stats.get((scope_type, scope_id))
        if coverage is None:
            embeddings = "-"
        elif coverage.stale_embedding_chunks:
            embeddings = (
                f"[red]{coverage.matching_embedding_chunks}/{coverage.chunk_count} "
                f"({coverage.stale_embedding_chunks} stale)[/red]"
            )
        else:
            embeddings = f"[green]{coverage.matching_embedding_chunks}/{coverage.chunk_count}[/green]"
        table.add_row(
            scope_type,
            scope_id,
            str(stats.chunk_count),
            str(stats.source_count),
            _format_timestamp(stats.latest_updated_at),
            embeddings,
        )
    return table


def render_token_budget_panel(
    context: ComputedContext, extra: ContextExtraTokenEstimate, max_input_tokens: int
) -> Panel:
    total = context.token_estimate + extra.total
    style = "red" if total > max_input_tokens else "green"
    body = (
        f"Context: {context.token_estimate}\n"
        f"Tools: {extra.tools.total} ({extra.tools.local_tool_count} local, "
        f"{extra.tools.mcp_tool_count} MCP across {extra.tools.mcp_server_count} servers)\n"
        f"Memory: {extra.memory.total} ({extra.memory.item_count} items, {extra.memory.source})\n"
        f"[bold {style}]Total: {total} / {max_input_tokens}[/bold {style}]"
    )
    return Panel(body, title="Token Budget", border_style=style)


def show_context(context: ComputedContext):
    console.print(render_context_table(context))


def show_memory_preview(preview: MemoryRetrievalPreview | None):
    console.print(render_memory_preview_panel(preview))


def show_rag_stats(
    rows: Sequence[tuple[str, str, RagScopeStats]],
    embedding_stats: dict[tuple[str, str], RagScopeEmbeddingStats] | None = None,
):
    if not rows:
        console.print("[yellow]No indexed attachment scopes.[/yellow]")
        return
    console.print(render_rag_stats_table(rows, embedding_stats))
