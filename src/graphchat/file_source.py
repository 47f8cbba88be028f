"""
File-content abstraction for attachments.
Local filesystem and in-memory implementations share one async streaming interface.
"""
from __future__ import annotations

import asyncio
import codecs
import mimetypes
import shutil
from pathlib import Path
from typing import AsyncIterator, Protocol

from .cancellation import CancelSignal, raise_if_cancelled
from .models import FileAttachment
from .observability import get_logger

logger = get_logger(__name__)

TEXT_MIME_PREFIXES = ("text/",)
TEXT_MIME_TYPES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/xhtml+xml",
        "application/x-yaml",
        "application/yaml",
        "text/markdown",
        "text/csv",
    }
)
TEXT_FILE_EXTENSIONS = (
    ".md", ".txt", ".csv", ".json", ".xml", ".html", ".htm", ".yaml",
    ".yml", ".toml", ".ini", ".cfg", ".conf", ".ics", ".log",
)
_READ_BYTES = 64 * 1024


class FileSource(Protocol):
    @property
    def name(self) -> str:
        ...

    @property
    def size(self) -> int:
        ...

    @property
    def last_modified(self) -> int:
        ...

    @property
    def type(self) -> str:
        ...

    def iter_text(self) -> AsyncIterator[str]:
        ...


class FileSourceProvider(Protocol):
    async def resolve(self, attachment: FileAttachment) -> FileSource | None:
        ...


def is_text_like_file(source: FileSource) -> bool:
    mime = source.type or ""
    if any(mime.startswith(prefix) for prefix in TEXT_MIME_PREFIXES):
        return True
    if mime in TEXT_MIME_TYPES:
        return True
    return source.name.lower().endswith(TEXT_FILE_EXTENSIONS)


def format_file_size(size: float) -> str:
    if size < 1024:
        return f"{int(size)} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / (1024 * 1024 * 1024):.2f} GB"


class LocalFileSource:
    """A file on local disk, decoded as UTF-8 with replacement for bad bytes."""

    def __init__(self, path: Path, mime_type: str | None = None):
        self._path = Path(path)
        self._type = mime_type if mime_type is not None else (mimetypes.guess_type(self._path.name)[0] or "")

    @property
    def path(self) -> Path:
        return self._path

    @property
    def name(self) -> str:
        return self._path.name

    @property
    def size(self) -> int:
        return self._path.stat().st_size

    @property
    def last_modified(self) -> int:
        return int(self._path.stat().st_mtime * 1000)

    @property
    def type(self) -> str:
        return self._type

    async def iter_text(self) -> AsyncIterator[str]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        handle = await asyncio.to_thread(open, self._path, "rb")
        try:
            while True:
                raw = await asyncio.to_thread(handle.read, _READ_BYTES)
                if not raw:
                    break
                text = decoder.decode(raw)
                if text:
                    yield text
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail
        finally:
            handle.close()


class InMemoryFileSource:
    def __init__(self, name: str, text: str, *, type: str = "", last_modified: int = 0, size: int | None = None):
        self._name = name
        self._text = text
        self._type = type
        self._last_modified = last_modified
        self._size = size if size is not None else len(text.encode("utf-8"))

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return self._size

    @property
    def last_modified(self) -> int:
        return self._last_modified

    @property
    def type(self) -> str:
        return self._type

    async def iter_text(self) -> AsyncIterator[str]:
        for offset in range(0, len(self._text), _READ_BYTES):
            yield self._text[offset : offset + _READ_BYTES]


class LocalFileSourceProvider:
    """Resolves attachments to files under a root directory, keyed by handle id or name."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def ensure_ready(self):
        self._root.mkdir(parents=True, exist_ok=True)

    def save_file(self, source_path: Path, destination_name: str) -> Path:
        self.ensure_ready()
        destination = self._root / str(destination_name)
        shutil.copy2(source_path, destination)
        return destination

    async def resolve(self, attachment: FileAttachment) -> FileSource | None:
        root = self._root.resolve()
        candidate = (root / (attachment.handle_id or attachment.name)).resolve()
        if candidate == root or not candidate.is_relative_to(root):
            logger.warning("attachment_path_rejected", attachment_id=attachment.id, path=str(candidate))
            return None
        exists = await asyncio.to_thread(candidate.is_file)
        if not exists:
            logger.warning("attachment_unavailable", attachment_id=attachment.id, path=str(candidate))
            return None
        return LocalFileSource(candidate, attachment.type or None)


class InMemoryFileSourceProvider:
    def __init__(self, sources: dict[str, FileSource] | None = None):
        self._sources: dict[str, FileSource] = dict(sources or {})

    def register(self, key: str, source: FileSource):
        self._sources[key] = source

    def revoke(self, key: str):
        self._sources.pop(key, None)

    async def resolve(self, attachment: FileAttachment) -> FileSource | None:
        for key in (attachment.handle_id, attachment.id):
            if key and key in self._sources:
                return self._sources[key]
        logger.warning("attachment_unavailable", attachment_id=attachment.id)
        return None


async def stream_file_text_chunks(
    source: FileSource, chunk_char_limit: int, signal: CancelSignal | None = None
) -> AsyncIterator[str]:
    """Re-blocks a file's text into pieces of exactly ``chunk_char_limit`` chars, plus a shorter tail."""
    limit = max(1, int(chunk_char_limit))
    buffer = ""
    async for piece in source.iter_text():
        raise_if_cancelled(signal, "file read")
        buffer += piece
        while len(buffer) >= limit:
            chunk, buffer = buffer[:limit], buffer[limit:]
            yield chunk
    if buffer:
        yield buffer


async def stream_file_overlapping_chunks(
    source: FileSource,
    chunk_size: int,
    chunk_overlap: int,
    signal: CancelSignal | None = None,
) -> AsyncIterator[str]:
    """Sliding-window chunks over a file; the final partial window is included."""
    read_block_size = max(4096, chunk_size * 2)
    size = max(1, chunk_size)
    overlap = max(0, min(size - 1, chunk_overlap))
    step = max(1, size - overlap)
    buffer = ""

    async for block in stream_file_text_chunks(source, read_block_size, signal):
        buffer += block
        while len(buffer) >= size:
            yield buffer[:size]
            buffer = buffer[step:]

    if buffer:
        yield buffer
