"""Source files with edit-aware offsets.

A SourceFile keeps the line table of the text it was loaded with and never
rebuilds it: recorded (line, column) coordinates always refer to that
original text. Positions that must survive edits are held as LiveOffsets,
handles into an arena owned by the file that ``replace`` rebases in one pass.
"""

import asyncio
import hashlib
from bisect import bisect_right
from pathlib import Path
from typing import Optional, Union

import aiofiles
import structlog

from rebaseline.errors import InternalError, InternalOffsetError, SourceIOError

log = structlog.get_logger()

PathLike = Union[str, Path]


class LiveOffset:
    """Handle to a byte offset that follows edits to its file."""

    __slots__ = ("_source", "_index")

    def __init__(self, source: "SourceFile", index: int):
        self._source = source
        self._index = index

    @property
    def value(self) -> int:
        value = self._source._offsets[self._index]
        if value is None:
            raise InternalError(f"{self._source.path}: live offset was released")
        return value

    @property
    def source(self) -> "SourceFile":
        return self._source

    def move(self, value: int):
        """Point the handle at ``value``; it keeps following edits from there."""
        if self._source._offsets[self._index] is None:
            raise InternalError(f"{self._source.path}: live offset was released")
        self._source._offsets[self._index] = value

    def release(self):
        """Stop tracking this offset."""
        self._source._offsets[self._index] = None

    def __repr__(self) -> str:
        value = self._source._offsets[self._index]
        return f"LiveOffset({value})"


class SourceFile:
    """Text of one file plus everything needed to edit it safely."""

    def __init__(self, path: PathLike, content: Union[str, bytes]):
        self.path = Path(path)
        self.content = content.encode("utf-8") if isinstance(content, str) else content
        self._persisted = self.content
        self._fingerprint: Optional[str] = None
        self._offsets: list[Optional[int]] = []

        self._line_starts = [0]
        index = self.content.find(b"\n")
        while index != -1:
            self._line_starts.append(index + 1)
            index = self.content.find(b"\n", index + 1)

    @classmethod
    async def read(
        cls, path: PathLike, cache: Optional["SourceCache"] = None
    ) -> "SourceFile":
        """Read a file, sharing the instance through ``cache`` when given."""
        if cache is not None:
            return await cache.get(path)
        return await cls._load(Path(path).resolve())

    @classmethod
    async def _load(cls, path: Path) -> "SourceFile":
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except OSError as e:
            log.error("source_read_failed", path=str(path), error=str(e))
            raise SourceIOError(path, e.strerror or str(e)) from e

        log.debug("source_read", path=str(path), size=len(content))
        return cls(path, content)

    @property
    def dirty(self) -> bool:
        """True when the content differs from what was last read or saved."""
        return self.content != self._persisted

    @property
    def saved_text(self) -> str:
        """Content as last read from or written to disk."""
        return self._persisted.decode("utf-8")

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    @property
    def line_count(self) -> int:
        return len(self._line_starts)

    def position_to_offset(self, line: int, column: int) -> int:
        """Convert a 0-based (line, column) of the original text to a byte offset."""
        if line < 0 or line >= len(self._line_starts) or column < 0:
            raise ValueError(f"{self.path}: position {line}:{column} is out of range")
        return self._line_starts[line] + column

    def offset_to_position(self, offset: int) -> tuple[int, int]:
        """Inverse of position_to_offset over the original line table."""
        if offset < 0:
            raise ValueError(f"{self.path}: negative offset {offset}")
        line = bisect_right(self._line_starts, offset) - 1
        return line, offset - self._line_starts[line]

    def current_position(self, offset: int) -> tuple[int, int]:
        """0-based (line, column) of ``offset`` in the current, possibly edited, text."""
        line_start = self.content.rfind(b"\n", 0, offset) + 1
        return self.content.count(b"\n", 0, offset), offset - line_start

    def live_offset(self, offset: int) -> LiveOffset:
        """Register ``offset`` for rebasing and return its handle."""
        self._offsets.append(offset)
        return LiveOffset(self, len(self._offsets) - 1)

    def replace(self, start: int, end: int, text: str):
        """Splice ``text`` into [start, end) and rebase every live offset.

        Raises:
            InternalOffsetError: a live offset lies strictly inside the range,
                which means the caller issued overlapping edits. The text is
                left untouched in that case.
        """
        if not 0 <= start <= end <= len(self.content):
            raise ValueError(f"{self.path}: invalid range [{start}, {end})")

        for value in self._offsets:
            if value is not None and start < value < end:
                raise InternalOffsetError(start, end, value, self.path)

        data = text.encode("utf-8")
        delta = len(data) - (end - start)
        self.content = self.content[:start] + data + self.content[end:]
        self._fingerprint = None

        if delta:
            for index, value in enumerate(self._offsets):
                if value is not None and value >= end and value > start:
                    self._offsets[index] = value + delta

        log.debug("source_replaced", path=str(self.path), start=start, end=end, delta=delta)

    def checkpoint(self) -> tuple[bytes, list[Optional[int]]]:
        """Capture the content and live offsets for a later ``restore``."""
        return self.content, list(self._offsets)

    def restore(self, checkpoint: tuple[bytes, list[Optional[int]]]):
        """Undo every edit made since ``checkpoint`` was taken.

        Offsets released in the meantime stay released; offsets registered
        after the checkpoint are left as they are.
        """
        content, offsets = checkpoint
        self.content = content
        self._fingerprint = None
        for index, value in enumerate(offsets):
            if self._offsets[index] is not None:
                self._offsets[index] = value

        log.debug("source_restored", path=str(self.path), dirty=self.dirty)

    def fingerprint(self) -> str:
        """SHA-256 of the current content, memoized until the next edit."""
        if self._fingerprint is None:
            self._fingerprint = hashlib.sha256(self.content).hexdigest()
        return self._fingerprint

    async def save(self):
        """Write the content back if it changed since the last save."""
        if not self.dirty:
            return

        try:
            async with aiofiles.open(self.path, "wb") as f:
                await f.write(self.content)
        except OSError as e:
            log.error("source_write_failed", path=str(self.path), error=str(e))
            raise SourceIOError(self.path, e.strerror or str(e)) from e

        self._persisted = self.content
        log.info("source_saved", path=str(self.path), size=len(self.content))


class SourceCache:
    """Per-run map from path to the single in-flight load of that file."""

    def __init__(self):
        self._tasks: dict[Path, asyncio.Task] = {}

    async def get(self, path: PathLike) -> SourceFile:
        resolved = Path(path).resolve()
        task = self._tasks.get(resolved)
        if task is None:
            task = asyncio.create_task(SourceFile._load(resolved))
            self._tasks[resolved] = task
        return await asyncio.shield(task)

    def loaded(self) -> list[SourceFile]:
        """Files that finished loading successfully, in first-request order."""
        return [
            task.result()
            for task in self._tasks.values()
            if task.done() and not task.cancelled() and task.exception() is None
        ]

    def __contains__(self, path: PathLike) -> bool:
        return Path(path).resolve() in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
