"""Rebaseline requests and their durable store.

A request says "the matcher named X at this position should expect Y". It is
pinned to its file with a LiveOffset and carries the file fingerprint seen
when it was recorded; a store loaded against a file that has changed since
drops the request instead of guessing where the call went.
"""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Iterator, Literal, Mapping, Optional, Union

import aiofiles
import structlog
from pydantic import BaseModel, Field, ValidationError

from rebaseline.config import DEFAULT_MATCHERS, MatcherKind
from rebaseline.errors import RequestFileError, SourceIOError, StaleRequest
from rebaseline.source import LiveOffset, PathLike, SourceCache, SourceFile

log = structlog.get_logger()

SCHEMA_VERSION = 1


class InlinePayload(BaseModel):
    """Expected value written into the source as JSON."""

    kind: Literal["inline"] = "inline"
    value: Any = None

    def render(self) -> str:
        return json.dumps(self.value, ensure_ascii=False)


class ArtifactPayload(BaseModel):
    """Output artifact that replaces a reference file."""

    kind: Literal["artifact"] = "artifact"
    artifact_path: Path
    destination_path: Path


Payload = Annotated[Union[InlinePayload, ArtifactPayload], Field(discriminator="kind")]


class RequestRecord(BaseModel):
    """Serialized form of one request."""

    matcher_name: str
    file: Path
    line: int = Field(ge=1)
    column: int = Field(ge=1)
    offset: int = Field(ge=0)
    fingerprint: str
    payload: Payload


class RequestFile(BaseModel):
    """Top-level shape of the request file."""

    version: int = SCHEMA_VERSION
    requests: list[RequestRecord] = Field(default_factory=list)


@dataclass
class RebaselineRequest:
    """A recorded mismatch waiting to be written back."""

    matcher_name: str
    source: SourceFile
    offset: LiveOffset
    payload: Union[InlinePayload, ArtifactPayload]
    fingerprint: str
    line: int
    column: int

    @property
    def path(self) -> Path:
        return self.source.path

    @property
    def key(self) -> str:
        return request_key(self.path, self.line, self.column)

    @property
    def kind(self) -> MatcherKind:
        return MatcherKind(self.payload.kind)

    def to_record(self) -> RequestRecord:
        """Serialize against the file's current text.

        Edits already applied in this run move the offset and change the
        fingerprint, so both are taken from the live file; the stored
        request then stays valid once that file is saved.
        """
        offset = self.offset.value
        line, column = self.source.current_position(offset)
        return RequestRecord(
            matcher_name=self.matcher_name,
            file=self.path,
            line=line + 1,
            column=column + 1,
            offset=offset,
            fingerprint=self.source.fingerprint(),
            payload=self.payload,
        )


def request_key(path: PathLike, line: int, column: int) -> str:
    return f"{Path(path)}:{line}:{column}"


def make_payload(kind: MatcherKind, data: Any) -> Union[InlinePayload, ArtifactPayload]:
    """Build the payload variant a matcher kind expects.

    Inline matchers take the value itself; artifact matchers take a mapping
    with ``artifact_path`` and ``destination_path``.
    """
    if isinstance(data, (InlinePayload, ArtifactPayload)):
        if data.kind != kind.value:
            raise ValueError(f"{kind.value} matcher cannot take a {data.kind} payload")
        return data
    if kind is MatcherKind.INLINE:
        return InlinePayload(value=data)
    if not isinstance(data, Mapping):
        raise ValueError("artifact payload needs artifact_path and destination_path")
    return ArtifactPayload(**data)


class RequestStore:
    """Ordered, de-duplicated collection of pending requests.

    Keys are ``file:line:column``; adding a request for an existing key
    replaces the earlier one but keeps its position in the order. Records
    whose source file could not be read on load are kept verbatim in
    ``failed`` and written back on save.
    """

    def __init__(
        self,
        path: PathLike = "rebaseline.json",
        cache: Optional[SourceCache] = None,
        matchers: Optional[Mapping[str, MatcherKind]] = None,
    ):
        self.path = Path(path)
        self.cache = cache if cache is not None else SourceCache()
        self.matchers = dict(DEFAULT_MATCHERS if matchers is None else matchers)
        self.dropped: list[StaleRequest] = []
        self.failed: list[tuple[RequestRecord, SourceIOError]] = []
        self._requests: dict[str, RebaselineRequest] = {}

    def __len__(self) -> int:
        return len(self._requests)

    def __iter__(self) -> Iterator[RebaselineRequest]:
        return iter(list(self._requests.values()))

    def __contains__(self, request: RebaselineRequest) -> bool:
        return self._requests.get(request.key) is request

    @property
    def requests(self) -> list[RebaselineRequest]:
        return list(self._requests.values())

    async def create(
        self,
        file: PathLike,
        line: int,
        column: int,
        matcher_name: str,
        payload: Any,
    ) -> RebaselineRequest:
        """Record a request for the 1-based ``line``/``column`` in ``file``.

        Raises:
            ValueError: unknown matcher, payload of the wrong shape, or a
                position outside the file.
            SourceIOError: the file cannot be read.
        """
        if matcher_name not in self.matchers:
            raise ValueError(f"Unsupported matcher: {matcher_name}")
        payload = make_payload(MatcherKind(self.matchers[matcher_name]), payload)

        source = await SourceFile.read(file, self.cache)
        offset = source.position_to_offset(line - 1, column - 1)
        request = RebaselineRequest(
            matcher_name=matcher_name,
            source=source,
            offset=source.live_offset(offset),
            payload=payload,
            fingerprint=source.fingerprint(),
            line=line,
            column=column,
        )
        self.add(request)
        return request

    def add(self, request: RebaselineRequest):
        previous = self._requests.get(request.key)
        if previous is not None:
            previous.offset.release()
            log.debug("request_replaced", key=request.key)
        self._requests[request.key] = request

    def remove(self, request: RebaselineRequest):
        if self._requests.get(request.key) is request:
            del self._requests[request.key]

    def serialize(self) -> dict:
        records = [request.to_record() for request in self._requests.values()]
        records.extend(record for record, _ in self.failed)
        return RequestFile(requests=records).model_dump(mode="json")

    async def save(self):
        """Write the store atomically (temp file, then rename)."""
        data = json.dumps(self.serialize(), indent=2, ensure_ascii=False)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(data)
            temp_path.replace(self.path)
        except OSError as e:
            log.error("request_store_write_failed", path=str(self.path), error=str(e))
            raise SourceIOError(self.path, e.strerror or str(e)) from e

        log.debug("request_store_saved", path=str(self.path), count=len(self))

    @classmethod
    async def load(
        cls,
        path: PathLike = "rebaseline.json",
        cache: Optional[SourceCache] = None,
        matchers: Optional[Mapping[str, MatcherKind]] = None,
    ) -> "RequestStore":
        """Load a store, dropping requests whose files changed since recording.

        A missing file yields an empty store. Requests against source files
        that cannot be read go to ``failed`` so the other files can still be
        processed.

        Raises:
            RequestFileError: the file is not a valid request file.
            SourceIOError: the request file itself cannot be read.
        """
        store = cls(path, cache, matchers)
        if not store.path.exists():
            log.info("request_store_missing", path=str(store.path))
            return store

        try:
            async with aiofiles.open(store.path, "r", encoding="utf-8") as f:
                raw = json.loads(await f.read())
            if isinstance(raw, list):
                raw = {"requests": raw}
            if isinstance(raw, dict) and raw.get("version", SCHEMA_VERSION) != SCHEMA_VERSION:
                raise RequestFileError(
                    f"{store.path}: unsupported request file version {raw.get('version')}"
                )
            parsed = RequestFile.model_validate(raw)
        except OSError as e:
            raise SourceIOError(store.path, e.strerror or str(e)) from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise RequestFileError(f"{store.path}: {e}") from e

        sources = await asyncio.gather(
            *(SourceFile.read(record.file, store.cache) for record in parsed.requests),
            return_exceptions=True,
        )
        for record, source in zip(parsed.requests, sources):
            if isinstance(source, SourceIOError):
                store.failed.append((record, source))
                log.error("request_source_unreadable", path=str(record.file), line=record.line)
                continue
            if isinstance(source, BaseException):
                raise source

            current = source.fingerprint()
            if current != record.fingerprint:
                store.dropped.append(
                    StaleRequest(source.path, record.line, record.fingerprint, current)
                )
                log.warning("request_stale", path=str(source.path), line=record.line)
                continue
            store.add(
                RebaselineRequest(
                    matcher_name=record.matcher_name,
                    source=source,
                    offset=source.live_offset(record.offset),
                    payload=record.payload,
                    fingerprint=record.fingerprint,
                    line=record.line,
                    column=record.column,
                )
            )

        log.info(
            "request_store_loaded",
            path=str(store.path),
            count=len(store),
            dropped=len(store.dropped),
            failed=len(store.failed),
        )
        return store
