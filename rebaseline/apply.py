"""Apply pending requests to source files.

Two strategies share the same locate-and-apply step:

- Batch: per file, apply requests right-to-left against one extraction of
  that file's matchers. Later edits never move earlier matchers, so the
  extraction stays valid for the whole pass. Distinct files run concurrently.
- Interactive: one request at a time, in store order, each confirmed by the
  caller before it touches the file. The store is persisted after every
  accepted edit so an interrupted run loses at most one confirmation.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Optional

import aiofiles
import structlog

from rebaseline.config import LiteralPolicy, MatcherKind
from rebaseline.errors import (
    InternalError,
    ParseError,
    SourceIOError,
    UnsatisfiedRebaseline,
)
from rebaseline.matchers import Matcher, extract_matchers, find_matcher
from rebaseline.requests import ArtifactPayload, RebaselineRequest, RequestStore
from rebaseline.source import SourceFile

log = structlog.get_logger()


class RequestState(Enum):
    """Lifecycle of a request during an interactive run."""

    PENDING = "pending"
    PRESENTED = "presented"
    APPLIED = "applied"
    SKIPPED = "skipped"


@dataclass
class RebaselinePrompt:
    """What the confirmation callback is shown for one request."""

    request: RebaselineRequest
    matcher: Matcher
    line: int
    line_text: str
    current: str
    replacement: str


Confirm = Callable[[RebaselinePrompt], Awaitable[bool]]


@dataclass
class ApplyResult:
    """Outcome of an apply run."""

    applied: list[RebaselineRequest] = field(default_factory=list)
    skipped: list[RebaselineRequest] = field(default_factory=list)
    unmatched: list[RebaselineRequest] = field(default_factory=list)
    errors: dict[Path, Exception] = field(default_factory=dict)
    edited: dict[Path, SourceFile] = field(default_factory=dict)
    states: dict[str, RequestState] = field(default_factory=dict)


async def copy_artifact(payload: ArtifactPayload):
    """Copy an output artifact over its reference file."""
    try:
        async with aiofiles.open(payload.artifact_path, "rb") as f:
            data = await f.read()
        payload.destination_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(payload.destination_path, "wb") as f:
            await f.write(data)
    except OSError as e:
        raise SourceIOError(e.filename or payload.artifact_path, e.strerror or str(e)) from e

    log.info(
        "artifact_copied",
        source=str(payload.artifact_path),
        destination=str(payload.destination_path),
        size=len(data),
    )


class RebaselineApplier:
    """Reconciles stored requests with the matchers found in their files."""

    def __init__(
        self,
        store: RequestStore,
        matchers: Optional[Mapping[str, MatcherKind]] = None,
        policy: Optional[LiteralPolicy] = None,
        dry_run: bool = False,
    ):
        self.store = store
        self.matchers = dict(store.matchers if matchers is None else matchers)
        self.policy = policy or LiteralPolicy()
        self.dry_run = dry_run
        self._extracted: dict[Path, list[Matcher]] = {}

    def _extract(self, source: SourceFile) -> list[Matcher]:
        """Extract fresh matchers, releasing the previous set for that file."""
        self._release(source)
        matchers = extract_matchers(source, self.matchers, self.policy)
        self._extracted[source.path] = matchers
        return matchers

    def _release(self, source: SourceFile):
        for matcher in self._extracted.pop(source.path, []):
            matcher.release()

    def _locate(self, matchers: list[Matcher], request: RebaselineRequest) -> Optional[Matcher]:
        matcher = find_matcher(matchers, request.matcher_name, request.offset.value)
        if matcher is None or matcher.kind != request.kind:
            return None
        return matcher

    def _edit(self, request: RebaselineRequest, matcher: Matcher) -> tuple[int, int, str]:
        """Range and text an inline request writes into its file."""
        text = request.payload.render()
        if matcher.has_argument:
            return matcher.arg_start.value, matcher.arg_end.value, text
        # No expected value yet: rewrite `name()` as `name(value)`
        return matcher.start.value, matcher.end.value, f"{matcher.name}({text})"

    async def _apply(self, request: RebaselineRequest, matcher: Matcher, result: ApplyResult):
        """Edit the file in memory, or copy the artifact; the store is untouched."""
        if request.kind is MatcherKind.INLINE:
            start, end, text = self._edit(request, matcher)
            self._detach_unmatched(request.source, start, end, result)
            request.source.replace(start, end, text)
            result.edited[request.path] = request.source
        elif not self.dry_run:
            await copy_artifact(request.payload)

    def _applied(self, request: RebaselineRequest, result: ApplyResult):
        self.store.remove(request)
        result.applied.append(request)
        log.info(
            "rebaseline_applied",
            path=str(request.path),
            line=request.line,
            matcher=request.matcher_name,
            kind=request.kind.value,
        )

    def _mark_unmatched(self, request: RebaselineRequest, result: ApplyResult):
        result.unmatched.append(request)
        log.warning(
            "rebaseline_unmatched",
            path=str(request.path),
            line=request.line,
            matcher=request.matcher_name,
        )

    def _detach_unmatched(self, source: SourceFile, start: int, end: int, result: ApplyResult):
        """Move unmatched requests pointing into [start, end) to its end."""
        for request in result.unmatched:
            if request.source is source and start < request.offset.value < end:
                request.offset.move(end)
                log.warning("request_detached", path=str(request.path), line=request.line)

    def _fail_file(self, path: Path, error: Exception, result: ApplyResult):
        result.errors.setdefault(path, error)
        log.error("file_apply_failed", path=str(path), error=str(error))

    def _unreadable(self, result: ApplyResult):
        for _, error in self.store.failed:
            self._fail_file(Path(error.path), error, result)

    def _group_by_file(self) -> dict[Path, list[RebaselineRequest]]:
        groups: dict[Path, list[RebaselineRequest]] = {}
        for request in self.store:
            groups.setdefault(request.path, []).append(request)
        return groups

    async def _apply_file(self, requests: list[RebaselineRequest], result: ApplyResult):
        """Apply one file's requests; requests leave the store once the file is saved.

        On a write failure the in-memory edits are rolled back so the requests
        kept in the store still describe the file on disk.
        """
        source = requests[0].source
        checkpoint = source.checkpoint()
        done = []
        try:
            matchers = self._extract(source)
            try:
                ordered = sorted(requests, key=lambda r: (r.line, r.column), reverse=True)
                for request in ordered:
                    matcher = self._locate(matchers, request)
                    if matcher is None:
                        self._mark_unmatched(request, result)
                        continue
                    await self._apply(request, matcher, result)
                    done.append(request)
            finally:
                self._release(source)

            if not self.dry_run:
                await source.save()
        except SourceIOError:
            source.restore(checkpoint)
            result.edited.pop(source.path, None)
            # Copied artifacts are already on disk
            for request in done:
                if request.kind is MatcherKind.ARTIFACT:
                    self._applied(request, result)
            raise

        for request in done:
            self._applied(request, result)

    async def apply_batch(self) -> ApplyResult:
        """Apply every satisfiable request.

        Raises:
            SourceIOError, ParseError: a file could not be read, parsed or
                written. Other files are still applied and the store is still
                persisted; the failed file's requests stay in it.
            UnsatisfiedRebaseline: some requests had no matching call site;
                raised after everything satisfiable has been applied.
        """
        result = ApplyResult()
        order = {id(request): index for index, request in enumerate(self.store)}
        groups = self._group_by_file()
        log.info("batch_apply_started", files=len(groups), requests=len(order))

        outcomes = await asyncio.gather(
            *(self._apply_file(requests, result) for requests in groups.values()),
            return_exceptions=True,
        )

        fatal = None
        for path, outcome in zip(groups, outcomes):
            if isinstance(outcome, (SourceIOError, ParseError)):
                self._fail_file(path, outcome, result)
            elif isinstance(outcome, BaseException) and fatal is None:
                fatal = outcome
        if fatal is not None:
            raise fatal
        self._unreadable(result)

        result.unmatched.sort(key=lambda r: order[id(r)])
        if not self.dry_run:
            await self.store.save()

        log.info(
            "batch_apply_finished",
            applied=len(result.applied),
            unmatched=len(result.unmatched),
            failed_files=len(result.errors),
        )
        if result.errors:
            raise next(iter(result.errors.values()))
        if result.unmatched:
            raise UnsatisfiedRebaseline(result.unmatched)
        return result

    def _prompt(self, request: RebaselineRequest, matcher: Matcher) -> RebaselinePrompt:
        content = request.source.content
        line, _ = request.source.current_position(matcher.offset)
        line_start = content.rfind(b"\n", 0, matcher.offset) + 1
        line_end = content.find(b"\n", matcher.offset)
        if line_end == -1:
            line_end = len(content)

        current = content[matcher.offset:matcher.end.value].decode("utf-8")
        if request.kind is MatcherKind.INLINE and matcher.has_argument:
            replacement = (
                content[matcher.offset:matcher.arg_start.value].decode("utf-8")
                + request.payload.render()
                + content[matcher.arg_end.value:matcher.end.value].decode("utf-8")
            )
        elif request.kind is MatcherKind.INLINE:
            replacement = f"{matcher.name}({request.payload.render()})"
        else:
            payload = request.payload
            replacement = f"{payload.artifact_path} -> {payload.destination_path}"

        return RebaselinePrompt(
            request=request,
            matcher=matcher,
            line=line + 1,
            line_text=content[line_start:line_end].decode("utf-8"),
            current=current,
            replacement=replacement,
        )

    def _transition(self, request: RebaselineRequest, state: RequestState, result: ApplyResult):
        result.states[request.key] = state
        log.debug("request_state", key=request.key, state=state.value)

    async def _partition(self, result: ApplyResult) -> list[RebaselineRequest]:
        """Split the store into requests with a matching call site and the rest.

        Files that cannot be read or parsed are recorded in ``result.errors``;
        their requests are neither satisfiable nor unmatched.
        """
        self._unreadable(result)
        satisfiable = []
        extracted: dict[Path, list[Matcher]] = {}
        for request in self.store:
            if request.path in result.errors:
                continue
            if request.path not in extracted:
                try:
                    extracted[request.path] = self._extract(request.source)
                except (ParseError, SourceIOError) as e:
                    self._fail_file(request.path, e, result)
                    continue
            if self._locate(extracted[request.path], request) is None:
                self._mark_unmatched(request, result)
            else:
                satisfiable.append(request)

        for request in satisfiable + result.unmatched:
            self._release(request.source)
        return satisfiable

    async def apply_interactive(self, confirm: Confirm) -> ApplyResult:
        """Ask ``confirm`` about each request and apply the accepted ones.

        Requests with no matching call site are reported in the result and
        stay in the store. Declined requests stay in the store untouched. A
        file that cannot be parsed or written is recorded in
        ``result.errors`` and its remaining requests are left pending.

        Raises:
            InternalError: a request that matched during the initial pass no
                longer matches after earlier edits.
        """
        result = ApplyResult()
        satisfiable = await self._partition(result)
        log.info(
            "interactive_apply_started",
            requests=len(satisfiable),
            unmatched=len(result.unmatched),
            failed_files=len(result.errors),
        )

        for request in satisfiable:
            if request.path in result.errors:
                continue
            self._transition(request, RequestState.PENDING, result)
            matchers = self._extract(request.source)
            matcher = self._locate(matchers, request)
            if matcher is None:
                raise InternalError(
                    f"{request.path}:{request.line}: {request.matcher_name} "
                    "no longer matches after earlier edits"
                )

            self._transition(request, RequestState.PRESENTED, result)
            if not await confirm(self._prompt(request, matcher)):
                self._transition(request, RequestState.SKIPPED, result)
                result.skipped.append(request)
                log.info("rebaseline_skipped", path=str(request.path), line=request.line)
                continue

            checkpoint = request.source.checkpoint()
            try:
                await self._apply(request, matcher, result)
            except SourceIOError as e:
                self._fail_file(request.path, e, result)
                continue
            self._applied(request, result)
            if not self.dry_run:
                await self.store.save()
                try:
                    await request.source.save()
                except SourceIOError as e:
                    request.source.restore(checkpoint)
                    result.applied.pop()
                    self.store.add(request)
                    await self.store.save()
                    self._fail_file(request.path, e, result)
                    continue
            self._transition(request, RequestState.APPLIED, result)

        for request in satisfiable:
            self._release(request.source)
        return result
