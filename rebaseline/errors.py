"""Error types for the rebaseline engine.

Every failure the engine reports derives from RebaselineError so callers
can catch the whole family at the CLI boundary. InternalError and its
subclasses indicate a violated ordering invariant and must never be
swallowed.
"""

from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from rebaseline.requests import RebaselineRequest


class RebaselineError(Exception):
    """Base class for all rebaseline errors."""


class SourceIOError(RebaselineError, OSError):
    """A source file or artifact could not be read or written."""

    def __init__(self, path, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class ParseError(RebaselineError):
    """Source text is not valid for its grammar."""

    def __init__(self, path, message: str = "syntax error"):
        super().__init__(f"{path}: {message}")
        self.path = path


class RequestFileError(RebaselineError):
    """The durable request file is malformed or from another schema version."""


class StaleRequest(RebaselineError):
    """A stored request whose file changed since it was recorded.

    Never raised out of RequestStore.load; instances are collected on the
    store so callers can report what was dropped.
    """

    def __init__(self, path, line: int, expected: str, actual: str):
        super().__init__(f"{path}:{line} changed since the request was recorded")
        self.path = path
        self.line = line
        self.expected = expected
        self.actual = actual


class UnsatisfiedRebaseline(RebaselineError):
    """One or more requests had no matching call site."""

    def __init__(self, requests: Iterable["RebaselineRequest"]):
        self.requests = list(requests)
        lines = ["Failed to perform the following rebaselines:"]
        lines.extend(f"  {r.path}:{r.line}" for r in self.requests)
        super().__init__("\n".join(lines))


class InternalError(RebaselineError):
    """A logic defect: an invariant the engine relies on was broken."""


class InternalOffsetError(InternalError):
    """A tracked offset fell strictly inside a replaced range."""

    def __init__(self, start: int, end: int, offset: int, path: Optional[object] = None):
        where = f"{path}: " if path else ""
        super().__init__(
            f"{where}live offset {offset} lies inside replaced range [{start}, {end})"
        )
        self.start = start
        self.end = end
        self.offset = offset
