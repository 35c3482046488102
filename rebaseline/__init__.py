"""Rebaseline - write failed test expectations back into source files.

Records failing assertion calls by (file, line, column), then locates each
call again with tree-sitter and rewrites its expected value, either in bulk
or one confirmed edit at a time.
"""

__version__ = "0.1.0"

from rebaseline.apply import ApplyResult, RebaselineApplier, RequestState
from rebaseline.config import LiteralPolicy, MatcherKind, RebaselineConfig
from rebaseline.recorder import RebaselineLog, StepEvent
from rebaseline.requests import RebaselineRequest, RequestStore
from rebaseline.source import LiveOffset, SourceCache, SourceFile

__all__ = [
    "__version__",
    "ApplyResult",
    "LiteralPolicy",
    "LiveOffset",
    "MatcherKind",
    "RebaselineApplier",
    "RebaselineConfig",
    "RebaselineLog",
    "RebaselineRequest",
    "RequestState",
    "RequestStore",
    "SourceCache",
    "SourceFile",
    "StepEvent",
]
