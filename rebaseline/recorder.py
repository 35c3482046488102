"""Collect failing assertion steps and record them as rebaseline requests."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog

from rebaseline.requests import RebaselineRequest, RequestStore

log = structlog.get_logger()


@dataclass
class StepEvent:
    """A finished test step as reported by the runner.

    ``line`` and ``column`` are 1-based and point at the matcher name of the
    failing assertion. ``matcher_name`` is None for steps that carry no
    rebaseline information.
    """

    file: Optional[str]
    line: int
    column: int
    matcher_name: Optional[str] = None
    payload: Any = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "StepEvent":
        return cls(
            file=data.get("file"),
            line=int(data.get("line", 0)),
            column=int(data.get("column", 0)),
            matcher_name=data.get("matcherName", data.get("matcher_name")),
            payload=data.get("payload"),
            error=data.get("error"),
        )


class RebaselineLog:
    """Remembers failed steps during a run and records them at the end."""

    def __init__(self):
        self._failed_steps: list[StepEvent] = []

    def __len__(self) -> int:
        return len(self._failed_steps)

    def on_step_end(self, step: StepEvent):
        if not step.error or step.matcher_name is None:
            return
        if not step.file or step.line < 1 or step.column < 1:
            log.debug("step_without_location", matcher=step.matcher_name)
            return
        self._failed_steps.append(step)

    async def save(self, store: RequestStore) -> list[RebaselineRequest]:
        """Create a request per failed step and persist the store.

        Steps naming a matcher the store does not support are logged and
        skipped; they are not worth failing the whole run over.
        """
        created = []
        for step in self._failed_steps:
            try:
                request = await store.create(
                    Path(step.file), step.line, step.column, step.matcher_name, step.payload
                )
            except ValueError as e:
                log.warning(
                    "step_not_recorded",
                    file=step.file,
                    line=step.line,
                    matcher=step.matcher_name,
                    error=str(e),
                )
                continue
            created.append(request)

        await store.save()
        log.info("rebaseline_log_saved", path=str(store.path), requests=len(store))
        self._failed_steps.clear()
        return created
