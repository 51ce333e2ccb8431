from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from feedmirror.reconciler import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_UPDATE,
    CREATED,
    MIGRATED,
    REMOVED,
    UPDATED,
    MutationRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class MutationFailure:
    request: MutationRequest
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"request": self.request.to_dict(), "error": self.error}


@dataclass
class ExecutionReport:
    applied: dict[str, int] = field(
        default_factory=lambda: {CREATED: 0, UPDATED: 0, MIGRATED: 0, REMOVED: 0}
    )
    succeeded: list[MutationRequest] = field(default_factory=list)
    failures: list[MutationFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": dict(self.applied),
            "failed": self.failed,
            "failures": [failure.to_dict() for failure in self.failures],
        }


class MutationExecutor:
    """Applies mutation requests one at a time, pausing between calendar writes."""

    def __init__(
        self,
        service: Any,
        calendar_id: str,
        delay_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.service = service
        self.calendar_id = calendar_id
        self.delay_seconds = max(0.0, float(delay_seconds))
        self._sleep = sleep

    def _apply_one(self, request: MutationRequest) -> None:
        if request.action == ACTION_CREATE:
            self.service.create_event(self.calendar_id, request.desired)
        elif request.action == ACTION_UPDATE:
            self.service.update_event(self.calendar_id, request.target, request.desired)
        elif request.action == ACTION_DELETE:
            deleted = self.service.delete_event(
                self.calendar_id,
                uid=request.target.uid,
                href=request.target.external_ref,
            )
            if not deleted:
                raise RuntimeError("calendar reported the event was not deleted")
        else:
            raise ValueError(f"Unknown mutation action: {request.action}")

    def apply(self, mutations: Iterable[MutationRequest]) -> ExecutionReport:
        report = ExecutionReport()
        first = True
        for request in mutations:
            if not first and self.delay_seconds:
                self._sleep(self.delay_seconds)
            first = False
            try:
                self._apply_one(request)
            except Exception as exc:
                error_text = f"{type(exc).__name__}: {exc}"
                logger.warning("%s of %r failed: %s", request.action, request.title, error_text)
                report.failures.append(MutationFailure(request=request, error=error_text))
                continue
            logger.info("%s %r (%s)", request.classification.capitalize(), request.title, request.identity)
            report.applied[request.classification] = report.applied.get(request.classification, 0) + 1
            report.succeeded.append(request)
        return report
