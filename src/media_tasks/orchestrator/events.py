"""Typed event channel for task observers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from media_tasks.orchestrator.models import TaskProgress, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Accepted (non-regressing) progress sample for one task."""

    task_id: str
    progress: TaskProgress


@dataclass(frozen=True, slots=True)
class StageTransitionEvent:
    """Status and/or stage change of one task."""

    task_id: str
    status_from: TaskStatus | None
    status_to: TaskStatus
    stage_from: str | None
    stage_to: str | None


@dataclass(frozen=True, slots=True)
class TerminalEvent:
    """Task reached completed, failed or cancelled."""

    task_id: str
    status: TaskStatus
    reason: str | None = None
    stage: str | None = None


TaskEvent = ProgressEvent | StageTransitionEvent | TerminalEvent
EventCallback = Callable[[TaskEvent], None]


class EventBus:
    """Fan-out of task events to subscribers, filtered by task id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[str | None, EventCallback]] = []

    def subscribe(self, task_id: str | None, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback`` for one task (or every task when ``task_id`` is None).

        Returns a function that removes the subscription.
        """

        entry = (task_id, callback)
        with self._lock:
            self._subscribers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, event: TaskEvent) -> None:
        with self._lock:
            targets = [
                callback
                for task_id, callback in self._subscribers
                if task_id is None or task_id == event.task_id
            ]
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for task %s", event.task_id)
