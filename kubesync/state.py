"""Recorded state of a sync operation and of each resource in it."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from .common import HookType, OperationPhase, ResultCode, SyncPhase
from .objects import ResourceKey, get_resource_key

if TYPE_CHECKING:
    from .tasks import SyncTask

_log = logging.getLogger(__name__)


def _text(value: object) -> str:
    return "" if value is None else str(value)


def resource_result_key(key: ResourceKey, phase: SyncPhase | None) -> str:
    """Return the key under which the result for ``key`` in ``phase`` is stored."""
    return f"{key}:{_text(phase)}"


@dataclass(frozen=True)
class ResourceSyncResult:
    """The outcome of syncing one resource in one phase."""

    resource_key: ResourceKey
    version: str = ""
    status: ResultCode | None = None
    message: str = ""
    hook_type: HookType | None = None
    hook_phase: OperationPhase | None = None
    sync_phase: SyncPhase | None = None
    order: int = 0


class RunState(Enum):
    """Outcome of running a batch of tasks."""

    SUCCESSFUL = 0
    PENDING = 1
    FAILED = 2


def merge_run_states(current: RunState, results: Iterable[RunState]) -> RunState:
    """Fold task outcomes into ``current``: failure wins over pending over success.

    Every result is consumed, even once the outcome is settled.
    """
    state = current
    for result in results:
        if state is RunState.FAILED:
            continue
        if state is RunState.PENDING:
            if result is RunState.FAILED:
                state = RunState.FAILED
        elif result in (RunState.PENDING, RunState.FAILED):
            state = result
    return state


@dataclass
class SyncState:
    """Operation phase and message together with per-resource results."""

    phase: OperationPhase | None = None
    message: str = ""
    results: dict[str, ResourceSyncResult] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def started(self) -> bool:
        """Whether any resource result has been recorded."""
        return bool(self.results)

    def set_operation_phase(self, phase: OperationPhase | None, message: str) -> None:
        if self.phase != phase or self.message != message:
            _log.info(
                "Updating operation state. phase: %s -> %s, message: '%s' -> '%s'",
                _text(self.phase),
                _text(phase),
                self.message,
                message,
            )
        self.phase = phase
        self.message = message

    def set_resource_result(
        self,
        task: SyncTask,
        sync_status: ResultCode | None,
        operation_state: OperationPhase | None,
        message: str,
    ) -> None:
        """Record the outcome on ``task`` and in the results; a blank message keeps the last one."""
        task.sync_status = sync_status
        task.operation_state = operation_state
        if message:
            task.message = message

        key = task.result_key()
        result = ResourceSyncResult(
            resource_key=get_resource_key(task.obj()),
            version=task.version,
            status=task.sync_status,
            message=task.message,
            hook_type=task.hook_type(),
            hook_phase=task.operation_state,
            sync_phase=task.phase,
        )
        with self._lock:
            existing = self.results.get(key)
            if existing is not None:
                if (
                    result.status != existing.status
                    or result.hook_phase != existing.hook_phase
                    or result.message != existing.message
                ):
                    _log.info(
                        "Updating resource result %s, status: '%s' -> '%s', "
                        "phase '%s' -> '%s', message '%s' -> '%s'",
                        key,
                        _text(existing.status),
                        _text(result.status),
                        _text(existing.hook_phase),
                        _text(result.hook_phase),
                        existing.message,
                        result.message,
                    )
                    existing = replace(
                        existing,
                        status=result.status,
                        hook_phase=result.hook_phase,
                        message=result.message,
                    )
                self.results[key] = existing
            else:
                _log.info(
                    "Adding resource result %s, status: '%s', phase: '%s', message: '%s'",
                    key,
                    _text(result.status),
                    _text(result.hook_phase),
                    result.message,
                )
                self.results[key] = replace(result, order=len(self.results) + 1)

    def get_state(self) -> tuple[OperationPhase | None, str, list[ResourceSyncResult]]:
        """Return the phase, the message and the results in the order they were added."""
        ordered = sorted(self.results.values(), key=lambda res: res.order)
        return self.phase, self.message, ordered