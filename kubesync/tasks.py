"""Sync tasks: a pairing of target and live object scheduled in one phase."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable

from . import helm, hooks
from .common import (
    ANNOTATION_SYNC_WAVE,
    HookDeletePolicy,
    HookType,
    OperationPhase,
    ResultCode,
    SyncPhase,
)
from .objects import KubeObject, ResourceKey, get_resource_key
from .state import resource_result_key

_INTEGER = re.compile(r"[+-]?[0-9]+")

_PHASE_ORDER = {
    SyncPhase.PRE_SYNC: -1,
    SyncPhase.SYNC: 0,
    SyncPhase.POST_SYNC: 1,
    SyncPhase.SYNC_FAIL: 2,
}

# Kinds are applied in this order within a phase and wave; unknown kinds go last.
_KIND_ORDER = [
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "SecretList",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleList",
    "ClusterRoleBinding",
    "ClusterRoleBindingList",
    "Role",
    "RoleList",
    "RoleBinding",
    "RoleBindingList",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
]
_KIND_RANK = {kind: index for index, kind in enumerate(_KIND_ORDER)}


def _object_wave(obj: KubeObject) -> int:
    text = obj.annotations.get(ANNOTATION_SYNC_WAVE)
    if text is not None and _INTEGER.fullmatch(text):
        return int(text)
    return helm.weight(obj)


def _text(value: object) -> str:
    return "" if value is None else str(value)


@dataclass
class SyncTask:
    """A unit of sync work holding the live and the target object.

    A missing target means the live object is to be pruned; a missing live
    object means the target has yet to be created.
    """

    phase: SyncPhase | None = None
    live_obj: KubeObject | None = None
    target_obj: KubeObject | None = None
    skip_dry_run: bool = False
    sync_status: ResultCode | None = None
    operation_state: OperationPhase | None = None
    message: str = ""
    wave_override: int | None = None

    def __str__(self) -> str:
        return (
            f"{_text(self.phase)}/{self.wave()} "
            f"{'hook' if self.is_hook() else 'resource'} "
            f"{self.group}/{self.kind}:{self.namespace}/{self.name} "
            f"{'obj' if self.live_obj is not None else 'nil'}->"
            f"{'obj' if self.target_obj is not None else 'nil'} "
            f"({_text(self.sync_status)},{_text(self.operation_state)},{self.message})"
        )

    def obj(self) -> KubeObject:
        """Return the target object if there is one, else the live object."""
        return self.target_obj if self.target_obj is not None else self.live_obj

    @property
    def group(self) -> str:
        return self.obj().group

    @property
    def kind(self) -> str:
        return self.obj().kind

    @property
    def version(self) -> str:
        return self.obj().version

    @property
    def name(self) -> str:
        return self.obj().name

    @property
    def namespace(self) -> str:
        return self.obj().namespace

    def is_prune(self) -> bool:
        return self.target_obj is None

    def result_key(self) -> str:
        return resource_result_key(get_resource_key(self.obj()), self.phase)

    def resource_key(self) -> ResourceKey:
        return get_resource_key(self.obj())

    def wave(self) -> int:
        if self.wave_override is not None:
            return self.wave_override
        return _object_wave(self.obj())

    def is_hook(self) -> bool:
        return hooks.is_hook(self.obj())

    def pending(self) -> bool:
        return self.operation_state is None

    def running(self) -> bool:
        return self.operation_state is not None and self.operation_state.running()

    def completed(self) -> bool:
        return self.operation_state is not None and self.operation_state.completed()

    def successful(self) -> bool:
        return self.operation_state is not None and self.operation_state.successful()

    def pruned(self) -> bool:
        return self.sync_status is ResultCode.PRUNED

    def hook_type(self) -> HookType | None:
        if self.is_hook() and self.phase is not None:
            return HookType(self.phase.value)
        return None

    def has_hook_delete_policy(self, policy: HookDeletePolicy) -> bool:
        # a delete policy is meaningless on anything but a hook
        if not self.is_hook():
            return False
        return policy in hooks.delete_policies(self.obj())

    def delete_before_creation(self) -> bool:
        return (
            self.live_obj is not None
            and self.pending()
            and self.has_hook_delete_policy(HookDeletePolicy.BEFORE_HOOK_CREATION)
        )

    def delete_on_phase_completion(self) -> bool:
        return self.delete_on_phase_failed() or self.delete_on_phase_successful()

    def delete_on_phase_successful(self) -> bool:
        return self.live_obj is not None and self.has_hook_delete_policy(
            HookDeletePolicy.HOOK_SUCCEEDED
        )

    def delete_on_phase_failed(self) -> bool:
        return self.live_obj is not None and self.has_hook_delete_policy(
            HookDeletePolicy.HOOK_FAILED
        )


def _sort_key(task: SyncTask) -> tuple[int, int, int, str]:
    obj = task.obj()
    return (
        _PHASE_ORDER.get(task.phase, 0),
        task.wave(),
        _KIND_RANK.get(obj.kind, len(_KIND_ORDER)),
        obj.name,
    )


class SyncTaskList(list):
    """A list of sync tasks with selection and ordering helpers."""

    def __init__(self, tasks: Iterable[SyncTask] = ()) -> None:
        super().__init__(tasks)

    def filter(self, predicate: Callable[[SyncTask], bool]) -> SyncTaskList:
        return SyncTaskList(task for task in self if predicate(task))

    def split(
        self, predicate: Callable[[SyncTask], bool]
    ) -> tuple[SyncTaskList, SyncTaskList]:
        """Return the tasks that match ``predicate`` and those that do not."""
        matching, others = SyncTaskList(), SyncTaskList()
        for task in self:
            (matching if predicate(task) else others).append(task)
        return matching, others

    def sort_tasks(self) -> None:
        """Order tasks in place by phase, wave, kind and name."""
        self.sort(key=_sort_key)

    def phase(self) -> SyncPhase | None:
        return self[0].phase if self else None

    def wave(self) -> int:
        return self[0].wave() if self else 0

    def last_phase(self) -> SyncPhase | None:
        return self[-1].phase if self else None

    def last_wave(self) -> int:
        return self[-1].wave() if self else 0

    def multi_step(self) -> bool:
        return self.wave() != self.last_wave() or self.phase() != self.last_phase()