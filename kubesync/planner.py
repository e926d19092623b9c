"""Building the ordered list of sync tasks for one step of a sync operation."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from . import hooks
from .annotations import has_annotation_option
from .cluster import (
    APIResource,
    ApiError,
    ClusterClient,
    Kubectl,
    NotFoundError,
    UnauthorizedError,
    retry_on,
)
from .common import (
    ANNOTATION_SYNC_OPTIONS,
    SYNC_OPTION_PRUNE_LAST,
    SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE,
    OperationPhase,
    ResultCode,
    SyncPhase,
)
from .objects import KubeObject, ResourceKey, get_resource_key
from .phases import sync_phases
from .reconcile import ReconciliationResult
from .state import SyncState
from .tasks import SyncTask, SyncTaskList

_log = logging.getLogger(__name__)

NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"
CRD_GROUP = "apiextensions.k8s.io"

ResourcesFilter = Callable[[ResourceKey, "KubeObject | None", "KubeObject | None"], bool]
NamespaceModifier = Callable[[KubeObject, "KubeObject | None"], bool]
PermissionValidator = Callable[[KubeObject, APIResource], None]


@dataclass
class _Reconciled:
    target: KubeObject | None
    live: KubeObject | None

    def key(self) -> ResourceKey:
        return get_resource_key(self.live if self.live is not None else self.target)


def group_resources(result: ReconciliationResult) -> dict[ResourceKey, _Reconciled]:
    """Key each target/live pair by the live object, or the target if there is none."""
    resources: dict[ResourceKey, _Reconciled] = {}
    for target, live in zip(result.target, result.live):
        resource = _Reconciled(target, live)
        resources[resource.key()] = resource
    return resources


def group_diff_results(diffs: Iterable[Any]) -> dict[ResourceKey, bool]:
    """Map each diffed resource to whether it was modified.

    Each diff has ``normalized_live``, ``predicted_live`` (JSON text) and
    ``modified``; entries whose JSON cannot be decoded are left out.
    """
    modified: dict[ResourceKey, bool] = {}
    for diff in diffs:
        raw = diff.normalized_live
        if raw in ("null", b"null"):
            raw = diff.predicted_live
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            continue
        if not isinstance(data, dict):
            continue
        modified[get_resource_key(KubeObject(data))] = diff.modified
    return modified


def is_namespace_with_name(res: KubeObject | None, ns: str) -> bool:
    """Whether ``res`` is the Namespace object named ``ns``."""
    return res is not None and res.group == "" and res.kind == NAMESPACE_KIND and res.name == ns


def _is_crd(obj: KubeObject) -> bool:
    return obj.kind == CRD_KIND and obj.group == CRD_GROUP


def is_crd_of_group_kind(group: str, kind: str, obj: KubeObject) -> bool:
    """Whether ``obj`` is a custom resource definition of ``group`` and ``kind``."""
    if not _is_crd(obj):
        return False
    try:
        crd_group = obj.nested_string("spec", "group")
        crd_kind = obj.nested_string("spec", "names", "kind")
    except TypeError:
        return False
    if crd_group is None or crd_kind is None:
        return False
    return group == crd_group and kind == crd_kind


def _is_unauthorized(err: Exception) -> bool:
    return isinstance(err, UnauthorizedError)


@dataclass
class SyncPlanner:
    """Turns managed resources and hooks into ordered sync tasks."""

    resources: dict[ResourceKey, _Reconciled] = field(default_factory=dict)
    hooks: list[KubeObject] = field(default_factory=list)
    state: SyncState = field(default_factory=SyncState)
    cluster: ClusterClient | None = None
    kubectl: Kubectl | None = None
    namespace: str = ""
    revision: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    skip_hooks: bool = False
    prune_last: bool = False
    resources_filter: ResourcesFilter | None = None
    namespace_modifier: NamespaceModifier | None = None
    permission_validator: PermissionValidator | None = None

    def get_sync_tasks(self) -> tuple[SyncTaskList, bool]:
        """Return the sorted tasks and whether every task passed validation."""
        tasks = SyncTaskList()
        for key, resource in self.resources.items():
            if not self._contains(resource):
                _log.debug("Skipping %s", key)
                continue
            obj = resource.target if resource.target is not None else resource.live
            if hooks.is_hook(obj):
                _log.debug("Skipping hook %s", key)
                continue
            tasks.extend(
                SyncTask(phase=phase, target_obj=resource.target, live_obj=resource.live)
                for phase in sync_phases(obj)
            )

        if not self.skip_hooks:
            tasks.extend(self._hook_tasks())

        # Set the namespace even on cluster-scoped objects so that nothing is
        # unintentionally created in the default namespace.
        for task in tasks:
            if task.target_obj is not None and not task.target_obj.namespace:
                task.target_obj = task.target_obj.deep_copy()
                task.target_obj.namespace = self.namespace

        if self.namespace_modifier is not None and self.namespace:
            tasks = self._auto_create_namespace(tasks)

        for task in tasks:
            if task.target_obj is not None and task.live_obj is None:
                task.live_obj = self.live_obj(task.target_obj)

        successful = self._check_permissions(tasks)
        self._reorder_prune_waves(tasks)
        self._apply_prune_last(tasks)
        tasks.sort_tasks()

        for task in tasks:
            result = self.state.results.get(task.result_key())
            if result is not None:
                task.sync_status = result.status
                task.operation_state = result.hook_phase
                task.message = result.message
        return tasks, successful

    def live_obj(self, obj: KubeObject) -> KubeObject | None:
        """Return the live object managed for ``obj``, if any."""
        for key, resource in self.resources.items():
            # cluster-scoped objects have no namespace even if the user set one
            if (
                key.group == obj.group
                and key.kind == obj.kind
                and key.namespace in ("", obj.namespace)
                and key.name == obj.name
            ):
                return resource.live
        return None

    def has_crd_of_group_kind(self, group: str, kind: str) -> bool:
        """Whether this sync defines the custom resource definition of ``group``/``kind``."""
        return any(is_crd_of_group_kind(group, kind, obj) for obj in self._target_objs())

    def _target_objs(self) -> list[KubeObject]:
        targets = [r.target for r in self.resources.values() if r.target is not None]
        return [*self.hooks, *targets]

    def _contains(self, resource: _Reconciled) -> bool:
        return self.resources_filter is None or self.resources_filter(
            resource.key(), resource.target, resource.live
        )

    def _hook_tasks(self) -> list[SyncTask]:
        tasks = []
        unix_time = int(self.started_at.timestamp())
        for obj in self.hooks:
            for phase in sync_phases(obj):
                # Hook names are deterministic: a generateName is completed
                # with the revision, phase and start time of the operation.
                target = obj.deep_copy()
                if not target.name:
                    postfix = f"{self.revision[:7]}-{phase}-{unix_time}".lower()
                    target.name = f"{obj.generate_name}{postfix}"
                if not hooks.has_hook_finalizer(target):
                    target.finalizers = [*target.finalizers, hooks.HOOK_FINALIZER]
                tasks.append(SyncTask(phase=phase, target_obj=target))
        return tasks

    def _auto_create_namespace(self, tasks: SyncTaskList) -> SyncTaskList:
        targets = (r.target for r in self.resources.values())
        if any(is_namespace_with_name(obj, self.namespace) for obj in targets):
            return tasks
        if self.kubectl is None:
            raise ValueError("a kubectl client is required to create the namespace")

        managed_ns = KubeObject(
            {"apiVersion": "v1", "kind": NAMESPACE_KIND, "metadata": {"name": self.namespace}}
        )
        try:
            live_ns = self.kubectl.get_resource(
                managed_ns.group, managed_ns.version, managed_ns.kind, managed_ns.name, ""
            )
        except NotFoundError:
            task = SyncTask(phase=SyncPhase.PRE_SYNC, target_obj=managed_ns)
            return self._append_ns_task(tasks, task, managed_ns, None)
        except ApiError as err:
            return self._append_failed_ns_task(
                tasks, managed_ns, f"Namespace auto creation failed: {err}"
            )

        ns_task = SyncTask(phase=SyncPhase.PRE_SYNC, target_obj=managed_ns, live_obj=live_ns)
        if ns_task.result_key() in self.state.results:
            return self._append_ns_task(tasks, ns_task, managed_ns, live_ns)
        if live_ns is not None:
            _log.info("Namespace %s already exists", self.namespace)
            return self._append_ns_task(tasks, ns_task, managed_ns, live_ns)
        return tasks

    def _append_ns_task(
        self,
        tasks: SyncTaskList,
        task: SyncTask,
        managed_ns: KubeObject,
        live_ns: KubeObject | None,
    ) -> SyncTaskList:
        try:
            modified = self.namespace_modifier(managed_ns, live_ns)
        except Exception as err:  # the modifier is a caller-supplied callback
            return self._append_failed_ns_task(
                tasks, managed_ns, f"namespaceModifier error: {err}"
            )
        if modified:
            tasks.append(task)
        return tasks

    def _append_failed_ns_task(
        self, tasks: SyncTaskList, managed_ns: KubeObject, message: str
    ) -> SyncTaskList:
        task = SyncTask(phase=SyncPhase.PRE_SYNC, target_obj=managed_ns)
        self.state.set_resource_result(task, ResultCode.SYNC_FAILED, OperationPhase.ERROR, message)
        tasks.append(task)
        return tasks

    def _server_resource(self, group: str, version: str, kind: str) -> APIResource:
        if self.cluster is None:
            raise ValueError("a cluster client is required to plan sync tasks")
        return retry_on(
            _is_unauthorized,
            lambda: self.cluster.server_resource(group, version, kind, "get"),
        )

    def _check_permissions(self, tasks: SyncTaskList) -> bool:
        successful = True
        cache: dict[tuple[str, str, str], APIResource] = {}
        for task in tasks:
            gvk = (task.group, task.version, task.kind)
            try:
                server_res = cache.get(gvk)
                if server_res is None:
                    server_res = self._server_resource(*gvk)
                    cache[gvk] = server_res
            except ApiError as err:
                # A custom resource whose definition is part of this sync, or
                # that asks for it, skips the dry run instead of failing.
                if isinstance(err, NotFoundError) and (
                    (
                        task.target_obj is not None
                        and has_annotation_option(
                            task.target_obj,
                            ANNOTATION_SYNC_OPTIONS,
                            SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE,
                        )
                    )
                    or self.has_crd_of_group_kind(task.group, task.kind)
                ):
                    _log.debug("Skip dry-run for custom resource %s", task)
                    task.skip_dry_run = True
                else:
                    self.state.set_resource_result(task, ResultCode.SYNC_FAILED, None, str(err))
                    successful = False
                continue

            if self.permission_validator is None:
                continue
            try:
                self.permission_validator(task.obj(), server_res)
            except Exception as err:  # the validator is a caller-supplied callback
                self.state.set_resource_result(task, ResultCode.SYNC_FAILED, None, str(err))
                successful = False
        return successful

    @staticmethod
    def _reorder_prune_waves(tasks: SyncTaskList) -> None:
        # prune in the reverse of creation order by mirroring the prune waves
        by_wave: dict[int, list[SyncTask]] = defaultdict(list)
        for task in tasks:
            if task.is_prune():
                by_wave[task.wave()].append(task)
        waves = sorted(by_wave)
        for start, end in zip(waves[: len(waves) // 2], reversed(waves)):
            for task in by_wave[start]:
                task.wave_override = end
            for task in by_wave[end]:
                task.wave_override = start

    def _apply_prune_last(self, tasks: SyncTaskList) -> None:
        last_wave = max([0, *(t.wave() for t in tasks if t.phase is SyncPhase.SYNC)]) + 1
        for task in tasks:
            if task.is_prune() and (
                self.prune_last
                or has_annotation_option(
                    task.live_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_PRUNE_LAST
                )
            ):
                task.wave_override = last_wave