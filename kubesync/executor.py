"""Carrying out sync tasks against the cluster: apply, replace, create and prune."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable

from . import hooks
from .annotations import has_annotation_option
from .cluster import (
    ApiError,
    ClusterClient,
    ConflictError,
    DeletePropagation,
    DryRunStrategy,
    Kubectl,
    NotFoundError,
    ResourceOperations,
    retry_on,
)
from .common import (
    ANNOTATION_SYNC_OPTIONS,
    SYNC_OPTION_DISABLE_PRUNE,
    SYNC_OPTION_DISABLE_SERVER_SIDE_APPLY,
    SYNC_OPTION_FORCE,
    SYNC_OPTION_PRUNE_REQUIRE_CONFIRM,
    SYNC_OPTION_REPLACE,
    SYNC_OPTION_SERVER_SIDE_APPLY,
    SYNC_OPTIONS_DISABLE_VALIDATION,
    OperationPhase,
    ResultCode,
)
from .objects import KubeObject
from .planner import CRD_GROUP, CRD_KIND, NAMESPACE_KIND
from .state import RunState, SyncState, merge_run_states
from .tasks import SyncTask, SyncTaskList

_log = logging.getLogger(__name__)

_OPERATION_PHASES = {
    ResultCode.SYNCED: OperationPhase.RUNNING,
    ResultCode.SYNC_FAILED: OperationPhase.FAILED,
    ResultCode.PRUNED: OperationPhase.SUCCEEDED,
    ResultCode.PRUNE_SKIPPED: OperationPhase.SUCCEEDED,
}

_CRD_POLL_INTERVAL = 0.1

_Job = Callable[[RunState], RunState]


def _is_crd(obj: KubeObject) -> bool:
    return obj.kind == CRD_KIND and obj.group == CRD_GROUP


def _is_conflict(err: Exception) -> bool:
    return isinstance(err, ConflictError)


@dataclass
class TaskExecutor:
    """Runs batches of sync tasks and records their outcome in ``state``."""

    state: SyncState = field(default_factory=SyncState)
    resource_ops: ResourceOperations | None = None
    kubectl: Kubectl | None = None
    cluster: ClusterClient | None = None
    dry_run: bool = False
    force: bool = False
    validate: bool = True
    prune: bool = False
    prune_confirmed: bool = False
    replace: bool = False
    server_side_apply: bool = False
    server_side_apply_manager: str = ""
    prune_propagation_policy: DeletePropagation | None = None
    crd_readiness_timeout: float = 3.0
    max_workers: int | None = None

    def _ops(self) -> ResourceOperations:
        if self.resource_ops is None:
            raise ValueError("resource operations are required to apply resources")
        return self.resource_ops

    def _kubectl(self) -> Kubectl:
        if self.kubectl is None:
            raise ValueError("a kubectl client is required to prune resources")
        return self.kubectl

    def _cluster(self) -> ClusterClient:
        if self.cluster is None:
            raise ValueError("a cluster client is required for this operation")
        return self.cluster

    def run_tasks(self, tasks: Iterable[SyncTask], dry_run: bool) -> RunState:
        """Prune, delete hooks awaiting re-creation, then apply, in that order."""
        dry_run = dry_run or self.dry_run
        prune_tasks, create_tasks = SyncTaskList(tasks).split(lambda t: t.is_prune())
        _log.debug("Running %d tasks (dry run: %s)", len(prune_tasks) + len(create_tasks), dry_run)

        if not self.prune_confirmed:
            resources = [
                f"{task.obj().api_version}/{task.kind}/{task.name}"
                for task in prune_tasks
                if has_annotation_option(
                    task.live_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_PRUNE_REQUIRE_CONFIRM
                )
            ]
            if resources:
                _log.info("Prune requires confirmation: %s", resources)
                and_more = ""
                if len(resources) > 1:
                    and_more = f" and {len(resources) - 1} more resources"
                self.state.message = f"Waiting for pruning confirmation of {resources[0]}{and_more}"
                return RunState.PENDING

        state = self._run_parallel(
            RunState.SUCCESSFUL,
            [self._prune_job(task, dry_run) for task in prune_tasks],
        )
        if state is not RunState.SUCCESSFUL:
            return state

        pending_deletion = create_tasks.filter(lambda t: t.delete_before_creation())
        state = self._run_parallel(
            state, [self._delete_job(task, dry_run) for task in pending_deletion]
        )
        if state is not RunState.SUCCESSFUL:
            return state

        # tasks of one kind are applied together; a new kind waits for the previous one
        group: list[SyncTask] = []
        for task in create_tasks:
            if group and group[0].target_obj.kind != task.kind:
                state = self._process_create_tasks(state, group, dry_run)
                group = [task]
            else:
                group.append(task)
        if group:
            state = self._process_create_tasks(state, group, dry_run)
        return state

    def _run_parallel(self, state: RunState, jobs: list[_Job]) -> RunState:
        if not jobs:
            return state
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(job, state) for job in jobs]
            return merge_run_states(state, (future.result() for future in futures))

    def _prune_job(self, task: SyncTask, dry_run: bool) -> _Job:
        def job(state: RunState) -> RunState:
            _log.debug("Pruning %s (dry run: %s)", task, dry_run)
            result, message = self.prune_object(task.live_obj, self.prune, dry_run)
            failed = result is ResultCode.SYNC_FAILED
            if failed:
                state = RunState.FAILED
                _log.info("Pruning %s failed: %s", task, message)
            if not dry_run or self.dry_run or failed:
                self.state.set_resource_result(task, result, _OPERATION_PHASES[result], message)
            return state

        return job

    def _delete_job(self, task: SyncTask, dry_run: bool) -> _Job:
        def job(state: RunState) -> RunState:
            _log.debug("Deleting %s (dry run: %s)", task, dry_run)
            if dry_run:
                return state
            try:
                self.delete_resource(task)
            except NotFoundError:
                # already gone: nothing to wait for
                return state
            except ApiError as err:
                self.state.set_resource_result(
                    task, None, OperationPhase.ERROR, f"failed to delete resource: {err}"
                )
                return RunState.FAILED
            # the deletion must finish before the hook is created again
            return RunState.PENDING

        return job

    def _apply_job(self, task: SyncTask, dry_run: bool) -> _Job:
        def job(state: RunState) -> RunState:
            _log.debug("Applying %s (dry run: %s)", task, dry_run)
            validate = self.validate and not has_annotation_option(
                task.target_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTIONS_DISABLE_VALIDATION
            )
            result, message = self.apply_object(task, dry_run, validate)
            failed = result is ResultCode.SYNC_FAILED
            if failed:
                _log.info("Apply of %s failed: %s", task, message)
                state = RunState.FAILED
            if not dry_run or self.dry_run or failed:
                phase = _OPERATION_PHASES[result]
                # nothing is created in a dry run, so running means validation passed
                if self.dry_run and phase is OperationPhase.RUNNING:
                    phase = OperationPhase.SUCCEEDED
                self.state.set_resource_result(task, result, phase, message)
            return state

        return job

    def _process_create_tasks(
        self, state: RunState, tasks: list[SyncTask], dry_run: bool
    ) -> RunState:
        jobs = [
            self._apply_job(task, dry_run)
            for task in tasks
            if not (dry_run and task.skip_dry_run)
        ]
        return self._run_parallel(state, jobs)

    def _should_use_server_side_apply(self, target: KubeObject) -> bool:
        # dry runs validate the manifests only and always run on the client
        if self.dry_run:
            return False
        if has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_DISABLE_SERVER_SIDE_APPLY
        ):
            return False
        return self.server_side_apply or has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_SERVER_SIDE_APPLY
        )

    def apply_object(
        self, task: SyncTask, dry_run: bool, validate: bool
    ) -> tuple[ResultCode, str]:
        """Apply, replace, update or create the target of ``task``."""
        strategy = DryRunStrategy.CLIENT if dry_run else DryRunStrategy.NONE
        target = task.target_obj
        should_replace = self.replace or has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_REPLACE
        )
        force = self.force or has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_FORCE
        )
        server_side = self._should_use_server_side_apply(target)
        ops = self._ops()
        try:
            if not should_replace:
                message = ops.apply_resource(
                    target, strategy, force, validate, server_side, self.server_side_apply_manager
                )
            elif task.live_obj is None:
                message = ops.create_resource(target, strategy, validate)
            elif _is_crd(target) or target.kind == NAMESPACE_KIND:
                # replacing a CRD or a namespace would delete everything within it
                update = target.deep_copy()
                update.resource_version = task.live_obj.resource_version
                ops.update_resource(update, strategy)
                message = f"{target.kind}/{target.name} updated"
            else:
                message = ops.replace_resource(target, strategy, force)
        except ApiError as err:
            return ResultCode.SYNC_FAILED, str(err)

        if _is_crd(target) and not dry_run:
            try:
                self._ensure_crd_ready(target.name)
            except (ApiError, TimeoutError) as err:
                _log.error("failed to ensure that CRD %s is ready: %s", target.name, err)
        return ResultCode.SYNCED, message

    def _ensure_crd_ready(self, name: str) -> None:
        deadline = time.monotonic() + self.crd_readiness_timeout
        cluster = self._cluster()
        while True:
            if cluster.crd_established(name):
                return
            if time.monotonic() >= deadline:
                raise TimeoutError(f"custom resource definition {name} is not established")
            time.sleep(_CRD_POLL_INTERVAL)

    def prune_object(
        self, live_obj: KubeObject, prune: bool, dry_run: bool
    ) -> tuple[ResultCode, str]:
        """Delete ``live_obj`` when pruning is enabled and this is not a dry run."""
        if not prune:
            return ResultCode.PRUNE_SKIPPED, "ignored (requires pruning)"
        if has_annotation_option(live_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_DISABLE_PRUNE):
            return ResultCode.PRUNE_SKIPPED, "ignored (no prune)"
        if dry_run:
            return ResultCode.PRUNED, "pruned (dry run)"
        # an object already being deleted is left alone to avoid an update loop
        if live_obj.deletion_timestamp is None:
            try:
                self._kubectl().delete_resource(
                    live_obj.group,
                    live_obj.version,
                    live_obj.kind,
                    live_obj.name,
                    live_obj.namespace,
                    self.delete_options(),
                )
            except ApiError as err:
                return ResultCode.SYNC_FAILED, str(err)
        return ResultCode.PRUNED, "pruned"

    def delete_options(self) -> DeletePropagation:
        """Return the propagation policy used for deletions."""
        return self.prune_propagation_policy or DeletePropagation.FOREGROUND

    def delete_resource(self, task: SyncTask) -> None:
        """Delete the object of ``task`` from the cluster."""
        _log.debug("Deleting resource %s", task)
        cluster = self._cluster()
        api_resource = cluster.server_resource(task.group, task.version, task.kind, "delete")
        cluster.delete_resource(api_resource, task.namespace, task.name, self.delete_options())

    def _update_resource(self, task: SyncTask) -> None:
        _log.debug("Updating resource %s", task)
        cluster = self._cluster()
        api_resource = cluster.server_resource(task.group, task.version, task.kind, "update")
        cluster.update_resource(api_resource, task.live_obj)

    def remove_hook_finalizer(self, task: SyncTask) -> None:
        """Remove the hook finalizer from the live object, refetching it on conflicts."""
        if task.live_obj is None:
            return

        def attempt() -> None:
            live = task.live_obj
            finalizers = live.finalizers
            if hooks.HOOK_FINALIZER not in finalizers:
                return
            finalizers.remove(hooks.HOOK_FINALIZER)
            live.finalizers = finalizers
            try:
                self._update_resource(task)
            except ConflictError:
                # the cached object was stale: fetch the current one and retry
                _log.debug("Retrying hook finalizer removal of %s after a conflict", task)
                cluster = self._cluster()
                api_resource = cluster.server_resource(task.group, task.version, task.kind, "get")
                try:
                    task.live_obj = cluster.get_resource(api_resource, task.namespace, live.name)
                except NotFoundError:
                    _log.debug("Resource %s is already deleted", task)
                    return
                raise
            except NotFoundError:
                _log.debug("Resource %s is already deleted", task)

        retry_on(_is_conflict, attempt)