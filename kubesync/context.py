"""Driving a sync operation step by step: planning, applying and tracking progress."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from .cluster import (
    ApiError,
    ClusterClient,
    DeletePropagation,
    HealthCheck,
    HealthStatusCode,
    Kubectl,
    NotFoundError,
    ResourceOperations,
)
from .common import OperationPhase, ResultCode, SyncPhase
from .executor import TaskExecutor
from .objects import KubeObject, ResourceKey
from .planner import (
    NamespaceModifier,
    PermissionValidator,
    ResourcesFilter,
    SyncPlanner,
    group_resources,
)
from .reconcile import ReconciliationResult
from .state import ResourceSyncResult, RunState, SyncState
from .tasks import SyncTask, SyncTaskList

_log = logging.getLogger(__name__)

SyncWaveHook = Callable[[SyncPhase, int, bool], None]
"""Called after each applied wave with the phase, the wave and whether it is the last."""


class SyncContext:
    """A sync operation that advances one step on each call to :meth:`sync`."""

    def __init__(
        self,
        result: ReconciliationResult | None = None,
        *,
        cluster: ClusterClient | None = None,
        kubectl: Kubectl | None = None,
        resource_ops: ResourceOperations | None = None,
        namespace: str = "",
        revision: str = "",
        started_at: datetime | None = None,
        state: SyncState | None = None,
        health_check: HealthCheck | None = None,
        permission_validator: PermissionValidator | None = None,
        resources_filter: ResourcesFilter | None = None,
        namespace_modifier: NamespaceModifier | None = None,
        sync_wave_hook: SyncWaveHook | None = None,
        dry_run: bool = False,
        force: bool = False,
        validate: bool = True,
        skip_hooks: bool = False,
        prune: bool = False,
        prune_last: bool = False,
        prune_confirmed: bool = False,
        replace: bool = False,
        server_side_apply: bool = False,
        server_side_apply_manager: str = "",
        prune_propagation_policy: DeletePropagation | None = None,
        apply_out_of_sync_only: bool = False,
        modification_result: dict[ResourceKey, bool] | None = None,
    ) -> None:
        result = result or ReconciliationResult()
        self.state = state if state is not None else SyncState()
        self.health_check = health_check
        self.sync_wave_hook = sync_wave_hook
        self.apply_out_of_sync_only = apply_out_of_sync_only
        self.modification_result = modification_result if apply_out_of_sync_only else None
        planner_kwargs = {} if started_at is None else {"started_at": started_at}
        self.planner = SyncPlanner(
            resources=group_resources(result),
            hooks=list(result.hooks),
            state=self.state,
            cluster=cluster,
            kubectl=kubectl,
            namespace=namespace,
            revision=revision,
            skip_hooks=skip_hooks,
            prune_last=prune_last,
            resources_filter=resources_filter,
            namespace_modifier=namespace_modifier,
            permission_validator=permission_validator,
            **planner_kwargs,
        )
        self.executor = TaskExecutor(
            state=self.state,
            resource_ops=resource_ops,
            kubectl=kubectl,
            cluster=cluster,
            dry_run=dry_run,
            force=force,
            validate=validate,
            prune=prune,
            prune_confirmed=prune_confirmed,
            replace=replace,
            server_side_apply=server_side_apply,
            server_side_apply_manager=server_side_apply_manager,
            prune_propagation_policy=prune_propagation_policy,
        )

    def get_state(self) -> tuple[OperationPhase | None, str, list[ResourceSyncResult]]:
        """Return the operation phase, its message and the results so far."""
        return self.state.get_state()

    def _health(self, obj: KubeObject):
        return self.health_check(obj) if self.health_check is not None else None

    def _operation_phase(self, obj: KubeObject) -> tuple[OperationPhase, str]:
        phase, message = OperationPhase.SUCCEEDED, f"{obj.name} created"
        health = self._health(obj)
        if health is not None:
            if health.status in (HealthStatusCode.UNKNOWN, HealthStatusCode.DEGRADED):
                phase, message = OperationPhase.FAILED, health.message
            elif health.status in (HealthStatusCode.PROGRESSING, HealthStatusCode.SUSPENDED):
                phase, message = OperationPhase.RUNNING, health.message
            elif health.status is HealthStatusCode.HEALTHY:
                phase, message = OperationPhase.SUCCEEDED, health.message
        return phase, message

    def set_running_phase(self, tasks: list[SyncTask], is_pending_deletion: bool) -> None:
        """Mark the operation running, naming the first task waited for."""
        if not tasks:
            return
        first = tasks[0]
        if first.is_hook():
            waiting_for, and_more = "completion of hook", "hooks"
        else:
            waiting_for, and_more = "healthy state of", "resources"
        if is_pending_deletion:
            waiting_for = "deletion of"
        message = f"waiting for {waiting_for} {first.group}/{first.kind}/{first.name}"
        if len(tasks) > 1:
            message = f"{message} and {len(tasks) - 1} more {and_more}"
        self.state.set_operation_phase(OperationPhase.RUNNING, message)

    @staticmethod
    def _error_message(tasks: Iterable[SyncTask] | None, message: str) -> str:
        reasons = list(dict.fromkeys(t.message for t in tasks or () if t.message))
        if reasons:
            return f"{message}, reason: {','.join(reasons)}"
        return message

    def set_operation_failed(
        self,
        sync_fail_tasks: list[SyncTask] | None,
        sync_failed_tasks: list[SyncTask] | None,
        message: str,
    ) -> None:
        """Fail the operation, first starting any SyncFail hooks not yet run."""
        error_message = self._error_message(sync_failed_tasks, message)
        fail_tasks = SyncTaskList(sync_fail_tasks or ())
        if not fail_tasks or all(t.completed() for t in fail_tasks):
            self.state.set_operation_phase(OperationPhase.FAILED, error_message)
            return
        # the phase is left alone so that another step runs after the hooks
        _log.debug("Running sync fail tasks %s", fail_tasks)
        if self.executor.run_tasks(fail_tasks, False) is RunState.FAILED:
            failed = fail_tasks.filter(lambda t: t.sync_status is ResultCode.SYNC_FAILED)
            hooks_message = self._error_message(failed, "one or more SyncFail hooks failed")
            self.state.set_operation_phase(
                OperationPhase.FAILED, f"{error_message}\n{hooks_message}"
            )

    def filter_out_of_sync_tasks(self, tasks: SyncTaskList) -> SyncTaskList:
        """Drop resource tasks whose diff shows no modification."""
        modifications = self.modification_result or {}

        def keep(task: SyncTask) -> bool:
            if task.is_hook():
                return True
            key = task.resource_key()
            if (
                key in modifications
                and not modifications[key]
                and task.target_obj is not None
                and task.live_obj is not None
            ):
                _log.debug("Skipping %s as it was not modified", key)
                return False
            return True

        return SyncTaskList(tasks).filter(keep)

    def _delete_hooks(self, tasks: Iterable[SyncTask]) -> None:
        for task in tasks:
            try:
                self.executor.delete_resource(task)
            except NotFoundError:
                pass
            except ApiError as err:
                self.state.set_resource_result(
                    task, None, OperationPhase.ERROR, f"failed to delete resource: {err}"
                )

    def _update_running(self, tasks: SyncTaskList) -> None:
        for task in tasks.filter(lambda t: t.running() and t.live_obj is not None):
            if task.is_hook():
                try:
                    phase, message = self._operation_phase(task.live_obj)
                except Exception as err:  # health checks are caller-supplied
                    self.state.set_resource_result(
                        task, None, OperationPhase.ERROR, f"failed to get resource health: {err}"
                    )
                else:
                    self.state.set_resource_result(task, None, phase, message)
                continue
            try:
                health = self._health(task.live_obj)
            except Exception:  # unknown health leaves the task running
                continue
            if health is None:
                # objects without health (e.g. secrets) succeed at once
                self.state.set_resource_result(
                    task, task.sync_status, OperationPhase.SUCCEEDED, task.message
                )
            elif health.status is HealthStatusCode.HEALTHY:
                self.state.set_resource_result(
                    task, task.sync_status, OperationPhase.SUCCEEDED, health.message
                )
            elif health.status is HealthStatusCode.DEGRADED:
                self.state.set_resource_result(
                    task, task.sync_status, OperationPhase.FAILED, health.message
                )

    def sync(self) -> None:
        """Run the next step of the operation and update its state."""
        _log.info("Syncing (skip hooks: %s, started: %s)", self.planner.skip_hooks, self.state.started())
        tasks, ok = self.planner.get_sync_tasks()
        if not ok:
            self.state.set_operation_phase(
                OperationPhase.FAILED, "one or more synchronization tasks are not valid"
            )
            return

        if self.state.started():
            _log.info("Tasks %s", [str(t) for t in tasks])
        else:
            # a single dry run up front catches most manifest errors
            dry_run_tasks = tasks
            if self.apply_out_of_sync_only:
                dry_run_tasks = self.filter_out_of_sync_tasks(tasks)
            if self.executor.run_tasks(dry_run_tasks, True) is RunState.FAILED:
                self.state.set_operation_phase(
                    OperationPhase.FAILED, "one or more objects failed to apply (dry run)"
                )
                return

        self._update_running(tasks)

        multi_step = tasks.multi_step()
        running = tasks.filter(lambda t: (multi_step or t.is_hook()) and t.running())
        if running:
            self.set_running_phase(running, False)
            return

        pending_delete = tasks.filter(
            lambda t: t.pruned()
            and t.live_obj is not None
            and t.live_obj.deletion_timestamp is not None
        )
        if pending_delete:
            self.set_running_phase(pending_delete, True)
            return

        for task in tasks.filter(lambda t: t.is_hook() and t.completed()):
            try:
                self.executor.remove_hook_finalizer(task)
            except ApiError as err:
                self.state.set_resource_result(
                    task,
                    task.sync_status,
                    OperationPhase.ERROR,
                    f"Failed to remove hook finalizer: {err}",
                )

        hooks_delete_successful = tasks.filter(
            lambda t: t.is_hook()
            and t.live_obj is not None
            and not t.running()
            and t.delete_on_phase_successful()
        )
        hooks_delete_failed = tasks.filter(
            lambda t: t.is_hook()
            and t.live_obj is not None
            and not t.running()
            and t.delete_on_phase_failed()
        )

        sync_fail_tasks, tasks = tasks.split(lambda t: t.phase is SyncPhase.SYNC_FAIL)
        sync_failed_tasks, _ = tasks.split(lambda t: t.sync_status is ResultCode.SYNC_FAILED)

        if any(t.completed() and not t.successful() for t in tasks):
            self._delete_hooks(hooks_delete_failed)
            self.set_operation_failed(
                sync_fail_tasks,
                sync_failed_tasks,
                "one or more synchronization tasks completed unsuccessfully",
            )
            return

        tasks = tasks.filter(lambda t: t.pending())
        if self.apply_out_of_sync_only:
            tasks = self.filter_out_of_sync_tasks(tasks)

        if not tasks:
            self._delete_hooks(hooks_delete_successful)
            self.state.set_operation_phase(
                OperationPhase.SUCCEEDED, "successfully synced (no more tasks)"
            )
            return

        phase, wave = tasks.phase(), tasks.wave()
        final_wave = phase == tasks.last_phase() and wave == tasks.last_wave()
        # only non-hook tasks left in the final wave means success, even if they degrade later
        remaining = tasks.filter(lambda t: t.phase != phase or t.wave() != wave or t.is_hook())
        tasks = tasks.filter(lambda t: t.phase == phase and t.wave() == wave)

        self.state.set_operation_phase(OperationPhase.RUNNING, "one or more tasks are running")
        run_state = self.executor.run_tasks(tasks, False)

        if self.sync_wave_hook is not None and run_state is not RunState.FAILED:
            try:
                self.sync_wave_hook(phase, wave, final_wave)
            except Exception as err:  # the hook is a caller-supplied callback
                self._delete_hooks(hooks_delete_failed)
                self.state.set_operation_phase(
                    OperationPhase.FAILED, f"SyncWaveHook failed: {err}"
                )
                _log.error("SyncWaveHook failed: %s", err)
                return

        if run_state is RunState.FAILED:
            failed, _ = tasks.split(lambda t: t.sync_status is ResultCode.SYNC_FAILED)
            self._delete_hooks(hooks_delete_failed)
            self.set_operation_failed(sync_fail_tasks, failed, "one or more objects failed to apply")
        elif run_state is RunState.SUCCESSFUL:
            if not remaining:
                self._delete_hooks(hooks_delete_successful)
                self.state.set_operation_phase(
                    OperationPhase.SUCCEEDED, "successfully synced (all tasks run)"
                )
            else:
                self.set_running_phase(remaining, False)
        else:
            self.set_running_phase(tasks.filter(lambda t: t.delete_on_phase_completion()), True)

    def terminate(self) -> None:
        """Delete running hooks and mark the operation as terminated."""
        _log.debug("terminating")
        succeeded = True
        tasks, _ = self.planner.get_sync_tasks()
        for task in tasks:
            if not task.is_hook() or task.live_obj is None:
                continue
            try:
                self.executor.remove_hook_finalizer(task)
            except ApiError as err:
                self.state.set_resource_result(
                    task,
                    task.sync_status,
                    OperationPhase.ERROR,
                    f"Failed to remove hook finalizer: {err}",
                )
                succeeded = False
                continue
            try:
                phase, message = self._operation_phase(task.live_obj)
            except Exception as err:  # health checks are caller-supplied
                self.state.set_operation_phase(
                    OperationPhase.ERROR, f"Failed to get hook health: {err}"
                )
                return
            if phase is not OperationPhase.RUNNING:
                self.state.set_resource_result(task, None, phase, message)
                continue
            try:
                self.executor.delete_resource(task)
            except NotFoundError:
                self.state.set_resource_result(task, None, OperationPhase.SUCCEEDED, "Deleted")
            except ApiError as err:
                self.state.set_resource_result(
                    task, None, OperationPhase.FAILED, f"Failed to delete: {err}"
                )
                succeeded = False
            else:
                self.state.set_resource_result(task, None, OperationPhase.SUCCEEDED, "Deleted")
        if succeeded:
            self.state.set_operation_phase(OperationPhase.FAILED, "Operation terminated")
        else:
            self.state.set_operation_phase(OperationPhase.ERROR, "Operation termination had errors")